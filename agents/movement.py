"""
Movement Predictor - Gated recurrent network for next-position prediction.

A standard LSTM cell with independent weights for each gate:

    z_t = [x_t, h_{t-1}]
    i_t = sigmoid(z_t W_i + b_i)      input gate
    f_t = sigmoid(z_t W_f + b_f)      forget gate
    g_t = tanh(z_t W_g + b_g)         candidate
    o_t = sigmoid(z_t W_o + b_o)      output gate
    c_t = f_t * c_{t-1} + i_t * g_t
    h_t = o_t * tanh(c_t)
    y_t = tanh(h_t W_y + b_y)

Trained with backpropagation through time over sequences truncated to
sequence_length, with element-wise gradient clipping.
"""

from collections import deque
from typing import Dict, Any, List, Optional, Sequence, Tuple
import logging
import threading

import numpy as np

logger = logging.getLogger(__name__)

GATES = ('i', 'f', 'g', 'o')


def _sigmoid(x: np.ndarray) -> np.ndarray:
    return 1.0 / (1.0 + np.exp(-np.clip(x, -50, 50)))


class MovementPredictor:
    """LSTM sequence model mapping movement features to the next step"""

    def __init__(self, input_size: int = 6, hidden_size: int = 32, output_size: int = 6,
                 learning_rate: float = 0.01, clip: float = 5.0,
                 sequence_length: int = 20, seed: Optional[int] = None):
        self.input_size = input_size
        self.hidden_size = hidden_size
        self.output_size = output_size
        self.learning_rate = learning_rate
        self.clip = clip
        self.sequence_length = sequence_length
        self.rng = np.random.default_rng(seed)
        self._lock = threading.RLock()

        self._init_weights()
        self.reset_state()

        self.training_steps = 0
        self.loss_history: deque = deque(maxlen=1000)

    def _init_weights(self):
        n_in = self.input_size + self.hidden_size
        scale = np.sqrt(1.0 / n_in)
        self._params: List[str] = []
        for gate in GATES:
            setattr(self, f'W_{gate}', self.rng.standard_normal((n_in, self.hidden_size)) * scale)
            setattr(self, f'b_{gate}', np.zeros(self.hidden_size))
            self._params.extend([f'W_{gate}', f'b_{gate}'])
        # Forget gate starts open
        self.b_f = np.ones(self.hidden_size)
        self.W_y = self.rng.standard_normal((self.hidden_size, self.output_size)) * np.sqrt(
            1.0 / self.hidden_size)
        self.b_y = np.zeros(self.output_size)
        self._params.extend(['W_y', 'b_y'])

    def reset_state(self):
        """Clear the streaming hidden and cell state"""
        self.h = np.zeros(self.hidden_size)
        self.c = np.zeros(self.hidden_size)

    def _check_input(self, x) -> np.ndarray:
        x = np.asarray(x, dtype=np.float64).ravel()
        if x.shape[0] != self.input_size:
            raise ValueError(f"Expected {self.input_size} inputs, got {x.shape[0]}")
        return x

    def _step(self, x: np.ndarray, h_prev: np.ndarray, c_prev: np.ndarray) -> Dict[str, np.ndarray]:
        z = np.concatenate([x, h_prev])
        i = _sigmoid(z @ self.W_i + self.b_i)
        f = _sigmoid(z @ self.W_f + self.b_f)
        g = np.tanh(z @ self.W_g + self.b_g)
        o = _sigmoid(z @ self.W_o + self.b_o)
        c = f * c_prev + i * g
        tanh_c = np.tanh(c)
        h = o * tanh_c
        y = np.tanh(h @ self.W_y + self.b_y)
        return {'z': z, 'i': i, 'f': f, 'g': g, 'o': o, 'c': c, 'c_prev': c_prev,
                'tanh_c': tanh_c, 'h': h, 'y': y}

    def predict(self, x) -> np.ndarray:
        """Advance the streaming state by one input and return the prediction"""
        x = self._check_input(x)
        with self._lock:
            cache = self._step(x, self.h, self.c)
            self.h, self.c = cache['h'], cache['c']
        return cache['y'].copy()

    def predict_sequence(self, initial_input, steps: int) -> List[np.ndarray]:
        """Autoregressive rollout feeding each prediction back as input"""
        if self.output_size != self.input_size:
            raise ValueError("Autoregressive rollout needs output_size == input_size")
        current = self._check_input(initial_input)
        predictions = []
        for _ in range(steps):
            current = self.predict(current)
            predictions.append(current.copy())
        return predictions

    def forward_sequence(self, inputs) -> np.ndarray:
        """Run a whole sequence from a zero state; does not touch streaming state"""
        inputs = np.asarray(inputs, dtype=np.float64)
        h = np.zeros(self.hidden_size)
        c = np.zeros(self.hidden_size)
        outputs = []
        with self._lock:
            for x in inputs:
                cache = self._step(self._check_input(x), h, c)
                h, c = cache['h'], cache['c']
                outputs.append(cache['y'])
        return np.array(outputs)

    def train_sequence(self, inputs, targets) -> float:
        """One BPTT update over a sequence; returns the mean squared error"""
        inputs = np.asarray(inputs, dtype=np.float64)[:self.sequence_length]
        targets = np.asarray(targets, dtype=np.float64)[:self.sequence_length]
        if len(inputs) == 0:
            raise ValueError("Cannot train on an empty sequence")
        if targets.shape != (len(inputs), self.output_size):
            raise ValueError(f"Targets shape {targets.shape} does not match "
                             f"({len(inputs)}, {self.output_size})")

        with self._lock:
            h = np.zeros(self.hidden_size)
            c = np.zeros(self.hidden_size)
            caches = []
            for x in inputs:
                cache = self._step(self._check_input(x), h, c)
                h, c = cache['h'], cache['c']
                caches.append(cache)

            outputs = np.array([cache['y'] for cache in caches])
            diff = outputs - targets
            loss = float(np.mean(diff ** 2))

            grads = self._backward(caches, diff)
            for name in self._params:
                np.clip(grads[name], -self.clip, self.clip, out=grads[name])
                setattr(self, name, getattr(self, name) - self.learning_rate * grads[name])

            self.training_steps += 1
            self.loss_history.append(loss)
        return loss

    def _backward(self, caches: List[Dict[str, np.ndarray]], diff: np.ndarray
                  ) -> Dict[str, np.ndarray]:
        grads = {name: np.zeros_like(getattr(self, name)) for name in self._params}
        dh_next = np.zeros(self.hidden_size)
        dc_next = np.zeros(self.hidden_size)
        scale = 2.0 / diff.size

        for t in reversed(range(len(caches))):
            cache = caches[t]
            dy = diff[t] * scale
            dy_pre = dy * (1.0 - cache['y'] ** 2)
            grads['W_y'] += np.outer(cache['h'], dy_pre)
            grads['b_y'] += dy_pre

            dh = dy_pre @ self.W_y.T + dh_next
            dc = dh * cache['o'] * (1.0 - cache['tanh_c'] ** 2) + dc_next

            d_pre = {
                'o': dh * cache['tanh_c'] * cache['o'] * (1.0 - cache['o']),
                'i': dc * cache['g'] * cache['i'] * (1.0 - cache['i']),
                'g': dc * cache['i'] * (1.0 - cache['g'] ** 2),
                'f': dc * cache['c_prev'] * cache['f'] * (1.0 - cache['f']),
            }
            dz = np.zeros_like(cache['z'])
            for gate in GATES:
                grads[f'W_{gate}'] += np.outer(cache['z'], d_pre[gate])
                grads[f'b_{gate}'] += d_pre[gate]
                dz += d_pre[gate] @ getattr(self, f'W_{gate}').T

            dh_next = dz[self.input_size:]
            dc_next = dc * cache['f']
        return grads

    def split_sequence(self, sequence) -> Optional[Tuple[np.ndarray, np.ndarray]]:
        """Flat [step0, step1, ...] -> (inputs, next-step targets); None if malformed"""
        flat = np.asarray(sequence, dtype=np.float64).ravel()
        if flat.shape[0] % self.input_size != 0 or flat.shape[0] < 2 * self.input_size:
            return None
        steps = flat.reshape(-1, self.input_size)
        return steps[:-1], steps[1:, :self.output_size]

    def train_on_batch(self, sequences: Sequence) -> Optional[float]:
        """Train on flat movement sequences, skipping malformed ones"""
        losses = []
        for sequence in sequences:
            pair = self.split_sequence(sequence)
            if pair is None:
                logger.debug("Skipping malformed movement sequence")
                continue
            losses.append(self.train_sequence(*pair))
        if not losses:
            return None
        return float(np.mean(losses))

    @staticmethod
    def get_confidence(prediction) -> float:
        prediction = np.asarray(prediction, dtype=np.float64)
        if prediction.size == 0:
            return 0.0
        return float(min(np.mean(np.abs(prediction)), 1.0))

    def get_params(self) -> Dict[str, np.ndarray]:
        with self._lock:
            return {name: getattr(self, name).copy() for name in self._params}

    def set_params(self, params: Dict[str, np.ndarray]):
        with self._lock:
            for name in self._params:
                if params[name].shape != getattr(self, name).shape:
                    raise ValueError(f"Parameter {name} has shape {params[name].shape}")
            for name in self._params:
                setattr(self, name, np.array(params[name], dtype=np.float64))
            self.reset_state()

    def save(self, filepath: str):
        np.savez(filepath, **self.get_params())

    def load(self, filepath: str):
        with np.load(filepath) as data:
            params = {key: data[key] for key in data.files}
        self.set_params(params)

    def get_stats(self) -> Dict[str, Any]:
        history = list(self.loss_history)
        return {
            'training_steps': self.training_steps,
            'average_loss': float(np.mean(history)) if history else 0.0,
            'last_loss': history[-1] if history else None,
            'hidden_size': self.hidden_size,
        }
