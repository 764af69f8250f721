"""
Value Network - Small fully connected network in pure NumPy.

Architecture:
  Input -> Linear -> ReLU -> ... -> Linear (one output per action)

Trained with mean-squared error and Adam. Sized for low-dimensional state
vectors; it is not a general tensor engine.

Inference reads a consistent parameter snapshot under a short lock. Gradient
steps run outside that lock and publish all updated parameters in one swap,
so inference never waits on training and a copy from another network stays
atomic.
"""

import threading
from typing import List, Dict, Tuple, Optional, Sequence

import numpy as np


class MLP:
    """
    Feed-forward ReLU network with a linear output layer.

    layer_sizes lists every layer width, e.g. [10, 64, 64, 8].
    """

    def __init__(self, layer_sizes: Sequence[int], lr: float = 1e-3,
                 grad_clip: float = 10.0, seed: Optional[int] = None):
        if len(layer_sizes) < 2:
            raise ValueError("An MLP needs at least an input and an output layer")
        self.layer_sizes = [int(s) for s in layer_sizes]
        self.lr = lr
        self.grad_clip = grad_clip
        self.rng = np.random.default_rng(seed)
        self._lock = threading.Lock()
        self._fit_lock = threading.Lock()

        self._init_weights()

        # Adam state
        self.beta1 = 0.9
        self.beta2 = 0.999
        self.adam_eps = 1e-8
        self.step_count = 0
        self._m = {name: np.zeros_like(getattr(self, name)) for name in self._params}
        self._v = {name: np.zeros_like(getattr(self, name)) for name in self._params}

    def _init_weights(self):
        """He initialization for ReLU layers, small output layer"""
        self._params: List[str] = []
        n_layers = len(self.layer_sizes) - 1
        for i in range(n_layers):
            fan_in, fan_out = self.layer_sizes[i], self.layer_sizes[i + 1]
            scale = np.sqrt(2.0 / fan_in)
            if i == n_layers - 1:
                scale *= 0.1
            setattr(self, f'w{i}',
                    (self.rng.standard_normal((fan_in, fan_out)) * scale).astype(np.float32))
            setattr(self, f'b{i}', np.zeros(fan_out, dtype=np.float32))
            self._params.extend([f'w{i}', f'b{i}'])

    @property
    def input_size(self) -> int:
        return self.layer_sizes[0]

    @property
    def output_size(self) -> int:
        return self.layer_sizes[-1]

    def _as_batch(self, x) -> np.ndarray:
        x = np.asarray(x, dtype=np.float32)
        if x.ndim == 1:
            x = x[None, :]
        if x.ndim != 2 or x.shape[1] != self.input_size:
            raise ValueError(
                f"Expected input of width {self.input_size}, got shape {x.shape}")
        return x

    def _snapshot(self) -> Dict[str, np.ndarray]:
        # Parameter arrays are replaced, never mutated, so references suffice
        with self._lock:
            return {name: getattr(self, name) for name in self._params}

    def _forward(self, x: np.ndarray,
                 params: Dict[str, np.ndarray]) -> Tuple[np.ndarray, List[np.ndarray]]:
        activations = [x]
        n_layers = len(self.layer_sizes) - 1
        h = x
        for i in range(n_layers):
            h = h @ params[f'w{i}'] + params[f'b{i}']
            if i < n_layers - 1:
                h = np.maximum(h, 0)  # ReLU
            activations.append(h)
        return h, activations

    def forward(self, x) -> np.ndarray:
        """Batch forward pass: (batch, input) -> (batch, output)"""
        x = self._as_batch(x)
        out, _ = self._forward(x, self._snapshot())
        return out

    def predict(self, x) -> np.ndarray:
        """Single-sample forward pass returning a 1-D vector"""
        return self.forward(x)[0].astype(np.float64)

    def fit(self, x, y, weights: Optional[Sequence[float]] = None) -> float:
        """
        One Adam step toward targets y under (optionally weighted) MSE.

        Gradients are computed from a parameter snapshot; only the final
        swap of the updated parameters takes the inference lock.
        Returns the loss before the step.
        """
        x = self._as_batch(x)
        y = np.asarray(y, dtype=np.float32)
        if y.ndim == 1:
            y = y[None, :]
        if x.shape[0] == 0:
            raise ValueError("Cannot fit on an empty batch")
        if y.shape != (x.shape[0], self.output_size):
            raise ValueError(f"Targets shape {y.shape} does not match "
                             f"({x.shape[0]}, {self.output_size})")
        w = (np.ones(x.shape[0], dtype=np.float32) if weights is None
             else np.asarray(weights, dtype=np.float32).ravel())

        with self._fit_lock:
            params = self._snapshot()
            out, activations = self._forward(x, params)
            diff = out - y
            loss = float(np.mean(w[:, None] * diff ** 2))

            grad = 2.0 * w[:, None] * diff / diff.size
            grads = self._backward(grad, activations, params)
            updated = self._apply_adam(params, grads)
            with self._lock:
                for name, value in updated.items():
                    setattr(self, name, value)
        return loss

    def _backward(self, grad: np.ndarray, activations: List[np.ndarray],
                  params: Dict[str, np.ndarray]) -> Dict[str, np.ndarray]:
        grads = {}
        n_layers = len(self.layer_sizes) - 1
        for i in reversed(range(n_layers)):
            a_in = activations[i]
            grads[f'w{i}'] = a_in.T @ grad
            grads[f'b{i}'] = grad.sum(axis=0)
            if i > 0:
                grad = grad @ params[f'w{i}'].T
                grad = grad * (activations[i] > 0)

        total_norm = np.sqrt(sum(float(np.sum(g ** 2)) for g in grads.values()))
        if self.grad_clip and total_norm > self.grad_clip:
            scale = self.grad_clip / (total_norm + 1e-8)
            grads = {k: g * scale for k, g in grads.items()}
        return grads

    def _apply_adam(self, params: Dict[str, np.ndarray],
                    grads: Dict[str, np.ndarray]) -> Dict[str, np.ndarray]:
        # Caller holds the fit lock
        self.step_count += 1
        t = self.step_count
        updated = {}
        for name in self._params:
            g = grads[name]
            self._m[name] = self.beta1 * self._m[name] + (1 - self.beta1) * g
            self._v[name] = self.beta2 * self._v[name] + (1 - self.beta2) * g ** 2
            m_hat = self._m[name] / (1 - self.beta1 ** t)
            v_hat = self._v[name] / (1 - self.beta2 ** t)
            update = self.lr * m_hat / (np.sqrt(v_hat) + self.adam_eps)
            updated[name] = (params[name] - update).astype(np.float32)
        return updated

    def get_params(self) -> Dict[str, np.ndarray]:
        """Get all parameters as a dict."""
        with self._lock:
            return {name: getattr(self, name).copy() for name in self._params}

    def set_params(self, params: Dict[str, np.ndarray]):
        """Set parameters from a dict, all at once."""
        for name in self._params:
            if name not in params:
                raise ValueError(f"Missing parameter {name}")
            if params[name].shape != getattr(self, name).shape:
                raise ValueError(f"Parameter {name} has shape {params[name].shape}, "
                                 f"expected {getattr(self, name).shape}")
        values = {name: np.array(params[name], dtype=np.float32) for name in self._params}
        # Waits for an in-flight fit so its result cannot overwrite these values
        with self._fit_lock, self._lock:
            for name, value in values.items():
                setattr(self, name, value)

    def copy_from(self, other: 'MLP'):
        """Overwrite parameters with an exact copy of another network's"""
        self.set_params(other.get_params())

    def save(self, filepath: str):
        """Save model parameters to file."""
        params = self.get_params()
        np.savez(filepath, **params)

    def load(self, filepath: str):
        """Load model parameters from file."""
        self.set_params(read_params(filepath))


def read_params(filepath: str) -> Dict[str, np.ndarray]:
    """Read an npz parameter archive fully into memory"""
    with np.load(filepath) as data:
        return {key: data[key] for key in data.files}
