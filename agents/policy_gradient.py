"""
Policy Gradient Agent - REINFORCE with a learned softmax policy.

The policy is a one-hidden-layer network in pure NumPy:
  state -> Linear -> tanh -> Linear -> softmax over actions

Experiences are buffered as a trajectory and trained when the episode ends
or the buffer reaches batch_size. Discounted returns minus a running
baseline weight the log-probability gradient. With deferred training the
segments are queued for train_step(), which a background trainer calls.
"""

from collections import deque
from typing import Dict, Any, List, Optional, Sequence
import json
import logging
import os
import random
import threading
import zipfile

import numpy as np

from core.experience import FlatExperience, as_flat
from core.state import NUM_ACTIONS, check_state_size
from .base import LearningAlgorithm, ModelLoadError, flatten_batch, batch_weights

logger = logging.getLogger(__name__)


def _softmax(logits: np.ndarray) -> np.ndarray:
    z = logits - logits.max(axis=-1, keepdims=True)
    e = np.exp(z)
    return e / e.sum(axis=-1, keepdims=True)


class PolicyGradientAgent(LearningAlgorithm):
    """Stochastic softmax policy trained with REINFORCE"""

    name = "policy_gradient"
    supports_deferred_training = True

    def __init__(self, state_size: int, num_actions: int = NUM_ACTIONS,
                 hidden_size: int = 32, learning_rate: float = 0.01,
                 discount: float = 0.99, batch_size: int = 32,
                 exploration_rate: float = 0.1, baseline_momentum: float = 0.9,
                 seed: Optional[int] = None):
        self.state_size = state_size
        self.num_actions = num_actions
        self.hidden_size = hidden_size
        self.lr = learning_rate
        self.discount = discount
        self.batch_size = max(1, batch_size)
        self.exploration_rate = exploration_rate
        self.baseline_momentum = baseline_momentum

        self.rng = random.Random(seed)
        self._np_rng = np.random.default_rng(seed)
        self._lock = threading.Lock()
        self._update_lock = threading.Lock()
        self._init_weights()

        self.trajectory: List[FlatExperience] = []
        self._pending: deque = deque()
        self._pending_lock = threading.Lock()
        self.baseline = 0.0
        self.updates = 0
        self.episodes = 0

    def _init_weights(self):
        s, h, a = self.state_size, self.hidden_size, self.num_actions
        self.w1 = self._np_rng.standard_normal((s, h)) * np.sqrt(1.0 / s)
        self.b1 = np.zeros(h)
        self.w2 = self._np_rng.standard_normal((h, a)) * np.sqrt(1.0 / h) * 0.1
        self.b2 = np.zeros(a)
        self._params = ['w1', 'b1', 'w2', 'b2']

    @classmethod
    def from_config(cls, config: Dict[str, Any] = None) -> 'PolicyGradientAgent':
        config = config or {}
        return cls(
            state_size=config.get('state_size', 10),
            num_actions=config.get('num_actions', NUM_ACTIONS),
            hidden_size=config.get('hidden_size', 32),
            learning_rate=config.get('learning_rate', 0.01),
            discount=config.get('discount', 0.99),
            batch_size=config.get('batch_size', 32),
            exploration_rate=config.get('epsilon_start', 0.1),
            seed=config.get('seed'),
        )

    def _snapshot(self) -> Dict[str, np.ndarray]:
        # Parameters are replaced on update, never mutated in place
        with self._lock:
            return {name: getattr(self, name) for name in self._params}

    @staticmethod
    def _forward(states: np.ndarray, params: Dict[str, np.ndarray]):
        hidden = np.tanh(states @ params['w1'] + params['b1'])
        probs = _softmax(hidden @ params['w2'] + params['b2'])
        return hidden, probs

    def action_probabilities(self, state) -> np.ndarray:
        x = check_state_size(state, self.state_size)[None, :]
        _, probs = self._forward(x, self._snapshot())
        return probs[0]

    def action_values(self, state) -> np.ndarray:
        return self.action_probabilities(state)

    def select_action(self, state) -> int:
        probs = self.action_probabilities(state)
        if self.rng.random() < self.exploration_rate:
            return self.rng.randrange(self.num_actions)
        return int(self._np_rng.choice(self.num_actions, p=probs))

    def discounted_returns(self, rewards: Sequence[float], dones: Sequence[bool]) -> np.ndarray:
        returns = np.zeros(len(rewards), dtype=np.float64)
        running = 0.0
        for i in reversed(range(len(rewards))):
            if dones[i]:
                running = 0.0
            running = rewards[i] + self.discount * running
            returns[i] = running
        return returns

    def train(self, experience):
        exp = as_flat(experience)
        check_state_size(exp.state, self.state_size)
        if not 0 <= exp.action < self.num_actions:
            raise ValueError(f"Action {exp.action} out of range")
        self.trajectory.append(exp)
        if exp.done:
            self.episodes += 1
        if exp.done or len(self.trajectory) >= self.batch_size:
            batch, self.trajectory = self.trajectory, []
            if self.deferred_training:
                with self._pending_lock:
                    self._pending.append(batch)
                return None
            return self.train_batch(batch)
        return None

    def train_step(self) -> Optional[np.ndarray]:
        """Train every segment queued by deferred train() calls"""
        advantages = None
        while True:
            with self._pending_lock:
                if not self._pending:
                    return advantages
                batch = self._pending.popleft()
            advantages = self.train_batch(batch)

    def train_batch(self, experiences, weights=None) -> np.ndarray:
        """One REINFORCE step over a trajectory segment; returns advantages"""
        batch = flatten_batch(experiences)
        if not batch:
            return np.zeros(0, dtype=np.float64)
        w = batch_weights(weights, len(batch))

        states = np.stack([check_state_size(e.state, self.state_size) for e in batch])
        actions = np.array([e.action for e in batch], dtype=np.int64)
        returns = self.discounted_returns([e.reward for e in batch], [e.done for e in batch])

        with self._update_lock:
            params = self._snapshot()
            advantages = returns - self.baseline
            self.baseline = (self.baseline_momentum * self.baseline +
                             (1 - self.baseline_momentum) * float(returns.mean()))

            hidden, probs = self._forward(states, params)
            onehot = np.zeros_like(probs)
            onehot[np.arange(len(batch)), actions] = 1.0

            # Gradient of sum(w * A * log pi(a|s)) with respect to the logits
            dlogits = (onehot - probs) * (w * advantages)[:, None] / len(batch)
            grads = {
                'w2': hidden.T @ dlogits,
                'b2': dlogits.sum(axis=0),
            }
            dhidden = (dlogits @ params['w2'].T) * (1.0 - hidden ** 2)
            grads['w1'] = states.T @ dhidden
            grads['b1'] = dhidden.sum(axis=0)

            updated = {name: params[name] + self.lr * grads[name] for name in self._params}
            with self._lock:
                for name, value in updated.items():
                    setattr(self, name, value)
            self.updates += 1
        return advantages

    def get_exploration_rate(self) -> float:
        return self.exploration_rate

    def set_exploration_rate(self, rate: float):
        self.exploration_rate = max(0.0, min(1.0, float(rate)))

    def get_params(self) -> Dict[str, np.ndarray]:
        with self._lock:
            return {name: getattr(self, name).copy() for name in self._params}

    def set_params(self, params: Dict[str, np.ndarray]):
        for name in self._params:
            if name not in params:
                raise ValueError(f"Missing parameter {name}")
            if params[name].shape != getattr(self, name).shape:
                raise ValueError(f"Parameter {name} has shape {params[name].shape}")
        values = {name: np.array(params[name], dtype=np.float64) for name in self._params}
        with self._update_lock, self._lock:
            for name, value in values.items():
                setattr(self, name, value)

    def save_model(self, path: str):
        os.makedirs(path, exist_ok=True)
        np.savez(os.path.join(path, 'policy.npz'), **self.get_params())
        with open(os.path.join(path, 'meta.json'), 'w') as f:
            json.dump({'algorithm': self.name, 'baseline': self.baseline,
                       'updates': self.updates,
                       'exploration_rate': self.exploration_rate}, f, indent=2)
        logger.info(f"Saved policy to {path}")

    def load_model(self, path: str):
        params_path = os.path.join(path, 'policy.npz')
        if not os.path.exists(params_path):
            raise ModelLoadError(f"No policy parameters found at {params_path}")
        meta_path = os.path.join(path, 'meta.json')
        try:
            with np.load(params_path) as data:
                params = {key: data[key] for key in data.files}
            meta = {}
            if os.path.exists(meta_path):
                with open(meta_path, 'r') as f:
                    meta = json.load(f)
            if not isinstance(meta, dict):
                raise ValueError("metadata is not a JSON object")
            baseline = float(meta.get('baseline', 0.0))
            updates = int(meta.get('updates', 0))
            exploration_rate = float(meta.get('exploration_rate', self.exploration_rate))
            self.set_params(params)
        except (OSError, ValueError, TypeError, zipfile.BadZipFile) as e:
            raise ModelLoadError(f"Corrupt policy at {path}: {e}")
        self.baseline = baseline
        self.updates = updates
        self.exploration_rate = exploration_rate
        logger.info(f"Loaded policy from {path}")

    def get_stats(self) -> Dict[str, Any]:
        return {
            'algorithm': self.name,
            'exploration_rate': self.exploration_rate,
            'updates': self.updates,
            'episodes': self.episodes,
            'baseline': self.baseline,
            'pending_experiences': len(self.trajectory),
            'pending_segments': len(self._pending),
        }
