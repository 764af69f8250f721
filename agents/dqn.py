"""
Deep Q-Network Agent - Function approximation with target-network stabilization.

Two networks with identical topology:
- online: used for action selection and gradient updates
- target: a parameter copy of online, refreshed every update_target_every
  training steps and never trained directly

A bounded FIFO replay buffer feeds uniform mini-batches. Learning targets
are the reward alone for terminal experiences, otherwise
reward + gamma * max_a target(next_state).
"""

from typing import Dict, Any, Optional, Sequence
import json
import logging
import os
import random
import threading
import zipfile

import numpy as np

from core.experience import as_flat
from core.state import NUM_ACTIONS, check_state_size
from .base import LearningAlgorithm, ModelLoadError, flatten_batch, batch_weights
from .network import MLP, read_params
from .replay import ReplayBuffer

logger = logging.getLogger(__name__)


class DQNAgent(LearningAlgorithm):
    """Online + target MLP Q-learning with experience replay"""

    name = "dqn"
    supports_deferred_training = True

    def __init__(self, state_size: int, num_actions: int = NUM_ACTIONS,
                 hidden_size: int = 64, learning_rate: float = 1e-3,
                 discount: float = 0.99, buffer_capacity: int = 10000,
                 batch_size: int = 32, update_target_every: int = 100,
                 epsilon: float = 1.0, epsilon_min: float = 0.01,
                 epsilon_decay: float = 0.995, seed: Optional[int] = None):
        self.state_size = state_size
        self.num_actions = num_actions
        self.hidden_size = hidden_size
        self.discount = discount
        self.batch_size = batch_size
        self.update_target_every = max(1, update_target_every)

        self.epsilon = epsilon
        self.epsilon_min = epsilon_min
        self.epsilon_decay = epsilon_decay

        self.rng = random.Random(seed)
        layers = [state_size, hidden_size, hidden_size, num_actions]
        self.online = MLP(layers, lr=learning_rate, seed=seed)
        self.target = MLP(layers, lr=learning_rate, seed=seed)
        self.target.copy_from(self.online)
        self.buffer = ReplayBuffer(buffer_capacity, rng=self.rng)

        # Serializes training steps; inference never waits on it
        self._train_lock = threading.Lock()
        self.train_steps = 0
        self.target_syncs = 0
        self.last_loss: Optional[float] = None

    @classmethod
    def from_config(cls, config: Dict[str, Any] = None) -> 'DQNAgent':
        config = config or {}
        return cls(
            state_size=config.get('state_size', 10),
            num_actions=config.get('num_actions', NUM_ACTIONS),
            hidden_size=config.get('hidden_size', 64),
            learning_rate=config.get('learning_rate', 1e-3),
            discount=config.get('discount', 0.99),
            buffer_capacity=config.get('buffer_capacity', 10000),
            batch_size=config.get('batch_size', 32),
            update_target_every=config.get('update_target_every', 100),
            epsilon=config.get('epsilon_start', 1.0),
            epsilon_min=config.get('epsilon_min', 0.01),
            epsilon_decay=config.get('epsilon_decay', 0.995),
            seed=config.get('seed'),
        )

    # Action selection

    def q_values(self, state) -> np.ndarray:
        return self.online.predict(check_state_size(state, self.state_size))

    def action_values(self, state) -> np.ndarray:
        return self.q_values(state)

    def select_action(self, state) -> int:
        q = self.q_values(state)
        if self.rng.random() < self.epsilon:
            return self.rng.randrange(self.num_actions)
        return int(np.argmax(q))

    # Learning

    def remember(self, experience):
        exp = as_flat(experience)
        check_state_size(exp.state, self.state_size)
        check_state_size(exp.next_state, self.state_size)
        self.buffer.add(exp)

    def train(self, experience):
        """
        Store the experience and train once the buffer can fill a batch.

        With deferred training the step is left to a background trainer.
        """
        self.remember(experience)
        if self.deferred_training or not self.buffer.is_ready(self.batch_size):
            return None
        return self.train_step()

    def _targets(self, experiences) -> tuple:
        states = np.stack([e.state for e in experiences])
        next_states = np.stack([e.next_state for e in experiences])
        actions = np.array([e.action for e in experiences], dtype=np.int64)
        rewards = np.array([e.reward for e in experiences], dtype=np.float64)
        dones = np.array([e.done for e in experiences], dtype=bool)

        if np.any((actions < 0) | (actions >= self.num_actions)):
            raise ValueError("Experience action out of range")

        current = self.online.forward(states).astype(np.float64)
        next_max = self.target.forward(next_states).max(axis=1).astype(np.float64)
        bootstrapped = np.where(dones, rewards, rewards + self.discount * next_max)

        rows = np.arange(len(experiences))
        td_errors = bootstrapped - current[rows, actions]
        targets = current.copy()
        targets[rows, actions] = bootstrapped
        return states, targets, td_errors

    def train_step(self) -> Optional[float]:
        """One gradient step on a uniform batch; no-op below batch size"""
        if not self.buffer.is_ready(self.batch_size):
            return None
        batch = self.buffer.sample(self.batch_size)
        with self._train_lock:
            states, targets, _ = self._targets(batch)
            loss = self.online.fit(states, targets)
            self._after_step(loss)
        return loss

    def train_batch(self, experiences: Sequence, weights=None) -> np.ndarray:
        """Weighted gradient step on a caller-supplied batch; returns TD-errors"""
        batch = flatten_batch(experiences)
        if not batch:
            return np.zeros(0, dtype=np.float64)
        for exp in batch:
            check_state_size(exp.state, self.state_size)
            check_state_size(exp.next_state, self.state_size)
        w = batch_weights(weights, len(batch))
        with self._train_lock:
            states, targets, td_errors = self._targets(batch)
            loss = self.online.fit(states, targets, weights=w)
            self._after_step(loss)
        return td_errors

    def _after_step(self, loss: float):
        # Caller holds the train lock
        self.last_loss = loss
        self.epsilon = max(self.epsilon_min, self.epsilon * self.epsilon_decay)
        self.train_steps += 1
        if self.train_steps % self.update_target_every == 0:
            self.sync_target()

    def sync_target(self):
        self.target.copy_from(self.online)
        self.target_syncs += 1
        logger.debug(f"Target network synced at step {self.train_steps}")

    # Exploration

    def get_exploration_rate(self) -> float:
        return self.epsilon

    def set_exploration_rate(self, rate: float):
        self.epsilon = max(0.0, min(1.0, float(rate)))

    # Persistence

    def save_model(self, path: str):
        os.makedirs(path, exist_ok=True)
        self.online.save(os.path.join(path, 'online.npz'))
        meta = {
            'algorithm': self.name,
            'state_size': self.state_size,
            'num_actions': self.num_actions,
            'hidden_size': self.hidden_size,
            'epsilon': self.epsilon,
            'train_steps': self.train_steps,
        }
        with open(os.path.join(path, 'meta.json'), 'w') as f:
            json.dump(meta, f, indent=2)
        logger.info(f"Saved DQN model to {path}")

    def load_model(self, path: str):
        params_path = os.path.join(path, 'online.npz')
        if not os.path.exists(params_path):
            raise ModelLoadError(f"No network parameters found at {params_path}")
        meta_path = os.path.join(path, 'meta.json')
        # Read and check everything before touching the live networks
        try:
            params = read_params(params_path)
            meta = {}
            if os.path.exists(meta_path):
                with open(meta_path, 'r') as f:
                    meta = json.load(f)
            if not isinstance(meta, dict):
                raise ValueError("metadata is not a JSON object")
            epsilon = float(meta.get('epsilon', self.epsilon))
            train_steps = int(meta.get('train_steps', self.train_steps))
            self.online.set_params(params)
        except (OSError, ValueError, TypeError, KeyError, zipfile.BadZipFile) as e:
            raise ModelLoadError(f"Corrupt DQN model at {path}: {e}")
        self.epsilon = epsilon
        self.train_steps = train_steps
        self.sync_target()
        logger.info(f"Loaded DQN model from {path}")

    def get_stats(self) -> Dict[str, Any]:
        return {
            'algorithm': self.name,
            'exploration_rate': self.epsilon,
            'train_steps': self.train_steps,
            'target_syncs': self.target_syncs,
            'buffer_size': len(self.buffer),
            'buffer_capacity': self.buffer.capacity,
            'last_loss': self.last_loss,
        }
