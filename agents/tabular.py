"""
Tabular Q-Learning Agent

Maintains a sparse table state-key -> per-action values and applies the
Q-learning rule:

    td_error = reward + gamma * max_a' Q(s', a') - Q(s, a)
    Q(s, a) += alpha * td_error

Batched updates accept importance-sampling weights from prioritized replay
and scale each update by its weight. The table can be shared by reference
across agents that share a policy.
"""

from collections import deque
from typing import Dict, Any, Optional, Sequence
import json
import logging
import os
import threading
import zipfile

import numpy as np

from core.experience import as_flat
from core.exploration import EpsilonGreedyPolicy, AdaptiveEpsilonPolicy
from core.qtable import QTable
from core.state import NUM_ACTIONS, BaseState, state_key
from .base import LearningAlgorithm, ModelLoadError, flatten_batch, batch_weights

logger = logging.getLogger(__name__)

REWARD_HISTORY = 1000


def _key(state) -> int:
    if isinstance(state, BaseState):
        return state.state_key()
    if state is None:
        raise ValueError("State is required")
    arr = np.asarray(state, dtype=np.float64).ravel()
    if arr.shape[0] == 0:
        raise ValueError("State vector must not be empty")
    return state_key(arr)


class TabularQAgent(LearningAlgorithm):
    """Q-learning over a shared, thread-safe table"""

    name = "tabular"

    def __init__(self, num_actions: int = NUM_ACTIONS, learning_rate: float = 0.1,
                 discount: float = 0.95, policy: EpsilonGreedyPolicy = None,
                 table: QTable = None, learning_rate_decay: float = 1.0,
                 min_learning_rate: float = 0.01):
        if table is not None and table.num_actions != num_actions:
            raise ValueError(
                f"Shared table has {table.num_actions} actions, agent expects {num_actions}")
        self.num_actions = num_actions
        self.learning_rate = learning_rate
        self.initial_learning_rate = learning_rate
        self.discount = discount
        self.learning_rate_decay = learning_rate_decay
        self.min_learning_rate = min_learning_rate

        self.policy = policy or EpsilonGreedyPolicy()
        self.table = table if table is not None else QTable(num_actions)

        self._stats_lock = threading.Lock()
        self.update_count = 0
        self.total_reward = 0.0
        self.reward_history: deque = deque(maxlen=REWARD_HISTORY)

    @classmethod
    def from_config(cls, config: Dict[str, Any] = None, table: QTable = None,
                    rng=None) -> 'TabularQAgent':
        config = config or {}
        if config.get('adaptive_exploration', False):
            policy = AdaptiveEpsilonPolicy.from_config(config, rng=rng)
        else:
            policy = EpsilonGreedyPolicy.from_config(config, rng=rng)
        return cls(
            num_actions=config.get('num_actions', NUM_ACTIONS),
            learning_rate=config.get('learning_rate', 0.1),
            discount=config.get('discount', 0.95),
            policy=policy,
            table=table,
            learning_rate_decay=config.get('learning_rate_decay', 1.0),
            min_learning_rate=config.get('min_learning_rate', 0.01),
        )

    # Action selection

    def q_values(self, state) -> np.ndarray:
        return self.table.get(_key(state))

    def action_values(self, state) -> np.ndarray:
        """Like q_values, but never creates a row for an unseen state"""
        row = self.table.peek(_key(state))
        return row if row is not None else np.zeros(self.num_actions, dtype=np.float64)

    def decide_action(self, state) -> int:
        return self.policy.select_action(self.q_values(state))

    def select_action(self, state) -> int:
        return self.decide_action(state)

    # Learning

    def _check_action(self, action: int) -> int:
        action = int(action)
        if not 0 <= action < self.num_actions:
            raise ValueError(f"Action {action} out of range for {self.num_actions} actions")
        return action

    def learn(self, state, action: int, reward: float, next_state,
              terminal: bool = False, weight: float = 1.0) -> float:
        """Apply one Q-learning update and return the TD-error"""
        action = self._check_action(action)
        key = _key(state)
        current = self.table.value(key, action)
        future = 0.0 if terminal else self.table.max_value(_key(next_state))

        td_error = reward + self.discount * future - current
        self.table.update(key, action, self.learning_rate * td_error * weight)
        return td_error

    def train(self, experience):
        exp = as_flat(experience)
        key = _key(exp.state)
        action = self._check_action(exp.action)
        q_before = self.table.value(key, action)

        td_error = self.learn(exp.state, action, exp.reward, exp.next_state, exp.done)

        q_after = self.table.value(key, action)
        self._record(exp.reward)
        self._after_update(exp.reward, q_before, q_after)
        return td_error

    def train_on_batch(self, batch: Sequence, weights: Optional[Sequence[float]] = None
                       ) -> np.ndarray:
        """Weighted updates for a sampled batch; returns per-experience TD-errors"""
        experiences = flatten_batch(batch)
        w = batch_weights(weights, len(experiences))
        td_errors = np.zeros(len(experiences), dtype=np.float64)

        for i, exp in enumerate(experiences):
            td_errors[i] = self.learn(exp.state, exp.action, exp.reward,
                                      exp.next_state, exp.done, weight=w[i])
            self._record(exp.reward)

        if experiences:
            self.policy.decay_epsilon()
            self._decay_learning_rate()
        return td_errors

    def train_batch(self, experiences, weights=None) -> np.ndarray:
        return self.train_on_batch(experiences, weights)

    def _record(self, reward: float):
        with self._stats_lock:
            self.update_count += 1
            self.total_reward += reward
            self.reward_history.append(reward)

    def _after_update(self, reward: float, q_before: float, q_after: float):
        if isinstance(self.policy, AdaptiveEpsilonPolicy):
            self.policy.update_learning_feedback(
                reward, self.policy.last_action_was_exploration, q_before, q_after)
        self.policy.decay_epsilon()
        self._decay_learning_rate()

    def _decay_learning_rate(self):
        if self.learning_rate_decay < 1.0:
            self.learning_rate = max(self.min_learning_rate,
                                     self.learning_rate * self.learning_rate_decay)

    # Exploration

    def get_exploration_rate(self) -> float:
        return self.policy.get_epsilon()

    def set_exploration_rate(self, rate: float):
        self.policy.set_epsilon(rate)

    # Table management

    def export_table(self) -> Dict[int, np.ndarray]:
        return self.table.snapshot()

    def import_table(self, rows: Dict[int, np.ndarray]):
        self.table.load(rows)

    def reset(self):
        self.table.clear()
        self.policy.reset_epsilon()
        self.learning_rate = self.initial_learning_rate
        with self._stats_lock:
            self.update_count = 0
            self.total_reward = 0.0
            self.reward_history.clear()

    # Persistence

    def save_model(self, path: str):
        """Save table and metadata into a directory"""
        os.makedirs(path, exist_ok=True)
        rows = self.table.snapshot()
        keys = np.array(list(rows.keys()), dtype=np.uint64)
        values = (np.stack(list(rows.values())) if rows
                  else np.zeros((0, self.num_actions), dtype=np.float64))
        np.savez(os.path.join(path, 'qtable.npz'), keys=keys, values=values)

        meta = {
            'algorithm': self.name,
            'num_actions': self.num_actions,
            'learning_rate': self.learning_rate,
            'discount': self.discount,
            'epsilon': self.policy.get_epsilon(),
            'update_count': self.update_count,
        }
        with open(os.path.join(path, 'meta.json'), 'w') as f:
            json.dump(meta, f, indent=2)
        logger.info(f"Saved Q-table with {len(rows)} states to {path}")

    def load_model(self, path: str):
        table_path = os.path.join(path, 'qtable.npz')
        meta_path = os.path.join(path, 'meta.json')
        if not os.path.exists(table_path):
            raise ModelLoadError(f"No Q-table found at {table_path}")
        try:
            with np.load(table_path) as data:
                keys = data['keys']
                values = data['values']
            meta = {}
            if os.path.exists(meta_path):
                with open(meta_path, 'r') as f:
                    meta = json.load(f)
        except (OSError, ValueError, KeyError, zipfile.BadZipFile) as e:
            raise ModelLoadError(f"Corrupt Q-table at {path}: {e}")

        if values.ndim != 2 or (len(keys) and values.shape[1] != self.num_actions):
            raise ModelLoadError(
                f"Q-table at {path} has shape {values.shape}, expected (*, {self.num_actions})")

        self.table.clear()
        self.table.load({int(k): v for k, v in zip(keys, values)})
        if 'epsilon' in meta:
            self.policy.set_epsilon(meta['epsilon'])
        if 'learning_rate' in meta:
            self.learning_rate = meta['learning_rate']
        self.update_count = meta.get('update_count', self.update_count)
        logger.info(f"Loaded Q-table with {len(keys)} states from {path}")

    def get_stats(self) -> Dict[str, Any]:
        with self._stats_lock:
            history = list(self.reward_history)
            return {
                'algorithm': self.name,
                'updates': self.update_count,
                'states': len(self.table),
                'total_reward': self.total_reward,
                'average_reward': sum(history) / len(history) if history else 0.0,
                'learning_rate': self.learning_rate,
                'exploration_rate': self.policy.get_epsilon(),
                'discount': self.discount,
            }
