"""
Learning Algorithm Contract - The one interface every agent type implements.

The coordinator, trainer, validator and persistence layer depend only on
this contract, so tabular, neural, policy-gradient and evolutionary agents
are freely swappable.
"""

from abc import ABC, abstractmethod
from typing import Dict, Any, List, Optional, Sequence

import numpy as np

from core.experience import FlatExperience, as_flat


class ModelLoadError(Exception):
    """A model artifact is missing, unreadable or incompatible"""


class LearningAlgorithm(ABC):
    """Capability interface shared by all learning agents"""

    name = "algorithm"

    # Agents that buffer experience and can run batch steps off the caller's thread
    supports_deferred_training = False
    deferred_training = False

    @abstractmethod
    def select_action(self, state) -> int:
        """Choose an action index for a flattened state"""

    @abstractmethod
    def train(self, experience):
        """Learn from one experience (structured or flattened)"""

    @abstractmethod
    def train_batch(self, experiences: Sequence[FlatExperience],
                    weights: Optional[Sequence[float]] = None) -> np.ndarray:
        """Learn from a batch with optional importance weights; returns TD-errors"""

    @abstractmethod
    def get_exploration_rate(self) -> float:
        ...

    @abstractmethod
    def set_exploration_rate(self, rate: float):
        ...

    @abstractmethod
    def save_model(self, path: str):
        ...

    @abstractmethod
    def load_model(self, path: str):
        ...

    def defer_training(self):
        """train() only records experience from now on; train_step() runs batches"""
        if not self.supports_deferred_training:
            raise NotImplementedError(f"{type(self).__name__} trains synchronously")
        self.deferred_training = True

    def train_step(self):
        """One batch step from buffered experience; None when nothing is due"""
        return None

    def action_values(self, state) -> np.ndarray:
        """Per-action scores for a state, used by validation"""
        raise NotImplementedError(f"{type(self).__name__} does not expose action values")

    def greedy_action(self, state) -> int:
        return int(np.argmax(self.action_values(state)))

    def get_stats(self) -> Dict[str, Any]:
        return {'algorithm': self.name, 'exploration_rate': self.get_exploration_rate()}


def flatten_batch(experiences) -> List[FlatExperience]:
    return [as_flat(e) for e in experiences]


def batch_weights(weights, size: int) -> np.ndarray:
    if weights is None:
        return np.ones(size, dtype=np.float64)
    w = np.asarray(weights, dtype=np.float64).ravel()
    if w.shape[0] != size:
        raise ValueError(f"Expected {size} importance weights, got {w.shape[0]}")
    return w
