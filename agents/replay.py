"""
Experience Replay - Bounded stores of past experiences for off-policy training.

ReplayBuffer: FIFO with fixed capacity. When full, evicting the oldest entry
and inserting the newest happen as one locked step.

PrioritizedReplayBuffer: proportional prioritization over a sum tree.
New experiences enter at the current maximum priority so each is seen at
least once; sampling returns importance-sampling weights normalized by their
maximum, with beta annealed toward 1.
"""

from collections import deque
from typing import List, Tuple, Optional, Sequence
import random
import threading

import numpy as np

from core.experience import FlatExperience, as_flat


class ReplayBuffer:
    """Uniform FIFO replay buffer"""

    def __init__(self, capacity: int, rng: Optional[random.Random] = None):
        if capacity <= 0:
            raise ValueError(f"Replay capacity must be positive, got {capacity}")
        self.capacity = capacity
        self.rng = rng or random.Random()
        self._buffer: deque = deque()
        self._lock = threading.Lock()
        self.total_added = 0

    def add(self, experience):
        exp = as_flat(experience)
        with self._lock:
            if len(self._buffer) >= self.capacity:
                self._buffer.popleft()
            self._buffer.append(exp)
            self.total_added += 1

    def sample(self, batch_size: int) -> List[FlatExperience]:
        """Uniform sample without replacement within the batch"""
        with self._lock:
            if batch_size > len(self._buffer):
                raise ValueError(
                    f"Cannot sample {batch_size} from {len(self._buffer)} experiences")
            picks = self.rng.sample(range(len(self._buffer)), batch_size)
            return [self._buffer[i] for i in picks]

    def is_ready(self, batch_size: int) -> bool:
        return len(self._buffer) >= batch_size

    def contents(self) -> List[FlatExperience]:
        with self._lock:
            return list(self._buffer)

    def clear(self):
        with self._lock:
            self._buffer.clear()

    def __len__(self) -> int:
        return len(self._buffer)


class SumTree:
    """Binary tree where each parent holds the sum of its children"""

    def __init__(self, capacity: int):
        self.capacity = capacity
        self.tree = np.zeros(2 * capacity - 1, dtype=np.float64)
        self.data: List[Optional[FlatExperience]] = [None] * capacity
        # Bumped on every write so stale sample indices can be detected
        self.generations = np.zeros(capacity, dtype=np.int64)
        self.write = 0
        self.size = 0

    def _propagate(self, idx: int, change: float):
        while idx != 0:
            idx = (idx - 1) // 2
            self.tree[idx] += change

    def _retrieve(self, idx: int, value: float) -> int:
        while True:
            left = 2 * idx + 1
            right = left + 1
            if left >= len(self.tree):
                return idx
            if value <= self.tree[left] or self.tree[right] == 0:
                idx = left
            else:
                value -= self.tree[left]
                idx = right

    @property
    def total(self) -> float:
        return float(self.tree[0])

    def add(self, priority: float, data: FlatExperience):
        idx = self.write + self.capacity - 1
        self.data[self.write] = data
        self.generations[self.write] += 1
        self.update(idx, priority)
        self.write = (self.write + 1) % self.capacity
        self.size = min(self.size + 1, self.capacity)

    def update(self, idx: int, priority: float):
        change = priority - self.tree[idx]
        self.tree[idx] = priority
        self._propagate(idx, change)

    def get(self, value: float) -> Tuple[int, float, FlatExperience]:
        idx = self._retrieve(0, value)
        return idx, float(self.tree[idx]), self.data[self.slot(idx)]

    def slot(self, idx: int) -> int:
        return idx - self.capacity + 1

    def leaf_priorities(self) -> np.ndarray:
        return self.tree[self.capacity - 1:self.capacity - 1 + self.size]


class PrioritizedReplayBuffer:
    """Proportional prioritized replay"""

    def __init__(self, capacity: int, alpha: float = 0.6, beta_start: float = 0.4,
                 beta_increment: float = 0.001, epsilon: float = 0.01,
                 rng: Optional[random.Random] = None):
        if capacity <= 0:
            raise ValueError(f"Replay capacity must be positive, got {capacity}")
        self.capacity = capacity
        self.alpha = alpha
        self.beta = beta_start
        self.beta_increment = beta_increment
        self.epsilon = epsilon
        self.rng = rng or random.Random()
        self.tree = SumTree(capacity)
        self.max_priority = 1.0
        self._lock = threading.Lock()

    def add(self, experience):
        exp = as_flat(experience)
        with self._lock:
            self.tree.add(self.max_priority, exp)

    def sample(self, batch_size: int
               ) -> Tuple[List[FlatExperience], np.ndarray, np.ndarray]:
        """
        Sample a batch proportionally to priority.

        Returns:
            batch: sampled experiences
            indices: (tree index, slot generation) rows for update_priorities
            weights: importance-sampling weights in (0, 1]
        """
        with self._lock:
            n = self.tree.size
            if batch_size > n or n == 0:
                raise ValueError(f"Cannot sample {batch_size} from {n} experiences")

            batch, indices, priorities = [], [], []
            segment = self.tree.total / batch_size
            self.beta = min(1.0, self.beta + self.beta_increment)

            for i in range(batch_size):
                value = self.rng.uniform(segment * i, segment * (i + 1))
                idx, priority, data = self.tree.get(value)
                if data is None:
                    # Empty leaf hit through float round-off
                    idx, priority, data = self.tree.get(self.rng.uniform(0, self.tree.total))
                batch.append(data)
                indices.append((idx, self.tree.generations[self.tree.slot(idx)]))
                priorities.append(priority)

            probs = np.asarray(priorities) / self.tree.total
            weights = (n * probs) ** (-self.beta)
            weights = weights / weights.max()
            return batch, np.asarray(indices, dtype=np.int64).reshape(-1, 2), weights

    def update_priorities(self, indices: np.ndarray, td_errors: Sequence[float]):
        """Re-prioritize sampled entries; slots overwritten since sampling are skipped"""
        with self._lock:
            for (idx, generation), error in zip(indices, td_errors):
                if self.tree.generations[self.tree.slot(int(idx))] != generation:
                    continue
                priority = (abs(float(error)) + self.epsilon) ** self.alpha
                self.tree.update(int(idx), priority)
                self.max_priority = max(self.max_priority, priority)

    def is_ready(self, batch_size: int) -> bool:
        return self.tree.size >= batch_size

    def __len__(self) -> int:
        return self.tree.size
