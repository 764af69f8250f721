"""
Shared Q-Value Table - state identity -> per-action value estimates.

One table may be shared by reference across many agents, so every access is
thread-safe:
- a lookup miss materializes a zero row atomically per key (first-touch)
- value updates are read-modify-write under the key's lock
- locks are striped by key so unrelated keys do not contend
"""

import threading
from typing import Dict, Hashable, Optional

import numpy as np


class QTable:
    """Thread-safe sparse mapping from state key to action values"""

    def __init__(self, num_actions: int, num_stripes: int = 64):
        if num_actions <= 0:
            raise ValueError(f"num_actions must be positive, got {num_actions}")
        self.num_actions = num_actions
        self._rows: Dict[Hashable, np.ndarray] = {}
        self._stripes = [threading.Lock() for _ in range(max(1, num_stripes))]

    def _lock_for(self, key: Hashable) -> threading.Lock:
        return self._stripes[hash(key) % len(self._stripes)]

    def _row(self, key: Hashable) -> np.ndarray:
        # Caller holds the key's stripe lock
        row = self._rows.get(key)
        if row is None:
            row = np.zeros(self.num_actions, dtype=np.float64)
            self._rows[key] = row
        return row

    def get(self, key: Hashable) -> np.ndarray:
        """Copy of the row for key; a missing row is created as zeros"""
        with self._lock_for(key):
            return self._row(key).copy()

    def peek(self, key: Hashable) -> Optional[np.ndarray]:
        """Copy of the row if present, without creating it"""
        row = self._rows.get(key)
        return None if row is None else row.copy()

    def value(self, key: Hashable, action: int) -> float:
        with self._lock_for(key):
            return float(self._row(key)[action])

    def max_value(self, key: Hashable) -> float:
        with self._lock_for(key):
            return float(np.max(self._row(key)))

    def set_value(self, key: Hashable, action: int, value: float):
        with self._lock_for(key):
            self._row(key)[action] = value

    def update(self, key: Hashable, action: int, delta: float) -> float:
        """Atomically add delta to Q(key, action) and return the new value"""
        with self._lock_for(key):
            row = self._row(key)
            row[action] += delta
            return float(row[action])

    def snapshot(self) -> Dict[Hashable, np.ndarray]:
        """Deep copy of every row"""
        return {k: v.copy() for k, v in list(self._rows.items())}

    def load(self, rows: Dict[Hashable, np.ndarray]):
        for key, values in rows.items():
            arr = np.asarray(values, dtype=np.float64).ravel()
            if arr.shape[0] != self.num_actions:
                raise ValueError(
                    f"Row for {key} has {arr.shape[0]} values, expected {self.num_actions}")
            with self._lock_for(key):
                self._rows[key] = arr.copy()

    def clear(self):
        for lock in self._stripes:
            lock.acquire()
        try:
            self._rows.clear()
        finally:
            for lock in self._stripes:
                lock.release()

    def __len__(self) -> int:
        return len(self._rows)

    def __contains__(self, key: Hashable) -> bool:
        return key in self._rows
