"""
Background Trainers - Batch learning off the tick thread.

PrioritizedTrainer replays high-error experiences in the background.
Experiences observed by the coordinator are stored in a prioritized replay
buffer. Batch training samples by priority, applies importance-weighted
updates through the algorithm's batch entry point, and feeds the returned
TD-errors back as new priorities. Only one batch is in flight at a time.
"""

from concurrent.futures import Future
from typing import Any, Dict, Optional
import logging
import threading

import numpy as np

from agents.base import LearningAlgorithm
from agents.replay import PrioritizedReplayBuffer
from .worker import BackgroundWorker, TaskType

logger = logging.getLogger(__name__)


class PrioritizedTrainer:

    def __init__(self, algorithm: LearningAlgorithm, buffer: PrioritizedReplayBuffer,
                 worker: Optional[BackgroundWorker] = None, batch_size: int = 32,
                 train_every: int = 1):
        self.algorithm = algorithm
        self.buffer = buffer
        self.worker = worker
        self.batch_size = batch_size
        self.train_every = max(1, train_every)

        self._lock = threading.Lock()
        self._in_flight: Optional[Future] = None
        self.observed = 0
        self.batches_trained = 0
        self.batches_skipped = 0
        self.last_mean_td_error: Optional[float] = None

    def observe(self, experience):
        """Remember an experience and kick off a background batch when due"""
        self.buffer.add(experience)
        self.observed += 1
        if self.worker is not None and self.observed % self.train_every == 0:
            self.train_async()

    def train_batch(self) -> Optional[np.ndarray]:
        """Sample, train and re-prioritize one batch; None below batch size"""
        if not self.buffer.is_ready(self.batch_size):
            return None
        batch, indices, weights = self.buffer.sample(self.batch_size)
        td_errors = self.algorithm.train_batch(batch, weights)
        self.buffer.update_priorities(indices, td_errors)
        with self._lock:
            self.batches_trained += 1
            self.last_mean_td_error = float(np.mean(np.abs(td_errors)))
        return td_errors

    def train_async(self) -> Optional[Future]:
        """Submit a batch to the worker; never blocks the caller"""
        if self.worker is None or self.worker.is_shutdown:
            return None
        if not self.buffer.is_ready(self.batch_size):
            return None
        with self._lock:
            if self._in_flight is not None and not self._in_flight.done():
                self.batches_skipped += 1
                return None
            self._in_flight = self.worker.submit(TaskType.TRAIN_BATCH, self.train_batch)
            return self._in_flight

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                'observed': self.observed,
                'buffer_size': len(self.buffer),
                'buffer_capacity': self.buffer.capacity,
                'batches_trained': self.batches_trained,
                'batches_skipped': self.batches_skipped,
                'last_mean_td_error': self.last_mean_td_error,
                'beta': self.buffer.beta,
            }


class BackgroundTrainer:
    """
    Runs an algorithm's own batch steps on the worker.

    The algorithm is switched to deferred training, so train() on the tick
    thread only records experience. Each observed experience requests a
    train_step() on the worker; while one is in flight further requests are
    skipped.
    """

    def __init__(self, algorithm: LearningAlgorithm, worker: BackgroundWorker,
                 train_every: int = 1):
        algorithm.defer_training()
        self.algorithm = algorithm
        self.worker = worker
        self.train_every = max(1, train_every)

        self._lock = threading.Lock()
        self._in_flight: Optional[Future] = None
        self.observed = 0
        self.batches_trained = 0
        self.batches_skipped = 0

    def observe(self, experience):
        self.observed += 1
        if self.observed % self.train_every == 0:
            self.train_async()

    def _train(self):
        result = self.algorithm.train_step()
        if result is not None:
            with self._lock:
                self.batches_trained += 1
        return result

    def train_async(self) -> Optional[Future]:
        if self.worker.is_shutdown:
            return None
        with self._lock:
            if self._in_flight is not None and not self._in_flight.done():
                self.batches_skipped += 1
                return None
            self._in_flight = self.worker.submit(TaskType.TRAIN_BATCH, self._train)
            return self._in_flight

    def wait(self, timeout: Optional[float] = None):
        """Block until the in-flight batch, if any, has finished"""
        with self._lock:
            future = self._in_flight
        if future is not None:
            future.result(timeout=timeout)

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                'observed': self.observed,
                'batches_trained': self.batches_trained,
                'batches_skipped': self.batches_skipped,
                'in_flight': self._in_flight is not None and not self._in_flight.done(),
            }
