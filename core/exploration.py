"""
Exploration Policies - Deciding between exploring and exploiting.

EpsilonGreedyPolicy: explore uniformly with probability epsilon, otherwise
take the best-valued action (ties go to the lowest index). Epsilon decays
multiplicatively toward a floor after each training step.

AdaptiveEpsilonPolicy: additionally nudges epsilon from learning feedback.
Three additive signals are combined on every feedback call:
1. Reward trend - worsening rewards raise epsilon, improving rewards lower it
2. Exploration success - rarely-useful exploration raises it, often-useful
   exploration lowers it
3. Time - epsilon drifts down as the step count approaches a horizon
"""

from collections import deque
from typing import Dict, Any, Optional, Sequence
import logging
import random
import threading

import numpy as np

logger = logging.getLogger(__name__)


def _clamp01(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


def _check_q_values(q_values) -> np.ndarray:
    if q_values is None:
        raise ValueError("Q-values are required")
    q = np.asarray(q_values, dtype=np.float64).ravel()
    if q.shape[0] == 0:
        raise ValueError("Q-values must not be empty")
    return q


class EpsilonGreedyPolicy:
    """Fixed-schedule epsilon-greedy action selection"""

    def __init__(self, initial_epsilon: float = 0.3, min_epsilon: float = 0.01,
                 decay: float = 0.995, rng: Optional[random.Random] = None):
        self.initial_epsilon = _clamp01(initial_epsilon)
        self.min_epsilon = _clamp01(min_epsilon)
        self.decay = _clamp01(decay)
        self.epsilon = self.initial_epsilon
        self.rng = rng or random.Random()

        self.last_action_was_exploration = False
        self.exploration_count = 0
        self.exploitation_count = 0

    @classmethod
    def from_config(cls, config: Dict[str, Any] = None,
                    rng: Optional[random.Random] = None) -> 'EpsilonGreedyPolicy':
        config = config or {}
        return cls(
            initial_epsilon=config.get('epsilon_start', 0.1),
            min_epsilon=config.get('epsilon_min', 0.01),
            decay=config.get('epsilon_decay', 0.995),
            rng=rng,
        )

    @staticmethod
    def get_best_action(q_values: Sequence[float]) -> int:
        """Arg-max with ties resolved to the lowest index"""
        q = _check_q_values(q_values)
        # np.argmax returns the first maximal index
        return int(np.argmax(q))

    def should_explore(self, epsilon: Optional[float] = None) -> bool:
        eps = self.epsilon if epsilon is None else epsilon
        return self.rng.random() < eps

    def select_action(self, q_values: Sequence[float],
                      epsilon_override: Optional[float] = None) -> int:
        """
        Pick an action index from per-action values.

        A non-negative epsilon_override replaces the current epsilon for this
        call only.
        """
        q = _check_q_values(q_values)
        eps = self.epsilon
        if epsilon_override is not None and epsilon_override >= 0:
            eps = epsilon_override

        if self.should_explore(eps):
            self.last_action_was_exploration = True
            self.exploration_count += 1
            return self.rng.randrange(q.shape[0])

        self.last_action_was_exploration = False
        self.exploitation_count += 1
        return int(np.argmax(q))

    def select_action_limited(self, q_values: Sequence[float], max_actions: int) -> int:
        """Select among only the first max_actions entries"""
        q = _check_q_values(q_values)
        if max_actions <= 0:
            raise ValueError(f"max_actions must be positive, got {max_actions}")
        return self.select_action(q[:min(max_actions, q.shape[0])])

    def decay_epsilon(self):
        self.epsilon = max(self.min_epsilon, self.epsilon * self.decay)

    def reset_epsilon(self):
        self.epsilon = self.initial_epsilon

    def get_epsilon(self) -> float:
        return self.epsilon

    def set_epsilon(self, epsilon: float):
        self.epsilon = _clamp01(epsilon)

    def set_min_epsilon(self, min_epsilon: float):
        self.min_epsilon = _clamp01(min_epsilon)

    def set_decay(self, decay: float):
        self.decay = _clamp01(decay)

    def get_stats(self) -> Dict[str, Any]:
        total = self.exploration_count + self.exploitation_count
        return {
            'epsilon': self.epsilon,
            'initial_epsilon': self.initial_epsilon,
            'min_epsilon': self.min_epsilon,
            'decay': self.decay,
            'exploration_count': self.exploration_count,
            'exploitation_count': self.exploitation_count,
            'exploration_ratio': self.exploration_count / total if total > 0 else 0.0,
        }


class AdaptiveEpsilonPolicy(EpsilonGreedyPolicy):
    """
    Epsilon-greedy whose epsilon also reacts to learning feedback.

    Epsilon never leaves [min_epsilon, initial_epsilon].
    """

    MIN_SAMPLES = 10
    LOW_SUCCESS_RATE = 0.3
    HIGH_SUCCESS_RATE = 0.7
    TIME_ADAPTATION_START = 100

    def __init__(self, initial_epsilon: float = 0.3, min_epsilon: float = 0.01,
                 decay: float = 0.995, adaptation_rate: float = 0.01,
                 window_size: int = 100, improvement_threshold: float = 0.01,
                 horizon: int = 10000, rng: Optional[random.Random] = None):
        super().__init__(initial_epsilon, min_epsilon, decay, rng)
        self.adaptation_rate = adaptation_rate
        self.window_size = max(1, int(window_size))
        self.improvement_threshold = improvement_threshold
        self.horizon = max(1, int(horizon))

        self._lock = threading.RLock()
        self.recent_rewards: deque = deque(maxlen=self.window_size)
        self.step_count = 0
        self.exploration_attempts = 0
        self.exploration_successes = 0
        self.exploration_success_rate = 0.0
        self.last_average_reward = 0.0

    @classmethod
    def from_config(cls, config: Dict[str, Any] = None,
                    rng: Optional[random.Random] = None) -> 'AdaptiveEpsilonPolicy':
        config = config or {}
        return cls(
            initial_epsilon=config.get('epsilon_start', 0.1),
            min_epsilon=config.get('epsilon_min', 0.01),
            decay=config.get('epsilon_decay', 0.995),
            adaptation_rate=config.get('adaptation_rate', 0.01),
            window_size=config.get('reward_window', 100),
            improvement_threshold=config.get('improvement_threshold', 0.01),
            horizon=config.get('epsilon_horizon', 10000),
            rng=rng,
        )

    def update_learning_feedback(self, reward: float, was_exploration: bool,
                                 q_before: float, q_after: float):
        """Record the outcome of one learning update and adapt epsilon"""
        with self._lock:
            self.step_count += 1
            self.recent_rewards.append(float(reward))

            if was_exploration:
                self.exploration_attempts += 1
                if q_after > q_before:
                    self.exploration_successes += 1
                self.exploration_success_rate = (
                    self.exploration_successes / self.exploration_attempts)

            self._adapt_epsilon()

    def _adapt_epsilon(self):
        adjustment = 0.0

        # Reward trend
        if len(self.recent_rewards) >= self.MIN_SAMPLES:
            average = sum(self.recent_rewards) / len(self.recent_rewards)
            improvement = average - self.last_average_reward
            if improvement < -self.improvement_threshold:
                adjustment += self.adaptation_rate
            elif improvement > self.improvement_threshold:
                adjustment -= self.adaptation_rate * 0.5
            self.last_average_reward = average

        # Exploration success
        if self.exploration_attempts >= self.MIN_SAMPLES:
            if self.exploration_success_rate < self.LOW_SUCCESS_RATE:
                adjustment += self.adaptation_rate * 1.5
            elif self.exploration_success_rate > self.HIGH_SUCCESS_RATE:
                adjustment -= self.adaptation_rate

        # Time
        if self.step_count >= self.TIME_ADAPTATION_START:
            progress = min(1.0, self.step_count / self.horizon)
            adjustment -= self.adaptation_rate * (1.0 - progress)

        if adjustment != 0.0:
            old = self.epsilon
            self.epsilon = max(self.min_epsilon,
                               min(self.initial_epsilon, self.epsilon + adjustment))
            logger.debug(f"Adaptive epsilon {old:.4f} -> {self.epsilon:.4f} "
                         f"(adjustment {adjustment:+.4f})")

    def decay_epsilon(self):
        with self._lock:
            super().decay_epsilon()
            self._adapt_epsilon()

    def reset_epsilon(self):
        with self._lock:
            super().reset_epsilon()
            self.reset_learning_tracking()

    def reset_learning_tracking(self):
        with self._lock:
            self.recent_rewards.clear()
            self.step_count = 0
            self.exploration_attempts = 0
            self.exploration_successes = 0
            self.exploration_success_rate = 0.0
            self.last_average_reward = 0.0

    def average_reward(self) -> float:
        rewards = list(self.recent_rewards)
        return sum(rewards) / len(rewards) if rewards else 0.0

    def get_adaptation_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                'step_count': self.step_count,
                'average_reward': self.average_reward(),
                'exploration_success_rate': self.exploration_success_rate,
                'exploration_attempts': self.exploration_attempts,
                'current_epsilon': self.epsilon,
                'reward_window_size': len(self.recent_rewards),
            }

    def get_stats(self) -> Dict[str, Any]:
        stats = super().get_stats()
        stats.update(self.get_adaptation_stats())
        return stats
