"""
Reward Model - Turning environment deltas into a scalar learning signal.

Five independently weighted terms are summed:
- combat: damage dealt, damage taken, kill bonus
- movement: bonus for moving, larger when targets are nearby
- survival: per-tick bonus while alive, death penalty, health ratio shaping
- exploration: one-time bonus for each new 16-block cell an agent visits
- time: penalty when an agent stays idle too long

Per-agent trackers (last health, last location, last action time, visited
cells) and running statistics are kept in thread-safe maps.
"""

from dataclasses import dataclass, field
from typing import Dict, Any, Optional, Set, Tuple, Callable
import logging
import threading
import time

from .config import RewardWeights, RewardValues
from .state import Location, FeatureState

logger = logging.getLogger(__name__)

GOAL_MULTIPLIERS = {
    'combat': 2.0,
    'exploration': 1.5,
    'survival': 2.5,
    'movement': 1.0,
}

LOG_EVERY = 100
LOG_REWARD_MAGNITUDE = 5.0
POOR_AVERAGE_REWARD = -1.0


@dataclass
class RewardOutcome:
    """Reward-relevant deltas reported back by the action executor"""
    health: float
    max_health: float = 20.0
    location: Optional[Location] = None
    alive: bool = True
    damage_dealt: float = 0.0
    damage_taken: Optional[float] = None  # derived from last health when None
    kill: bool = False
    targets_nearby: bool = False
    goal_completed: bool = False
    timestamp: Optional[float] = None


@dataclass
class RewardBreakdown:
    combat: float = 0.0
    movement: float = 0.0
    survival: float = 0.0
    exploration: float = 0.0
    time: float = 0.0
    goal: float = 0.0

    @property
    def total(self) -> float:
        return (self.combat + self.movement + self.survival +
                self.exploration + self.time + self.goal)


@dataclass
class AgentRewardStats:
    """Running reward statistics for one agent"""
    agent_id: str
    total_reward: float = 0.0
    calculations: int = 0
    best_reward: float = float('-inf')
    worst_reward: float = float('inf')
    term_totals: Dict[str, float] = field(default_factory=lambda: {
        'combat': 0.0, 'movement': 0.0, 'survival': 0.0,
        'exploration': 0.0, 'time': 0.0, 'goal': 0.0,
    })

    @property
    def average_reward(self) -> float:
        return self.total_reward / self.calculations if self.calculations > 0 else 0.0

    def add(self, breakdown: RewardBreakdown):
        total = breakdown.total
        self.total_reward += total
        self.calculations += 1
        self.best_reward = max(self.best_reward, total)
        self.worst_reward = min(self.worst_reward, total)
        for name in self.term_totals:
            self.term_totals[name] += getattr(breakdown, name)

    def to_dict(self) -> Dict[str, Any]:
        has_data = self.calculations > 0
        return {
            'agent_id': self.agent_id,
            'total_reward': self.total_reward,
            'calculations': self.calculations,
            'average_reward': self.average_reward,
            'best_reward': self.best_reward if has_data else 0.0,
            'worst_reward': self.worst_reward if has_data else 0.0,
            'term_totals': dict(self.term_totals),
        }


@dataclass
class _AgentTracker:
    last_health: Optional[float] = None
    last_location: Optional[Location] = None
    last_action_time: Optional[float] = None
    visited_cells: Set[Tuple[int, int]] = field(default_factory=set)


class RewardModel:
    """
    Multi-factor reward calculation with per-agent tracking.

    The time weight multiplies the idle indicator, so a negative weight makes
    idling a penalty.
    """

    def __init__(self, weights: RewardWeights = None, values: RewardValues = None,
                 clock: Callable[[], float] = time.time):
        self.weights = weights or RewardWeights()
        self.values = values or RewardValues()
        self.clock = clock

        self._lock = threading.RLock()
        self._trackers: Dict[str, _AgentTracker] = {}
        self._stats: Dict[str, AgentRewardStats] = {}

    @classmethod
    def from_config(cls, config: Dict[str, Any] = None,
                    clock: Callable[[], float] = time.time) -> 'RewardModel':
        config = config or {}
        return cls(
            weights=RewardWeights.from_dict(config.get('reward_weights', {})),
            values=RewardValues.from_dict(config.get('reward_values', {})),
            clock=clock,
        )

    def _tracker(self, agent_id: str) -> _AgentTracker:
        # Caller holds the lock
        tracker = self._trackers.get(agent_id)
        if tracker is None:
            tracker = _AgentTracker()
            self._trackers[agent_id] = tracker
        return tracker

    def _agent_stats(self, agent_id: str) -> AgentRewardStats:
        stats = self._stats.get(agent_id)
        if stats is None:
            stats = AgentRewardStats(agent_id=agent_id)
            self._stats[agent_id] = stats
        return stats

    def calculate_reward(self, agent_id: str, outcome: RewardOutcome) -> float:
        """Weighted sum of all reward terms for one agent step"""
        return self.calculate_breakdown(agent_id, outcome).total

    def calculate_breakdown(self, agent_id: str, outcome: RewardOutcome) -> RewardBreakdown:
        now = outcome.timestamp if outcome.timestamp is not None else self.clock()
        w = self.weights

        with self._lock:
            tracker = self._tracker(agent_id)
            breakdown = RewardBreakdown(
                combat=self._combat(tracker, outcome) * w.combat,
                movement=self._movement(tracker, outcome) * w.movement,
                survival=self._survival(outcome) * w.survival,
                exploration=self._exploration(tracker, outcome) * w.exploration,
                time=self._idle(tracker, now) * w.time,
                goal=self.values.goal_completion if outcome.goal_completed else 0.0,
            )

            tracker.last_health = outcome.health
            if outcome.location is not None:
                tracker.last_location = outcome.location
            tracker.last_action_time = now

            stats = self._agent_stats(agent_id)
            stats.add(breakdown)
            self._log_reward(stats, breakdown)

        return breakdown

    def _combat(self, tracker: _AgentTracker, outcome: RewardOutcome) -> float:
        v = self.values
        reward = 0.0
        if outcome.damage_dealt > 0:
            reward += v.damage_dealt * outcome.damage_dealt

        damage_taken = outcome.damage_taken
        if damage_taken is None and tracker.last_health is not None:
            damage_taken = max(0.0, tracker.last_health - outcome.health)
        if damage_taken:
            reward += v.damage_taken * damage_taken

        if outcome.kill:
            reward += v.kill
        return reward

    def _movement(self, tracker: _AgentTracker, outcome: RewardOutcome) -> float:
        if tracker.last_location is None or outcome.location is None:
            return 0.0
        moved = outcome.location.distance_to(tracker.last_location)
        if moved <= self.values.movement_threshold:
            return 0.0
        reward = self.values.movement
        if outcome.targets_nearby:
            reward += self.values.movement * self.values.target_bonus
        return reward

    def _survival(self, outcome: RewardOutcome) -> float:
        v = self.values
        reward = v.alive if outcome.alive else v.death
        if outcome.max_health > 0:
            ratio = outcome.health / outcome.max_health
            if ratio > 0.8:
                reward += v.high_health_bonus
            elif ratio < 0.3:
                reward += v.low_health_penalty
        return reward

    def _exploration(self, tracker: _AgentTracker, outcome: RewardOutcome) -> float:
        if outcome.location is None:
            return 0.0
        cell = outcome.location.chunk()
        if cell in tracker.visited_cells:
            return 0.0
        tracker.visited_cells.add(cell)
        return self.values.exploration

    def _idle(self, tracker: _AgentTracker, now: float) -> float:
        if tracker.last_action_time is None:
            return 0.0
        return 1.0 if now - tracker.last_action_time > self.values.idle_threshold else 0.0

    def _log_reward(self, stats: AgentRewardStats, breakdown: RewardBreakdown):
        total = breakdown.total
        if stats.calculations % LOG_EVERY == 0 or abs(total) > LOG_REWARD_MAGNITUDE:
            logger.info(
                f"Reward for {stats.agent_id}: total={total:.3f} "
                f"(combat={breakdown.combat:.3f}, movement={breakdown.movement:.3f}, "
                f"survival={breakdown.survival:.3f}, exploration={breakdown.exploration:.3f}, "
                f"time={breakdown.time:.3f}) avg={stats.average_reward:.3f}")
        if stats.calculations > LOG_EVERY and stats.average_reward < POOR_AVERAGE_REWARD:
            logger.warning(f"Agent {stats.agent_id} average reward "
                           f"{stats.average_reward:.3f} over {stats.calculations} steps")

    def calculate_goal_reward(self, goal_type: str, completed: bool) -> float:
        """Goal completion bonus scaled by goal type"""
        if not completed:
            return 0.0
        multiplier = GOAL_MULTIPLIERS.get(goal_type.lower(), 1.0)
        return self.values.goal_completion * multiplier

    def calculate_state_transition_reward(self, agent_id: str, previous: FeatureState,
                                          current: FeatureState,
                                          max_health: float = 20.0) -> float:
        """Reward derived purely from two consecutive feature states"""
        outcome = RewardOutcome(
            health=current.health,
            max_health=max_health,
            location=current.location,
            alive=not current.is_terminal(),
            damage_taken=max(0.0, previous.health - current.health),
            targets_nearby=len(current.nearby_entities) > 0,
        )
        with self._lock:
            tracker = self._tracker(agent_id)
            if tracker.last_location is None:
                tracker.last_location = previous.location
        return self.calculate_reward(agent_id, outcome)

    def get_agent_stats(self, agent_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            stats = self._stats.get(agent_id)
            return stats.to_dict() if stats else None

    def get_average_reward(self, agent_id: str) -> float:
        with self._lock:
            stats = self._stats.get(agent_id)
            return stats.average_reward if stats else 0.0

    def get_summary(self) -> Dict[str, Any]:
        """Read-only summary across all agents"""
        with self._lock:
            all_stats = list(self._stats.values())
            averages = [s.average_reward for s in all_stats]
            total = sum(s.total_reward for s in all_stats)
            return {
                'agents': len(all_stats),
                'total_reward': total,
                'average_reward': total / len(all_stats) if all_stats else 0.0,
                'total_calculations': sum(s.calculations for s in all_stats),
                'best_average_reward': max(averages) if averages else 0.0,
                'worst_average_reward': min(averages) if averages else 0.0,
                'weights': self.weights.to_dict(),
            }

    def reset_agent(self, agent_id: str):
        with self._lock:
            self._trackers.pop(agent_id, None)
            stats = self._stats.pop(agent_id, None)
        if stats is not None:
            logger.info(f"Cleared reward statistics for {agent_id}")

    def clear(self):
        with self._lock:
            count = len(self._stats)
            self._trackers.clear()
            self._stats.clear()
        logger.info(f"Cleared reward statistics for {count} agents")
