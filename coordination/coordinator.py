"""
Multi-Agent Coordinator - Drives one shared learning algorithm across many agents.

Per tick, for every active agent with a current state:
1. Read the state (optionally paired with an alive flag) from the state
   provider; dead agents are skipped
2. Ask the shared algorithm for an action index
3. Execute it through the action executor
4. Build the resulting experience (reward from the reward model when the
   executor reports raw deltas)
5. Train the shared algorithm on it

A failure for one agent is logged and counted; the tick carries on for the
others. Inter-agent messages go through a channel keyed by receiver and are
drained once at the start of each tick, so delivery order is deterministic.
"""

from collections import deque
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Union
import logging
import threading
import time

import numpy as np

from core.experience import Experience, FlatExperience, as_flat
from core.reward import RewardModel, RewardOutcome
from core.state import BaseState
from agents.base import LearningAlgorithm

logger = logging.getLogger(__name__)

INBOX_SIZE = 100
RECENT_EXPERIENCES = 5000


class StateProvider(Protocol):
    def get_state(self, agent_id: str) -> Any:
        """Current state, or a (state, alive) pair; None when unavailable"""
        ...


class ActionExecutor(Protocol):
    def execute(self, agent_id: str, action: int) -> Any:
        ...


@dataclass
class ActionOutcome:
    """Raw result reported by an executor instead of a finished experience"""
    next_state: Union[BaseState, np.ndarray]
    reward_outcome: Optional[RewardOutcome] = None
    reward: float = 0.0
    done: Optional[bool] = None


@dataclass(frozen=True)
class AgentMessage:
    sender: str
    receiver: str
    content: str
    data: Any = None
    timestamp: float = field(default_factory=time.time)


@dataclass
class TickReport:
    tick: int
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    trained: int = 0
    messages_delivered: int = 0
    actions: Dict[str, int] = field(default_factory=dict)
    errors: Dict[str, str] = field(default_factory=dict)


def _vector(state) -> np.ndarray:
    if isinstance(state, BaseState):
        return state.flatten()
    return np.asarray(state, dtype=np.float64).ravel()


def _unpack_state(provided):
    if (isinstance(provided, tuple) and len(provided) == 2
            and isinstance(provided[1], (bool, np.bool_))):
        state, alive = provided
        return state, bool(alive)
    return provided, True


class MultiAgentCoordinator:
    """Tick loop over registered agents sharing one learning algorithm"""

    def __init__(self, algorithm: LearningAlgorithm, executor: ActionExecutor,
                 state_provider: StateProvider, reward_model: RewardModel = None,
                 trainer=None):
        self.algorithm = algorithm
        self.executor = executor
        self.state_provider = state_provider
        self.reward_model = reward_model
        self.trainer = trainer

        self._lock = threading.RLock()
        self._agents: Dict[str, bool] = {}
        self._channel: Dict[str, deque] = {}
        self._channel_lock = threading.Lock()
        self._inboxes: Dict[str, deque] = {}
        self._recent: deque = deque(maxlen=RECENT_EXPERIENCES)

        self.tick_count = 0
        self.total_processed = 0
        self.total_failures = 0
        self.failures_by_agent: Dict[str, int] = {}
        self.messages_sent = 0
        self.messages_delivered = 0
        self.messages_dropped = 0

    # Agent registry

    def register_agent(self, agent_id: str):
        with self._lock:
            self._agents[agent_id] = True
            self._inboxes.setdefault(agent_id, deque(maxlen=INBOX_SIZE))
        logger.info(f"Registered agent {agent_id}")

    def unregister_agent(self, agent_id: str):
        with self._lock:
            self._agents.pop(agent_id, None)
            self._inboxes.pop(agent_id, None)
        if self.reward_model is not None:
            self.reward_model.reset_agent(agent_id)
        logger.info(f"Unregistered agent {agent_id}")

    def set_active(self, agent_id: str, active: bool):
        with self._lock:
            if agent_id not in self._agents:
                raise KeyError(f"Unknown agent {agent_id}")
            self._agents[agent_id] = active

    def active_agents(self) -> List[str]:
        with self._lock:
            return [a for a, active in self._agents.items() if active]

    # Messaging

    def send_message(self, sender: str, receiver: str, content: str, data: Any = None):
        """Queue a message for delivery at the start of the next tick"""
        message = AgentMessage(sender=sender, receiver=receiver, content=content, data=data)
        with self._channel_lock:
            self._channel.setdefault(receiver, deque()).append(message)
            self.messages_sent += 1

    def _drain_messages(self) -> int:
        with self._channel_lock:
            channel, self._channel = self._channel, {}

        delivered = 0
        for receiver in sorted(channel):
            with self._lock:
                inbox = self._inboxes.get(receiver)
            for message in channel[receiver]:
                if inbox is None:
                    self.messages_dropped += 1
                    logger.warning(f"Dropped message from {message.sender} "
                                   f"to unknown agent {receiver}")
                    continue
                logger.info(f"Agent communication: {message.sender} -> "
                            f"{receiver}: {message.content}")
                inbox.append(message)
                delivered += 1
                handler = getattr(self.executor, 'on_message', None)
                if handler is not None:
                    try:
                        handler(message)
                    except Exception as e:
                        logger.error(f"Error processing message for {receiver}: {e}")
        self.messages_delivered += delivered
        return delivered

    def get_messages(self, agent_id: str, clear: bool = True) -> List[AgentMessage]:
        with self._lock:
            inbox = self._inboxes.get(agent_id)
            if inbox is None:
                return []
            messages = list(inbox)
            if clear:
                inbox.clear()
            return messages

    # Tick

    def tick(self) -> TickReport:
        """One decide/execute/train pass over every active agent"""
        self.tick_count += 1
        report = TickReport(tick=self.tick_count)
        report.messages_delivered = self._drain_messages()

        for agent_id in self.active_agents():
            try:
                state, alive = _unpack_state(self.state_provider.get_state(agent_id))
                if not alive or state is None or (
                        isinstance(state, BaseState) and state.is_terminal()):
                    report.skipped += 1
                    continue
                trained = self._step_agent(agent_id, state, report)
                report.processed += 1
                report.trained += int(trained)
            except Exception as e:
                report.failed += 1
                report.errors[agent_id] = str(e)
                with self._lock:
                    self.failures_by_agent[agent_id] = self.failures_by_agent.get(agent_id, 0) + 1
                logger.error(f"Error during agent coordination for agent {agent_id}: {e}")

        self.total_processed += report.processed
        self.total_failures += report.failed
        logger.debug(f"Tick {report.tick}: processed={report.processed} "
                     f"failed={report.failed} skipped={report.skipped}")
        return report

    def _step_agent(self, agent_id: str, state, report: TickReport) -> bool:
        state_vector = _vector(state)
        action = int(self.algorithm.select_action(state_vector))
        report.actions[agent_id] = action

        result = self.executor.execute(agent_id, action)
        experience = self._to_experience(agent_id, state_vector, action, result)
        if experience is None:
            return False

        self.algorithm.train(experience)
        self._recent.append(experience)
        if self.trainer is not None:
            self.trainer.observe(experience)
        return True

    def _to_experience(self, agent_id: str, state_vector: np.ndarray, action: int,
                       result) -> Optional[FlatExperience]:
        if result is None:
            return None
        if isinstance(result, (Experience, FlatExperience)):
            return as_flat(result)
        if isinstance(result, ActionOutcome):
            reward = result.reward
            if self.reward_model is not None and result.reward_outcome is not None:
                reward = self.reward_model.calculate_reward(agent_id, result.reward_outcome)
            done = result.done
            if done is None:
                done = (result.next_state.is_terminal()
                        if isinstance(result.next_state, BaseState) else False)
            return FlatExperience.of(state_vector, action, reward,
                                     _vector(result.next_state), done)
        raise TypeError(f"Executor returned unsupported result {type(result).__name__}")

    def recent_experiences(self) -> List[FlatExperience]:
        return list(self._recent)

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                'ticks': self.tick_count,
                'registered_agents': len(self._agents),
                'active_agents': sum(1 for a in self._agents.values() if a),
                'total_processed': self.total_processed,
                'total_failures': self.total_failures,
                'failures_by_agent': dict(self.failures_by_agent),
                'messages_sent': self.messages_sent,
                'messages_delivered': self.messages_delivered,
                'messages_dropped': self.messages_dropped,
                'recent_experiences': len(self._recent),
                'algorithm': self.algorithm.get_stats(),
            }
