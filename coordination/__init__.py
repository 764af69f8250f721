"""
Coordination - Running learning agents inside a host simulation.

- MultiAgentCoordinator: per-tick decide/execute/train loop with messaging
- BackgroundWorker: heavy operations off the tick path, results via futures
- PrioritizedTrainer: prioritized replay batches trained in the background
- BackgroundTrainer: an algorithm's own batch steps run on the worker
- ModelStore: versioned model artifacts with backup fallback
"""

from coordination.coordinator import (
    MultiAgentCoordinator, ActionOutcome, AgentMessage, TickReport,
)
from coordination.worker import BackgroundWorker, Task, TaskResult, TaskType
from coordination.trainer import PrioritizedTrainer, BackgroundTrainer
from coordination.persistence import ModelStore

__all__ = [
    "MultiAgentCoordinator",
    "ActionOutcome",
    "AgentMessage",
    "TickReport",
    "BackgroundWorker",
    "Task",
    "TaskResult",
    "TaskType",
    "PrioritizedTrainer",
    "BackgroundTrainer",
    "ModelStore",
]
