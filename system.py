"""
Learning System - The complete pluggable decision core

Wires every component into one object the host simulation drives:

- a learning algorithm chosen by configuration (tabular, dqn,
  policy_gradient, evolutionary)
- the multi-factor reward model
- the multi-agent coordinator running the per-tick decide/execute/train loop
- a background worker for batch training, evolution and validation
- prioritized replay for tabular policies, background batch steps for
  network policies
- versioned model persistence with backup fallback
- the offline validator

The host supplies an action executor and a state provider (attach), then
calls tick() once per simulation tick.
"""

from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Dict, Any, List, Optional, Union
import logging
import random
import threading
import time

from core.config import LearningConfig
from core.qtable import QTable
from core.reward import RewardModel
from agents.base import LearningAlgorithm, ModelLoadError
from agents.dqn import DQNAgent
from agents.policy_gradient import PolicyGradientAgent
from agents.replay import PrioritizedReplayBuffer
from agents.tabular import TabularQAgent
from coordination.coordinator import MultiAgentCoordinator, TickReport
from coordination.persistence import ModelStore
from coordination.trainer import PrioritizedTrainer, BackgroundTrainer
from coordination.worker import BackgroundWorker, TaskType
from evolution.optimizer import GeneticOptimizer, GenerationResult
from evolution.seeded import EvolutionarySeededAgent, replay_fitness
from validation.validator import ModelValidator, ValidationResult

logger = logging.getLogger(__name__)

MIN_EVOLUTION_EXPERIENCES = 20


@dataclass
class RecoveryEvent:
    """A model that could not be restored and was started fresh"""
    model: str
    error: str
    timestamp: float = field(default_factory=time.time)


class LearningSystem:
    """
    Facade over the decision core.

    One algorithm instance is shared by every registered agent. Heavy work
    (prioritized batches, evolution, validation) runs on the background
    worker so tick() never waits on it.
    """

    def __init__(self, config: LearningConfig = None):
        self.config = config or LearningConfig()
        seed = self.config.seed
        self._rng = random.Random(seed)

        self.table: Optional[QTable] = None
        self.optimizer: Optional[GeneticOptimizer] = None
        self.algorithm = self._build_algorithm()

        self.reward_model = RewardModel(self.config.reward_weights, self.config.reward_values)
        self.worker = BackgroundWorker(name="learning-worker")
        self.store = ModelStore(self.config.model_dir, self.config.max_backups)
        self.validator = ModelValidator(self.config.validation, seed=seed)

        self.trainer: Optional[Union[PrioritizedTrainer, BackgroundTrainer]] = None
        if self.config.prioritized_replay and self.table is not None:
            buffer = PrioritizedReplayBuffer(self.config.buffer_capacity,
                                             rng=random.Random(self._rng.random()))
            self.trainer = PrioritizedTrainer(self.algorithm, buffer, worker=self.worker,
                                              batch_size=self.config.batch_size)
        elif self.algorithm.supports_deferred_training:
            self.trainer = BackgroundTrainer(self.algorithm, self.worker)

        self.coordinator: Optional[MultiAgentCoordinator] = None
        self.recovery_events: List[RecoveryEvent] = []
        self.last_save_error: Optional[str] = None
        self._lock = threading.Lock()
        self._evolution_future: Optional[Future] = None
        self._initialized = False
        self._shut_down = False

        logger.info(f"Learning system created with {self.config.algorithm} algorithm")

    def _build_algorithm(self) -> LearningAlgorithm:
        cfg = self.config
        params = cfg.algorithm_config()
        if cfg.algorithm == 'tabular':
            self.table = QTable(cfg.num_actions)
            return TabularQAgent.from_config(params, table=self.table,
                                             rng=random.Random(self._rng.random()))
        if cfg.algorithm == 'dqn':
            return DQNAgent.from_config(params)
        if cfg.algorithm == 'policy_gradient':
            return PolicyGradientAgent.from_config(params)

        # evolutionary
        self.table = QTable(cfg.num_actions)
        agent = TabularQAgent.from_config(params, table=self.table,
                                          rng=random.Random(self._rng.random()))
        self.optimizer = GeneticOptimizer(cfg.ga, seed=cfg.seed)
        return EvolutionarySeededAgent(self.optimizer, agent)

    @property
    def model_name(self) -> str:
        return self.config.algorithm

    # Lifecycle

    def attach(self, executor, state_provider) -> MultiAgentCoordinator:
        """Connect the host's executor and state provider"""
        self.coordinator = MultiAgentCoordinator(
            self.algorithm, executor, state_provider,
            reward_model=self.reward_model, trainer=self.trainer)
        return self.coordinator

    def initialize(self) -> bool:
        """
        Restore the latest saved model.

        Returns True when a model was loaded. A missing or unreadable model
        is not fatal: the algorithm keeps its fresh parameters and a
        recovery event is recorded.
        """
        self._initialized = True
        if not self.config.load_on_start:
            return False
        try:
            self.store.load_latest(self.model_name, self.algorithm)
            return True
        except ModelLoadError as e:
            logger.warning(f"Starting {self.model_name} with fresh parameters: {e}")
            self.recovery_events.append(RecoveryEvent(model=self.model_name, error=str(e)))
            return False

    def register_agent(self, agent_id: str):
        self._require_coordinator().register_agent(agent_id)

    def unregister_agent(self, agent_id: str):
        self._require_coordinator().unregister_agent(agent_id)

    def send_message(self, sender: str, receiver: str, content: str, data: Any = None):
        self._require_coordinator().send_message(sender, receiver, content, data)

    def tick(self) -> TickReport:
        if self._shut_down:
            raise RuntimeError("Learning system is shut down")
        return self._require_coordinator().tick()

    def _require_coordinator(self) -> MultiAgentCoordinator:
        if self.coordinator is None:
            raise RuntimeError("No executor attached; call attach() first")
        return self.coordinator

    # Background operations

    def evolve_async(self, generations: int = 1) -> Optional[Future]:
        """
        Run generations of the genetic optimizer in the background, scoring
        genomes on recent experience, then apply the best genome.

        Returns None when the algorithm is not evolutionary, when too little
        experience is recorded, or while a previous run is still going.
        """
        if self.optimizer is None or self.coordinator is None:
            return None
        experiences = self.coordinator.recent_experiences()
        if len(experiences) < MIN_EVOLUTION_EXPERIENCES:
            logger.debug(f"Evolution skipped: {len(experiences)} experiences recorded")
            return None

        with self._lock:
            if self._evolution_future is not None and not self._evolution_future.done():
                return None
            self._evolution_future = self.worker.submit(
                TaskType.EVOLVE, self._evolve, experiences, generations)
            return self._evolution_future

    def _evolve(self, experiences, generations: int) -> List[GenerationResult]:
        self.optimizer.fitness_fn = replay_fitness(experiences, self.config.num_actions)
        results = [self.optimizer.evolve_generation() for _ in range(max(1, generations))]
        self.algorithm.apply_best()
        return results

    def validate(self) -> ValidationResult:
        """Score the live algorithm on the held-out share of recent experience"""
        experiences = self.coordinator.recent_experiences() if self.coordinator else []
        _, test = self.validator.train_test_split(experiences)
        return self.validator.validate_agent(self.algorithm, test, kind=self.model_name)

    def validate_async(self) -> Future:
        return self.validator.run_async(self.worker, self.validate)

    # Persistence

    def save(self) -> str:
        return self.store.save(self.model_name, self.algorithm,
                               extra={'config': self.config.algorithm_config()})

    def shutdown(self):
        """Let in-flight work finish, then persist models when configured"""
        if self._shut_down:
            return
        self._shut_down = True
        logger.info("Shutting down learning system")
        self.worker.shutdown(wait=True)
        if self.config.save_on_shutdown:
            try:
                self.save()
            except Exception as e:
                self.last_save_error = str(e)
                logger.error(f"Failed to save {self.model_name} on shutdown: {e}")

    def get_stats(self) -> Dict[str, Any]:
        stats = {
            'algorithm': self.config.algorithm,
            'initialized': self._initialized,
            'shut_down': self._shut_down,
            'model': self.algorithm.get_stats(),
            'rewards': self.reward_model.get_summary(),
            'worker': self.worker.get_status(),
            'recovery_events': len(self.recovery_events),
            'last_save_error': self.last_save_error,
            'validation_status': self.validator.get_report().overall_status,
        }
        if self.coordinator is not None:
            stats['coordinator'] = self.coordinator.get_stats()
        if self.trainer is not None:
            stats['trainer'] = self.trainer.get_stats()
        return stats
