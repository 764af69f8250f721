"""
Evolution-Seeded Agent - Tabular Q-learning whose hyperparameters come from
the genetic optimizer's best genome.

Gene layout (remaining genes are ignored):
  0: learning rate   in [0.01, 0.5]
  1: discount        in [0.80, 0.999]
  2: exploration     in [0.0, 0.5]
"""

from typing import Dict, Any, List, Optional, Sequence
import logging
import os
import threading

import numpy as np

from core.experience import FlatExperience
from agents.base import LearningAlgorithm
from agents.tabular import TabularQAgent
from .genome import Genome
from .optimizer import GeneticOptimizer

logger = logging.getLogger(__name__)

MIN_GENES = 3


def decode_hyperparameters(genes: Sequence[float]) -> Dict[str, float]:
    genes = np.clip(np.asarray(genes, dtype=np.float64), 0.0, 1.0)
    if genes.shape[0] < MIN_GENES:
        raise ValueError(f"Need at least {MIN_GENES} genes, got {genes.shape[0]}")
    return {
        'learning_rate': 0.01 + float(genes[0]) * 0.49,
        'discount': 0.80 + float(genes[1]) * 0.199,
        'exploration_rate': float(genes[2]) * 0.5,
    }


def replay_fitness(experiences: List[FlatExperience], num_actions: int):
    """
    Fitness function scoring hyperparameters on recorded experience.

    A scratch tabular agent trains on the first half and the fitness is the
    negative mean absolute TD-error on the second half.
    """
    split = len(experiences) // 2
    train, held_out = experiences[:split], experiences[split:]

    def fitness(genes: np.ndarray) -> float:
        if not train or not held_out:
            return 0.0
        params = decode_hyperparameters(genes)
        agent = TabularQAgent(num_actions=num_actions,
                              learning_rate=params['learning_rate'],
                              discount=params['discount'])
        agent.train_on_batch(train)
        errors = [abs(agent.learn(e.state, e.action, e.reward, e.next_state, e.done, weight=0.0))
                  for e in held_out]
        return -float(np.mean(errors))

    return fitness


class EvolutionarySeededAgent(LearningAlgorithm):
    """Delegates learning to a tabular agent tuned by evolved genomes"""

    name = "evolutionary"

    def __init__(self, optimizer: GeneticOptimizer, agent: TabularQAgent = None):
        if optimizer.config.genome_size < MIN_GENES:
            raise ValueError(f"Genome size must be at least {MIN_GENES}")
        self.optimizer = optimizer
        self.agent = agent or TabularQAgent()
        self._lock = threading.Lock()
        self.applied_genome: Optional[Genome] = None

    def apply_genome(self, genome: Genome):
        """Hand evolved hyperparameters to the live agent"""
        params = decode_hyperparameters(genome.genes)
        with self._lock:
            self.agent.learning_rate = params['learning_rate']
            self.agent.discount = params['discount']
            self.agent.set_exploration_rate(params['exploration_rate'])
            self.applied_genome = genome.copy()
        logger.info(f"Applied evolved hyperparameters: {params}")

    def apply_best(self) -> bool:
        best = self.optimizer.best_genome
        if best is None:
            return False
        self.apply_genome(best)
        return True

    def select_action(self, state) -> int:
        return self.agent.select_action(state)

    def action_values(self, state) -> np.ndarray:
        return self.agent.action_values(state)

    def train(self, experience):
        return self.agent.train(experience)

    def train_batch(self, experiences, weights=None) -> np.ndarray:
        return self.agent.train_batch(experiences, weights)

    def get_exploration_rate(self) -> float:
        return self.agent.get_exploration_rate()

    def set_exploration_rate(self, rate: float):
        self.agent.set_exploration_rate(rate)

    def save_model(self, path: str):
        self.agent.save_model(os.path.join(path, 'agent'))
        self.optimizer.save_model(os.path.join(path, 'population'))

    def load_model(self, path: str):
        self.agent.load_model(os.path.join(path, 'agent'))
        self.optimizer.load_model(os.path.join(path, 'population'))

    def get_stats(self) -> Dict[str, Any]:
        stats = self.agent.get_stats()
        stats['algorithm'] = self.name
        stats['evolution'] = self.optimizer.get_stats()
        stats['applied_genome'] = (self.applied_genome.to_dict()
                                   if self.applied_genome else None)
        return stats
