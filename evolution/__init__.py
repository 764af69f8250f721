"""
Evolutionary Optimization - Genetic search over hyperparameter genomes.
"""

from evolution.genome import Genome
from evolution.optimizer import GeneticOptimizer, GenerationResult
from evolution.seeded import EvolutionarySeededAgent, decode_hyperparameters, replay_fitness

__all__ = [
    "Genome",
    "GeneticOptimizer",
    "GenerationResult",
    "EvolutionarySeededAgent",
    "decode_hyperparameters",
    "replay_fitness",
]
