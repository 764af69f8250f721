"""
Genetic Optimizer - Population-based search over real-valued parameter vectors.

One generation:
1. Evaluate every genome with the pluggable fitness function
2. Carry the top elitism_rate fraction over unchanged
3. Fill the rest with tournament-selected parents, uniform crossover and
   Gaussian mutation clamped back into [0, 1]

The best genome ever seen is tracked separately from the current
population, so the historical best never decreases.
"""

from dataclasses import dataclass
from typing import Callable, Dict, Any, List, Optional
import json
import logging
import os
import threading
import time

import numpy as np

from core.config import GAConfig
from agents.base import ModelLoadError
from .genome import Genome, best_of

logger = logging.getLogger(__name__)

FitnessFunction = Callable[[np.ndarray], float]


@dataclass
class GenerationResult:
    generation: int
    average_fitness: float
    best_fitness: float
    historical_best: float
    best_genome: Optional[Genome]
    evolve_time_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'generation': self.generation,
            'average_fitness': self.average_fitness,
            'best_fitness': self.best_fitness,
            'historical_best': self.historical_best,
            'best_genome': self.best_genome.to_dict() if self.best_genome else None,
            'evolve_time_ms': self.evolve_time_ms,
        }


class GeneticOptimizer:
    """Elitist genetic algorithm with tournament selection"""

    def __init__(self, config: GAConfig = None, fitness_fn: FitnessFunction = None,
                 seed: Optional[int] = None):
        self.config = config or GAConfig()
        self.fitness_fn = fitness_fn
        self.rng = np.random.default_rng(seed)
        self._lock = threading.RLock()

        self.population: List[Genome] = []
        self.generation = 0
        self.best_genome: Optional[Genome] = None
        self.best_fitness = float('-inf')
        self.fitness_history: List[float] = []
        self.last_evolve_time_ms = 0.0

    @property
    def elite_count(self) -> int:
        return max(1, int(self.config.population_size * self.config.elitism_rate))

    def initialize(self):
        """Fresh population drawn uniformly from [0, 1]"""
        with self._lock:
            self.population = [Genome.random(self.config.genome_size, self.rng)
                               for _ in range(self.config.population_size)]
            self.generation = 0
        logger.info(f"Initialized population of {self.config.population_size} "
                    f"genomes of size {self.config.genome_size}")

    def evaluate(self):
        if self.fitness_fn is None:
            raise ValueError("No fitness function configured")
        for genome in self.population:
            genome.fitness = float(self.fitness_fn(genome.genes.copy()))
            genome.evaluated = True

    def evolve_generation(self) -> GenerationResult:
        with self._lock:
            if not self.population:
                self.initialize()

            start = time.perf_counter()
            self.evaluate()

            fitnesses = [g.fitness for g in self.population]
            current_best = best_of(self.population)
            if current_best is not None and current_best.fitness > self.best_fitness:
                self.best_fitness = current_best.fitness
                self.best_genome = current_best.copy()

            average = float(np.mean(fitnesses))
            best = float(np.max(fitnesses))
            self.fitness_history.append(average)

            self.population = self._next_population()
            self.generation += 1
            self.last_evolve_time_ms = (time.perf_counter() - start) * 1000.0

            result = GenerationResult(
                generation=self.generation,
                average_fitness=average,
                best_fitness=best,
                historical_best=self.best_fitness,
                best_genome=self.best_genome.copy() if self.best_genome else None,
                evolve_time_ms=self.last_evolve_time_ms,
            )

        if self.generation % 10 == 0:
            logger.info(f"Generation {self.generation}: avg={average:.4f} "
                        f"best={best:.4f} historical={self.best_fitness:.4f}")
        return result

    def _next_population(self) -> List[Genome]:
        ranked = sorted(self.population, key=lambda g: g.fitness, reverse=True)
        size = self.config.population_size
        elites = [g.copy() for g in ranked[:min(self.elite_count, size)]]

        offspring = []
        while len(elites) + len(offspring) < size:
            parent1 = self._tournament_select()
            parent2 = self._tournament_select()
            child = self._crossover(parent1, parent2)
            self._mutate(child)
            offspring.append(child)
        return elites + offspring

    def _tournament_select(self) -> Genome:
        k = max(1, self.config.tournament_size)
        picks = self.rng.integers(0, len(self.population), size=k)
        return best_of(self.population[i] for i in picks)

    def _crossover(self, parent1: Genome, parent2: Genome) -> Genome:
        """Uniform gene-wise crossover"""
        mask = self.rng.random(parent1.size) < 0.5
        genes = np.where(mask, parent1.genes, parent2.genes)
        return Genome(genes=genes.copy())

    def _mutate(self, genome: Genome):
        cfg = self.config
        for i in range(genome.size):
            if self.rng.random() < cfg.mutation_rate:
                strength = cfg.mutation_strength * (1.0 + self.rng.standard_normal() * 0.1)
                genome.genes[i] += self.rng.standard_normal() * strength
        np.clip(genome.genes, 0.0, 1.0, out=genome.genes)
        genome.evaluated = False

    def should_stop(self) -> bool:
        cfg = self.config
        if self.generation >= cfg.max_generations:
            return True
        return cfg.target_fitness > 0 and self.best_fitness >= cfg.target_fitness

    def run(self, max_generations: Optional[int] = None) -> List[GenerationResult]:
        """Evolve until the generation cap or the target fitness is reached"""
        results = []
        limit = max_generations if max_generations is not None else self.config.max_generations
        while len(results) < limit and not self.should_stop():
            results.append(self.evolve_generation())
        return results

    def get_average_fitness(self) -> float:
        with self._lock:
            evaluated = [g.fitness for g in self.population if g.evaluated]
            return float(np.mean(evaluated)) if evaluated else 0.0

    def export_parameters(self) -> Dict[str, Any]:
        with self._lock:
            return {
                'generation': self.generation,
                'best_fitness': self.best_fitness if self.best_genome else None,
                'best_genome': self.best_genome.to_dict() if self.best_genome else None,
                'population': [g.to_dict() for g in self.population],
                'fitness_history': list(self.fitness_history),
            }

    def import_parameters(self, data: Dict[str, Any]):
        with self._lock:
            population = [Genome.from_dict(g) for g in data.get('population', [])]
            for genome in population:
                if genome.size != self.config.genome_size:
                    raise ValueError(f"Genome size {genome.size} does not match "
                                     f"configured {self.config.genome_size}")
            self.population = population
            self.generation = int(data.get('generation', 0))
            self.fitness_history = list(data.get('fitness_history', []))
            best = data.get('best_genome')
            self.best_genome = Genome.from_dict(best) if best else None
            self.best_fitness = (self.best_genome.fitness if self.best_genome
                                 else float('-inf'))

    def save_model(self, path: str):
        os.makedirs(path, exist_ok=True)
        with open(os.path.join(path, 'population.json'), 'w') as f:
            json.dump(self.export_parameters(), f, indent=2)
        logger.info(f"Saved population (generation {self.generation}) to {path}")

    def load_model(self, path: str):
        population_path = os.path.join(path, 'population.json')
        if not os.path.exists(population_path):
            raise ModelLoadError(f"No population found at {population_path}")
        try:
            with open(population_path, 'r') as f:
                self.import_parameters(json.load(f))
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise ModelLoadError(f"Corrupt population at {path}: {e}")
        logger.info(f"Loaded population (generation {self.generation}) from {path}")

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            current = best_of(g for g in self.population if g.evaluated)
            return {
                'generation': self.generation,
                'population_size': len(self.population),
                'average_fitness': self.get_average_fitness(),
                'current_best_fitness': current.fitness if current else None,
                'historical_best_fitness': self.best_fitness if self.best_genome else None,
                'last_evolve_time_ms': self.last_evolve_time_ms,
                'fitness_history_length': len(self.fitness_history),
            }
