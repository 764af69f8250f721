"""
Genome - A fixed-length real vector in [0, 1] with a fitness score.
"""

from dataclasses import dataclass
from typing import Dict, Any, Optional

import numpy as np


@dataclass(eq=False)
class Genome:
    genes: np.ndarray
    fitness: float = 0.0
    evaluated: bool = False

    @classmethod
    def random(cls, size: int, rng: np.random.Generator) -> 'Genome':
        return cls(genes=rng.uniform(0.0, 1.0, size))

    @property
    def size(self) -> int:
        return int(self.genes.shape[0])

    def copy(self) -> 'Genome':
        """Deep copy; mutating the copy never touches the original"""
        return Genome(genes=self.genes.copy(), fitness=self.fitness, evaluated=self.evaluated)

    def to_dict(self) -> Dict[str, Any]:
        return {'genes': self.genes.tolist(), 'fitness': self.fitness}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Genome':
        genes = np.clip(np.asarray(data['genes'], dtype=np.float64), 0.0, 1.0)
        return cls(genes=genes, fitness=float(data.get('fitness', 0.0)),
                   evaluated='fitness' in data)


def best_of(genomes) -> Optional[Genome]:
    best = None
    for genome in genomes:
        if best is None or genome.fitness > best.fitness:
            best = genome
    return best
