"""
Model Validator - Offline scoring of trained artifacts on held-out data.

Evaluators are read-only with respect to the models they score:
- value-based agents (tabular or neural): action accuracy, average reward,
  convergence rate
- genetic populations: best/average fitness and diversity
- movement predictors: MSE / MAE on next-step targets
- k-fold cross-validation with a stability classification

Below the minimum sample size every evaluator returns INSUFFICIENT_DATA
instead of a score.
"""

from concurrent.futures import Future
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Any, List, Optional, Sequence
import logging
import threading
import time

import numpy as np

from core.config import ValidationConfig
from core.experience import FlatExperience, as_flat
from agents.base import LearningAlgorithm
from coordination.worker import BackgroundWorker, TaskType

logger = logging.getLogger(__name__)

CONVERGENCE_TOLERANCE = 0.1
MIN_GENOMES = 10


class ValidationStatus(Enum):
    GOOD = "GOOD"
    FAIR = "FAIR"
    POOR = "POOR"
    INSUFFICIENT_DATA = "INSUFFICIENT_DATA"


class Stability(Enum):
    STABLE = "STABLE"
    MODERATE = "MODERATE"
    UNSTABLE = "UNSTABLE"
    INSUFFICIENT_DATA = "INSUFFICIENT_DATA"


@dataclass
class ValidationResult:
    status: ValidationStatus
    accuracy: float = 0.0
    average_reward: float = 0.0
    additional_metric: float = 0.0
    sample_size: int = 0
    metrics: Dict[str, float] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    @property
    def insufficient(self) -> bool:
        return self.status == ValidationStatus.INSUFFICIENT_DATA

    def to_dict(self) -> Dict[str, Any]:
        return {
            'status': self.status.value,
            'accuracy': self.accuracy,
            'average_reward': self.average_reward,
            'additional_metric': self.additional_metric,
            'sample_size': self.sample_size,
            'metrics': dict(self.metrics),
            'timestamp': self.timestamp,
        }


@dataclass
class CrossValidationResult:
    stability: Stability
    fold_accuracies: List[float] = field(default_factory=list)
    fold_rewards: List[float] = field(default_factory=list)
    mean_accuracy: float = 0.0
    std_accuracy: float = 0.0
    mean_reward: float = 0.0
    std_reward: float = 0.0
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'stability': self.stability.value,
            'fold_accuracies': list(self.fold_accuracies),
            'fold_rewards': list(self.fold_rewards),
            'mean_accuracy': self.mean_accuracy,
            'std_accuracy': self.std_accuracy,
            'mean_reward': self.mean_reward,
            'std_reward': self.std_reward,
        }


@dataclass
class ValidationReport:
    """Latest result per model kind plus the full history"""
    latest: Dict[str, ValidationResult]
    history: List[ValidationResult]
    generated_at: float = field(default_factory=time.time)

    @property
    def overall_status(self) -> str:
        scored = [r for r in self.latest.values() if not r.insufficient]
        if not scored:
            return "NO_DATA"
        average = sum(r.accuracy for r in scored) / len(scored)
        if average > 0.8:
            return "EXCELLENT"
        if average > 0.7:
            return "GOOD"
        if average > 0.6:
            return "FAIR"
        return "NEEDS_IMPROVEMENT"


def _grade(accuracy: float, good: float, fair: float) -> ValidationStatus:
    if accuracy > good:
        return ValidationStatus.GOOD
    if accuracy > fair:
        return ValidationStatus.FAIR
    return ValidationStatus.POOR


def classify_stability(std_accuracy: float) -> Stability:
    if std_accuracy < 0.1:
        return Stability.STABLE
    if std_accuracy < 0.2:
        return Stability.MODERATE
    return Stability.UNSTABLE


class ModelValidator:
    """Scores models against held-out data and keeps a validation history"""

    def __init__(self, config: ValidationConfig = None, seed: Optional[int] = None):
        self.config = config or ValidationConfig()
        self.rng = np.random.default_rng(seed)
        self._lock = threading.Lock()
        self.history: List[ValidationResult] = []
        self.latest: Dict[str, ValidationResult] = {}

    @property
    def min_samples(self) -> int:
        return self.config.min_test_samples

    def _record(self, kind: str, result: ValidationResult) -> ValidationResult:
        with self._lock:
            self.history.append(result)
            self.latest[kind] = result
        logger.info(f"Validation {kind}: {result.status.value} "
                    f"accuracy={result.accuracy:.3f} reward={result.average_reward:.3f} "
                    f"samples={result.sample_size}")
        return result

    def train_test_split(self, experiences: Sequence, shuffle: bool = True):
        data = list(experiences)
        if shuffle:
            order = self.rng.permutation(len(data))
            data = [data[i] for i in order]
        cut = int(len(data) * self.config.train_split)
        return data[:cut], data[cut:]

    # Value-based agents

    def validate_agent(self, agent: LearningAlgorithm, experiences: Sequence,
                       best_actions: Optional[Sequence[int]] = None,
                       kind: str = "q_agent") -> ValidationResult:
        """
        Score a value-based agent.

        Accuracy counts states where the greedy action matches the known
        best action (best_actions when given, else the action recorded in
        the experience).
        """
        data: List[FlatExperience] = [as_flat(e) for e in experiences]
        if len(data) < self.min_samples:
            return ValidationResult(ValidationStatus.INSUFFICIENT_DATA, sample_size=len(data))
        if best_actions is not None and len(best_actions) != len(data):
            raise ValueError("best_actions must align with experiences")

        correct = 0
        converged = 0
        total_reward = 0.0
        for i, exp in enumerate(data):
            values = np.asarray(agent.action_values(exp.state), dtype=np.float64)
            label = exp.action if best_actions is None else int(best_actions[i])
            if int(np.argmax(values)) == label:
                correct += 1
            if abs(values[exp.action] - exp.reward) < CONVERGENCE_TOLERANCE:
                converged += 1
            total_reward += exp.reward

        n = len(data)
        accuracy = correct / n
        convergence_rate = converged / n
        result = ValidationResult(
            status=_grade(accuracy, 0.6, 0.4),
            accuracy=accuracy,
            average_reward=total_reward / n,
            additional_metric=convergence_rate,
            sample_size=n,
            metrics={
                'total_predictions': float(n),
                'correct_predictions': float(correct),
                'total_reward': total_reward,
                'convergence_steps': float(converged),
                'convergence_rate': convergence_rate,
            },
        )
        return self._record(kind, result)

    def validate_q_agent(self, agent: LearningAlgorithm, experiences: Sequence,
                         best_actions: Optional[Sequence[int]] = None) -> ValidationResult:
        return self.validate_agent(agent, experiences, best_actions, kind="q_agent")

    def validate_network(self, agent: LearningAlgorithm, experiences: Sequence,
                         best_actions: Optional[Sequence[int]] = None) -> ValidationResult:
        return self.validate_agent(agent, experiences, best_actions, kind="network")

    # Genetic populations

    def validate_genetic(self, genomes: Sequence[Sequence[float]],
                         fitness_fn: Callable[[np.ndarray], float]) -> ValidationResult:
        if len(genomes) < MIN_GENOMES:
            return ValidationResult(ValidationStatus.INSUFFICIENT_DATA, sample_size=len(genomes))

        fitnesses = np.array([float(fitness_fn(np.asarray(g, dtype=np.float64)))
                              for g in genomes])
        best = float(fitnesses.max())
        average = float(fitnesses.mean())
        variance = float(fitnesses.var())
        diverse = int(np.sum(fitnesses >= best * 0.8)) if best > 0 else int(
            np.sum(fitnesses >= best * 1.2))
        diversity = diverse / len(fitnesses)

        accuracy = max(0.0, min(1.0, (best / 10.0 + diversity) / 2.0))
        result = ValidationResult(
            status=_grade(accuracy, 0.7, 0.5),
            accuracy=accuracy,
            average_reward=best,
            additional_metric=diversity,
            sample_size=len(fitnesses),
            metrics={
                'best_fitness': best,
                'avg_fitness': average,
                'fitness_variance': variance,
                'diversity_ratio': diversity,
                'population_size': float(len(fitnesses)),
            },
        )
        return self._record("genetic", result)

    def validate_optimizer(self, optimizer) -> ValidationResult:
        """Score a genetic optimizer's current population with its fitness function"""
        if optimizer.fitness_fn is None:
            raise ValueError("Optimizer has no fitness function")
        return self.validate_genetic([g.genes for g in optimizer.population],
                                     optimizer.fitness_fn)

    # Movement prediction

    def validate_movement(self, predictor, sequences: Sequence) -> ValidationResult:
        """Next-step prediction error over flat movement sequences"""
        errors = []
        for sequence in sequences:
            pair = predictor.split_sequence(sequence)
            if pair is None:
                continue
            inputs, targets = pair
            errors.append(predictor.forward_sequence(inputs) - targets)

        steps = sum(len(e) for e in errors)
        if steps < self.min_samples:
            return ValidationResult(ValidationStatus.INSUFFICIENT_DATA, sample_size=steps)

        diffs = np.concatenate(errors)
        mse = float(np.mean(diffs ** 2))
        mae = float(np.mean(np.abs(diffs)))
        accuracy = 1.0 - min(1.0, mae / 10.0)
        result = ValidationResult(
            status=_grade(accuracy, 0.7, 0.5),
            accuracy=accuracy,
            average_reward=-mae,
            additional_metric=float(np.sqrt(mse)),
            sample_size=steps,
            metrics={'mse': mse, 'mae': mae, 'rmse': float(np.sqrt(mse))},
        )
        return self._record("movement", result)

    # Cross-validation

    def cross_validate(self, experiences: Sequence,
                       evaluate_fold: Callable[[List, List], ValidationResult],
                       folds: Optional[int] = None) -> CrossValidationResult:
        """
        k-fold cross-validation over disjoint folds.

        evaluate_fold(train, test) trains a fresh model on train and returns
        its ValidationResult on test.
        """
        k = folds or self.config.cross_validation_folds
        data = list(experiences)
        if len(data) < k * self.min_samples:
            return CrossValidationResult(Stability.INSUFFICIENT_DATA)

        order = self.rng.permutation(len(data))
        fold_indices = np.array_split(order, k)

        accuracies, rewards = [], []
        for i, test_idx in enumerate(fold_indices):
            test_set = {int(j) for j in test_idx}
            test = [data[j] for j in test_idx]
            train = [data[j] for j in order if int(j) not in test_set]
            result = evaluate_fold(train, test)
            accuracies.append(result.accuracy)
            rewards.append(result.average_reward)
            logger.debug(f"Fold {i + 1}/{k}: accuracy={result.accuracy:.3f}")

        mean_acc = float(np.mean(accuracies))
        std_acc = float(np.std(accuracies))
        result = CrossValidationResult(
            stability=classify_stability(std_acc),
            fold_accuracies=accuracies,
            fold_rewards=rewards,
            mean_accuracy=mean_acc,
            std_accuracy=std_acc,
            mean_reward=float(np.mean(rewards)),
            std_reward=float(np.std(rewards)),
        )
        logger.info(f"Cross-validation ({k} folds): {result.stability.value} "
                    f"accuracy={mean_acc:.3f}+/-{std_acc:.3f}")
        return result

    # Background execution

    def run_async(self, worker: BackgroundWorker, method: Callable, *args, **kwargs) -> Future:
        """Run any validator method on the background worker"""
        return worker.submit(TaskType.VALIDATE, method, *args, **kwargs)

    def get_report(self) -> ValidationReport:
        with self._lock:
            return ValidationReport(latest=dict(self.latest), history=list(self.history))

    def clear_history(self):
        with self._lock:
            self.history.clear()
            self.latest.clear()
