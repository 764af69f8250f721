"""
Tests for the model validator.

Tests cover:
- Insufficient-data handling
- Value-based agent scoring
- Genetic population scoring
- Movement predictor scoring
- k-fold cross-validation and stability classes
- Reports and background validation
"""

import sys
import os
import numpy as np

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest
from core.config import GAConfig, ValidationConfig
from core.experience import FlatExperience
from core.exploration import EpsilonGreedyPolicy
from agents.dqn import DQNAgent
from agents.movement import MovementPredictor
from agents.tabular import TabularQAgent
from coordination.worker import BackgroundWorker
from evolution.optimizer import GeneticOptimizer
from validation.validator import (
    ModelValidator, ValidationResult, ValidationStatus, Stability, classify_stability,
)


def labelled_experiences(n):
    return [FlatExperience.of([float(i)], i % 8, 1.0, [float(i)], done=True) for i in range(n)]


def trained_agent(experiences):
    agent = TabularQAgent(learning_rate=1.0,
                          policy=EpsilonGreedyPolicy(initial_epsilon=0.0, min_epsilon=0.0))
    for exp in experiences:
        agent.learn(exp.state, exp.action, exp.reward, exp.next_state, exp.done)
    return agent


def make_validator(min_samples=10, folds=5):
    return ModelValidator(ValidationConfig(cross_validation_folds=folds,
                                           min_test_samples=min_samples), seed=0)


class TestAgentValidation:
    def test_insufficient_data(self):
        validator = make_validator()
        data = labelled_experiences(5)
        result = validator.validate_q_agent(trained_agent(data), data)
        assert result.status == ValidationStatus.INSUFFICIENT_DATA
        assert result.insufficient
        assert result.sample_size == 5
        assert validator.get_report().history == []

    def test_perfect_agent(self):
        validator = make_validator()
        data = labelled_experiences(20)
        result = validator.validate_q_agent(trained_agent(data), data)
        assert result.status == ValidationStatus.GOOD
        assert result.accuracy == 1.0
        assert result.average_reward == 1.0
        assert result.additional_metric == 1.0
        assert result.metrics['correct_predictions'] == 20

    def test_known_best_actions(self):
        validator = make_validator()
        data = labelled_experiences(20)
        wrong = [(exp.action + 1) % 8 for exp in data]
        result = validator.validate_q_agent(trained_agent(data), data, best_actions=wrong)
        assert result.accuracy == 0.0
        assert result.status == ValidationStatus.POOR
        with pytest.raises(ValueError):
            validator.validate_q_agent(trained_agent(data), data, best_actions=wrong[:3])

    def test_untrained_agent_is_not_mutated(self):
        validator = make_validator()
        agent = TabularQAgent()
        validator.validate_q_agent(agent, labelled_experiences(20))
        assert len(agent.table) == 0

    def test_network_validation(self):
        validator = make_validator()
        rng = np.random.default_rng(0)
        data = [FlatExperience.of(rng.standard_normal(4), int(rng.integers(0, 8)), 0.0,
                                  rng.standard_normal(4)) for _ in range(15)]
        result = validator.validate_network(DQNAgent(state_size=4, seed=0), data)
        assert result.status != ValidationStatus.INSUFFICIENT_DATA
        assert 0.0 <= result.accuracy <= 1.0
        assert 'network' in validator.get_report().latest


class TestGeneticValidation:
    def test_needs_ten_genomes(self):
        validator = make_validator()
        result = validator.validate_genetic([np.zeros(3)] * 9, lambda g: 1.0)
        assert result.status == ValidationStatus.INSUFFICIENT_DATA

    def test_metrics(self):
        validator = make_validator()
        genomes = [np.array([float(k)]) for k in range(1, 11)]
        result = validator.validate_genetic(genomes, lambda g: float(g[0]))
        assert result.metrics['best_fitness'] == 10.0
        assert result.metrics['avg_fitness'] == pytest.approx(5.5)
        # fitness >= 0.8 * best: 8, 9 and 10
        assert result.metrics['diversity_ratio'] == pytest.approx(0.3)
        assert result.accuracy == pytest.approx((1.0 + 0.3) / 2)
        assert result.status == ValidationStatus.FAIR

    def test_accuracy_clamped(self):
        validator = make_validator()
        result = validator.validate_genetic([np.ones(2)] * 10, lambda g: 100.0)
        assert result.accuracy == 1.0
        assert result.status == ValidationStatus.GOOD

    def test_optimizer_population(self):
        optimizer = GeneticOptimizer(GAConfig(population_size=10, genome_size=2),
                                     fitness_fn=lambda genes: float(genes.sum()), seed=0)
        optimizer.initialize()
        validator = make_validator()
        result = validator.validate_optimizer(optimizer)
        best = max(float(g.genes.sum()) for g in optimizer.population)
        assert result.metrics['population_size'] == 10.0
        assert result.metrics['best_fitness'] == pytest.approx(best)

    def test_optimizer_without_fitness_function(self):
        optimizer = GeneticOptimizer(GAConfig(population_size=10), seed=0)
        optimizer.initialize()
        with pytest.raises(ValueError):
            make_validator().validate_optimizer(optimizer)


class TestMovementValidation:
    def sequences(self, count, length=6):
        t = np.arange(length) * 0.3
        return [np.stack([np.sin(t + k), np.cos(t + k)], axis=1).ravel() * 0.5
                for k in range(count)]

    def test_insufficient_steps(self):
        validator = make_validator()
        predictor = MovementPredictor(input_size=2, hidden_size=4, output_size=2, seed=0)
        result = validator.validate_movement(predictor, self.sequences(1))
        assert result.status == ValidationStatus.INSUFFICIENT_DATA
        assert result.sample_size == 5

    def test_error_metrics(self):
        validator = make_validator()
        predictor = MovementPredictor(input_size=2, hidden_size=4, output_size=2, seed=0)
        result = validator.validate_movement(predictor, self.sequences(3) + [[1.0, 2.0, 3.0]])
        assert result.sample_size == 15
        assert result.metrics['mse'] >= 0.0
        assert result.accuracy == pytest.approx(1.0 - min(1.0, result.metrics['mae'] / 10.0))
        assert result.status == ValidationStatus.GOOD


class TestCrossValidation:
    def test_insufficient_data(self):
        validator = make_validator()
        result = validator.cross_validate(list(range(40)), lambda train, test: None)
        assert result.stability == Stability.INSUFFICIENT_DATA

    def test_folds_are_disjoint_and_cover_data(self):
        validator = make_validator()
        seen = []

        def evaluate(train, test):
            seen.append((list(train), list(test)))
            return ValidationResult(ValidationStatus.GOOD, accuracy=0.8)

        result = validator.cross_validate(list(range(53)), evaluate)
        assert len(seen) == 5
        tests = [set(test) for _, test in seen]
        assert set().union(*tests) == set(range(53))
        assert sum(len(t) for t in tests) == 53
        for train, test in seen:
            assert not set(train) & set(test)
            assert len(train) + len(test) == 53
            assert len(test) >= 10
        assert result.stability == Stability.STABLE
        assert result.mean_accuracy == pytest.approx(0.8)
        assert result.std_accuracy == pytest.approx(0.0)

    def test_stability_classes(self):
        def run(accuracies):
            validator = make_validator()
            scores = iter(accuracies)
            return validator.cross_validate(
                list(range(50)),
                lambda train, test: ValidationResult(ValidationStatus.GOOD, accuracy=next(scores)))

        assert run([0.5, 0.5, 0.5, 0.8, 0.8]).stability == Stability.MODERATE
        assert run([0.2, 0.8, 0.2, 0.8, 0.2]).stability == Stability.UNSTABLE
        assert classify_stability(0.05) == Stability.STABLE
        assert classify_stability(0.1) == Stability.MODERATE
        assert classify_stability(0.2) == Stability.UNSTABLE

    def test_trains_fresh_model_per_fold(self):
        validator = make_validator(folds=2)
        data = labelled_experiences(40)

        def evaluate(train, test):
            return validator.validate_q_agent(trained_agent(train), test)

        result = validator.cross_validate(data, evaluate)
        # held-out states were never seen, so the greedy action is always 0
        assert len(result.fold_accuracies) == 2
        assert 0.0 <= result.mean_accuracy <= 0.25


class TestReports:
    def test_overall_status(self):
        validator = make_validator()
        assert validator.get_report().overall_status == "NO_DATA"
        data = labelled_experiences(20)
        validator.validate_q_agent(trained_agent(data), data)
        assert validator.get_report().overall_status == "EXCELLENT"
        validator.clear_history()
        assert validator.get_report().overall_status == "NO_DATA"

    def test_train_test_split(self):
        validator = make_validator()
        train, test = validator.train_test_split(list(range(100)))
        assert len(train) == 80
        assert len(test) == 20
        assert set(train).isdisjoint(test)

    def test_run_async(self):
        validator = make_validator()
        worker = BackgroundWorker()
        data = labelled_experiences(20)
        try:
            task = validator.run_async(worker, validator.validate_q_agent,
                                       trained_agent(data), data).result(timeout=5)
        finally:
            worker.shutdown()
        assert task.success
        assert task.value.status == ValidationStatus.GOOD


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
