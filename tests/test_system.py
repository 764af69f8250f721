"""
Tests for the LearningSystem facade.

Tests cover:
- Attach, register and tick
- Recovery when no model or only corrupt models exist
- Save on shutdown and reload on start
- Background evolution and validation
- Every configured algorithm driving the tick loop
- Network batch steps kept off the tick thread
"""

import sys
import os
import tempfile
import threading

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest
from core.config import LearningConfig
from core.state import VectorState
from coordination.coordinator import ActionOutcome
from coordination.trainer import BackgroundTrainer
from coordination.worker import TaskType
from system import LearningSystem, MIN_EVOLUTION_EXPERIENCES


class LineWorld:
    """Agents walk a line; moving with action 0 is rewarded"""

    def __init__(self):
        self.positions = {}

    def get_state(self, agent_id):
        return VectorState.of([self.positions.get(agent_id, 0.0) % 5])

    def execute(self, agent_id, action):
        position = self.positions.get(agent_id, 0.0) + (1.0 if action == 0 else 0.0)
        self.positions[agent_id] = position
        return ActionOutcome(next_state=VectorState.of([position % 5]),
                             reward=1.0 if action == 0 else -0.1)


def make_system(model_dir, **overrides):
    data = {'algorithm': 'tabular', 'model_dir': model_dir, 'seed': 0,
            'epsilon_start': 0.2, 'batch_size': 4}
    data.update(overrides)
    system = LearningSystem(LearningConfig.from_dict(data))
    world = LineWorld()
    system.attach(world, world)
    return system


class TestLifecycle:
    def test_fresh_start_records_recovery(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            system = make_system(tmpdir)
            try:
                assert not system.initialize()
                assert len(system.recovery_events) == 1
                assert system.recovery_events[0].model == 'tabular'
            finally:
                system.shutdown()

    def test_tick_requires_attach(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            system = LearningSystem(LearningConfig.from_dict({'model_dir': tmpdir}))
            try:
                with pytest.raises(RuntimeError):
                    system.tick()
            finally:
                system.shutdown()

    def test_tick_and_reload(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            system = make_system(tmpdir)
            system.initialize()
            system.register_agent('scout')
            system.register_agent('worker')
            for _ in range(10):
                report = system.tick()
                assert report.processed == 2
                assert report.failed == 0
            rows = len(system.table)
            assert rows > 0
            system.shutdown()

            restored = make_system(tmpdir)
            try:
                assert restored.initialize()
                assert restored.recovery_events == []
                assert len(restored.table) == rows
            finally:
                restored.shutdown()

    def test_corrupt_models_fall_back_to_fresh(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            system = make_system(tmpdir, save_on_shutdown=False)
            system.register_agent('a')
            system.tick()
            system.save()
            system.shutdown()

            model_dir = os.path.join(tmpdir, 'tabular')
            for version in os.listdir(model_dir):
                with open(os.path.join(model_dir, version, 'qtable.npz'), 'wb') as f:
                    f.write(b'not an archive')

            restored = make_system(tmpdir)
            try:
                assert not restored.initialize()
                assert len(restored.recovery_events) == 1
                restored.register_agent('a')
                assert restored.tick().processed == 1
            finally:
                restored.shutdown()

    def test_load_on_start_disabled(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            system = make_system(tmpdir, load_on_start=False)
            try:
                assert not system.initialize()
                assert system.recovery_events == []
            finally:
                system.shutdown()

    def test_shutdown_is_final(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            system = make_system(tmpdir)
            system.register_agent('a')
            system.tick()
            system.shutdown()
            system.shutdown()
            assert system.store.list_versions('tabular')
            with pytest.raises(RuntimeError):
                system.tick()

    def test_messages_reach_next_tick(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            system = make_system(tmpdir)
            try:
                system.register_agent('a')
                system.register_agent('b')
                system.send_message('a', 'b', 'enemy spotted')
                assert system.tick().messages_delivered == 1
                assert system.tick().messages_delivered == 0
                system.unregister_agent('b')
                assert system.tick().processed == 1
            finally:
                system.shutdown()

    def test_failed_save_on_shutdown_is_recorded(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            system = make_system(tmpdir)
            system.register_agent('a')
            system.tick()

            def broken_save(path):
                raise RuntimeError("disk full")

            system.algorithm.save_model = broken_save
            system.shutdown()
            assert 'disk full' in system.last_save_error
            assert system.get_stats()['last_save_error'] == system.last_save_error
            assert system.store.list_versions('tabular') == []


class TestBackgroundWork:
    def test_evolution(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            system = make_system(tmpdir, algorithm='evolutionary',
                                 ga={'population_size': 6, 'genome_size': 3})
            try:
                system.register_agent('a')
                system.register_agent('b')
                assert system.evolve_async() is None

                while len(system.coordinator.recent_experiences()) < MIN_EVOLUTION_EXPERIENCES:
                    system.tick()

                future = system.evolve_async(generations=2)
                assert future is not None
                result = future.result(timeout=30)
                assert result.success, result.error
                assert result.task_type == TaskType.EVOLVE
                assert len(result.value) == 2
                assert system.optimizer.generation == 2
                assert system.algorithm.get_stats()['applied_genome'] is not None
            finally:
                system.shutdown()

    def test_evolution_needs_evolutionary_algorithm(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            system = make_system(tmpdir)
            try:
                system.register_agent('a')
                for _ in range(MIN_EVOLUTION_EXPERIENCES):
                    system.tick()
                assert system.evolve_async() is None
            finally:
                system.shutdown()

    def test_validate_async(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            system = make_system(tmpdir, validation={'min_test_samples': 10})
            try:
                system.register_agent('a')
                for _ in range(60):
                    system.tick()
                result = system.validate_async().result(timeout=10)
                assert result.success, result.error
                assert result.task_type == TaskType.VALIDATE
                assert result.value.sample_size == 12
            finally:
                system.shutdown()


class TestAlgorithms:
    @pytest.mark.parametrize('algorithm', ['dqn', 'policy_gradient'])
    def test_network_algorithms_tick(self, algorithm):
        with tempfile.TemporaryDirectory() as tmpdir:
            system = make_system(tmpdir, algorithm=algorithm, state_size=1, hidden_size=8)
            try:
                system.initialize()
                system.register_agent('a')
                system.register_agent('b')
                for _ in range(10):
                    report = system.tick()
                    assert report.failed == 0
                    assert report.processed == 2
                assert isinstance(system.trainer, BackgroundTrainer)
            finally:
                system.shutdown()
            assert system.store.list_versions(algorithm)

    def test_dqn_batches_run_on_worker(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            system = make_system(tmpdir, algorithm='dqn', state_size=1, hidden_size=8)
            threads = []
            fit = system.algorithm.online.fit

            def recorded_fit(*args, **kwargs):
                threads.append(threading.current_thread().name)
                return fit(*args, **kwargs)

            system.algorithm.online.fit = recorded_fit
            try:
                system.register_agent('a')
                for _ in range(8):
                    system.tick()
                    system.trainer.wait(timeout=5)
            finally:
                system.shutdown()
            assert threads
            assert all(name.startswith("learning-worker") for name in threads)
            assert system.get_stats()['worker']['tasks_submitted'] > 0

    def test_stats(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            system = make_system(tmpdir)
            try:
                system.initialize()
                system.register_agent('a')
                system.tick()
                stats = system.get_stats()
                assert stats['algorithm'] == 'tabular'
                assert stats['initialized']
                assert not stats['shut_down']
                assert stats['recovery_events'] == 1
                assert stats['coordinator']['ticks'] == 1
                assert stats['validation_status'] == 'NO_DATA'
                assert 'trainer' in stats
                assert 'worker' in stats
            finally:
                system.shutdown()


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
