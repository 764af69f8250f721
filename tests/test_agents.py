"""
Tests for the learning agents.

Tests cover:
- Tabular Q-learning updates, weighted batches and persistence
- FIFO and prioritized replay
- NumPy value network
- DQN target network, exploration schedule and persistence
- REINFORCE policy gradient
- LSTM movement predictor
"""

import sys
import os
import json
import random
import tempfile
import threading
import time
import numpy as np

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest
from core.experience import Experience, FlatExperience
from core.exploration import EpsilonGreedyPolicy, AdaptiveEpsilonPolicy
from core.qtable import QTable
from core.state import Action, FeatureState, Location
from agents.base import ModelLoadError
from agents.tabular import TabularQAgent
from agents.replay import ReplayBuffer, PrioritizedReplayBuffer
from agents.network import MLP
from agents.dqn import DQNAgent
from agents.policy_gradient import PolicyGradientAgent
from agents.movement import MovementPredictor


def flat(state, action, reward, next_state, done=False):
    return FlatExperience.of(state, action, reward, next_state, done)


def greedy_policy():
    return EpsilonGreedyPolicy(initial_epsilon=0.0, min_epsilon=0.0)


class TestTabularQAgent:
    def test_single_update(self):
        agent = TabularQAgent(learning_rate=0.5, discount=0.9, policy=greedy_policy())
        td = agent.learn([1.0, 0.0], Action.MOVE_TO.index, 10.0, [2.0, 0.0])
        assert td == pytest.approx(10.0)
        assert agent.q_values([1.0, 0.0])[0] == pytest.approx(5.0)

    def test_terminal_ignores_next_state(self):
        agent = TabularQAgent(learning_rate=1.0, discount=0.9)
        agent.learn([3.0], 1, 100.0, [3.0], terminal=True)
        td = agent.learn([4.0], 0, 1.0, [3.0], terminal=True)
        assert td == pytest.approx(1.0)
        td = agent.learn([5.0], 0, 1.0, [3.0])
        assert td == pytest.approx(1.0 + 0.9 * 100.0)

    def test_repeated_updates_converge(self):
        agent = TabularQAgent(learning_rate=0.3, discount=0.9)
        errors = [abs(agent.learn([0.5], 2, 1.0, [0.5], terminal=True)) for _ in range(40)]
        assert all(b <= a for a, b in zip(errors, errors[1:]))
        assert agent.q_values([0.5])[2] == pytest.approx(1.0, abs=1e-4)

    def test_structured_states_share_hash(self):
        agent = TabularQAgent(learning_rate=0.5, policy=greedy_policy())
        state = FeatureState(location=Location(1, 64, 1), health=20)
        exp = Experience.create(state, Action.ATTACK_ENTITY, 4.0,
                                FeatureState(location=Location(1, 64, 1), health=0))
        agent.train(exp)
        assert agent.q_values(state.flatten())[Action.ATTACK_ENTITY.index] == pytest.approx(2.0)
        assert agent.select_action(state) == Action.ATTACK_ENTITY.index

    def test_batch_weights_scale_updates(self):
        agent = TabularQAgent(learning_rate=0.5, discount=0.0, policy=greedy_policy())
        batch = [flat([1.0], 0, 4.0, [9.0]), flat([2.0], 0, 4.0, [9.0])]
        td = agent.train_on_batch(batch, weights=[0.0, 0.5])
        np.testing.assert_allclose(td, [4.0, 4.0])
        assert agent.q_values([1.0])[0] == 0.0
        assert agent.q_values([2.0])[0] == pytest.approx(1.0)

    def test_batch_weight_length_mismatch(self):
        agent = TabularQAgent()
        with pytest.raises(ValueError):
            agent.train_batch([flat([1.0], 0, 1.0, [1.0])], weights=[1.0, 1.0])

    def test_rejects_bad_action_and_empty_state(self):
        agent = TabularQAgent()
        with pytest.raises(ValueError):
            agent.learn([1.0], 8, 1.0, [1.0])
        with pytest.raises(ValueError):
            agent.learn([], 0, 1.0, [1.0])

    def test_shared_table(self):
        table = QTable(8)
        a = TabularQAgent(learning_rate=0.5, table=table)
        b = TabularQAgent(learning_rate=0.5, table=table)
        a.learn([7.0], 3, 2.0, [7.0], terminal=True)
        assert b.q_values([7.0])[3] == pytest.approx(1.0)
        with pytest.raises(ValueError):
            TabularQAgent(num_actions=4, table=table)

    def test_action_values_do_not_create_rows(self):
        agent = TabularQAgent()
        np.testing.assert_array_equal(agent.action_values([42.0]), np.zeros(8))
        assert len(agent.table) == 0

    def test_training_decays_exploration(self):
        policy = EpsilonGreedyPolicy(initial_epsilon=1.0, min_epsilon=0.1, decay=0.5)
        agent = TabularQAgent(policy=policy)
        for _ in range(4):
            agent.train(flat([1.0], 0, 0.0, [1.0]))
        assert agent.get_exploration_rate() == pytest.approx(0.1)

    def test_adaptive_policy_from_config(self):
        agent = TabularQAgent.from_config({'adaptive_exploration': True, 'epsilon_start': 0.4})
        assert isinstance(agent.policy, AdaptiveEpsilonPolicy)
        agent.train(flat([1.0], 0, 1.0, [2.0]))
        assert agent.policy.step_count == 1

    def test_save_and_load(self):
        agent = TabularQAgent(learning_rate=0.5)
        for i in range(5):
            agent.learn([float(i)], i % 8, float(i), [float(i + 1)])
        with tempfile.TemporaryDirectory() as tmpdir:
            agent.save_model(tmpdir)
            restored = TabularQAgent()
            restored.load_model(tmpdir)
        assert len(restored.table) == len(agent.table)
        for i in range(5):
            np.testing.assert_allclose(restored.q_values([float(i)]), agent.q_values([float(i)]))
        assert restored.learning_rate == 0.5

    def test_load_failures(self):
        agent = TabularQAgent()
        with tempfile.TemporaryDirectory() as tmpdir:
            with pytest.raises(ModelLoadError):
                agent.load_model(tmpdir)
            with open(os.path.join(tmpdir, 'qtable.npz'), 'wb') as f:
                f.write(b'not a table')
            with pytest.raises(ModelLoadError):
                agent.load_model(tmpdir)

    def test_reset(self):
        agent = TabularQAgent()
        agent.train(flat([1.0], 0, 1.0, [1.0]))
        agent.reset()
        assert len(agent.table) == 0
        assert agent.get_stats()['updates'] == 0


class TestReplayBuffer:
    def test_fifo_eviction(self):
        buffer = ReplayBuffer(capacity=2)
        for reward in (1.0, 2.0, 3.0):
            buffer.add(flat([reward], 0, reward, [reward]))
        assert len(buffer) == 2
        assert sorted(e.reward for e in buffer.contents()) == [2.0, 3.0]
        assert buffer.total_added == 3

    def test_sample(self):
        buffer = ReplayBuffer(capacity=10, rng=random.Random(0))
        for i in range(5):
            buffer.add(flat([i], 0, i, [i]))
        batch = buffer.sample(3)
        assert len(batch) == 3
        assert len({e.reward for e in batch}) == 3
        assert buffer.is_ready(5)
        assert not buffer.is_ready(6)
        with pytest.raises(ValueError):
            buffer.sample(6)

    def test_sample_after_eviction(self):
        buffer = ReplayBuffer(capacity=4, rng=random.Random(3))
        for i in range(10):
            buffer.add(flat([i], 0, float(i), [i]))
        batch = buffer.sample(4)
        assert sorted(e.reward for e in batch) == [6.0, 7.0, 8.0, 9.0]

    def test_invalid_capacity(self):
        with pytest.raises(ValueError):
            ReplayBuffer(capacity=0)


class TestPrioritizedReplay:
    def test_weights_normalized(self):
        buffer = PrioritizedReplayBuffer(capacity=8, rng=random.Random(1))
        for i in range(8):
            buffer.add(flat([i], 0, i, [i]))
        batch, indices, weights = buffer.sample(4)
        assert len(batch) == 4
        assert len(indices) == 4
        assert weights.max() == pytest.approx(1.0)
        assert np.all(weights > 0)

    def test_beta_anneals(self):
        buffer = PrioritizedReplayBuffer(capacity=4, beta_start=0.4, beta_increment=0.1)
        for i in range(4):
            buffer.add(flat([i], 0, i, [i]))
        for _ in range(10):
            buffer.sample(2)
        assert buffer.beta == pytest.approx(1.0)

    def test_high_error_sampled_more(self):
        buffer = PrioritizedReplayBuffer(capacity=4, rng=random.Random(2))
        for i in range(4):
            buffer.add(flat([i], 0, float(i), [i]))
        batch, indices, _ = buffer.sample(4)
        target = batch[0]
        buffer.update_priorities(indices, [50.0] + [0.0] * (len(indices) - 1))
        hits = 0
        for _ in range(300):
            sampled, _, _ = buffer.sample(1)
            hits += int(sampled[0] is target)
        assert hits > 200

    def test_capacity_overwrites_oldest(self):
        buffer = PrioritizedReplayBuffer(capacity=2)
        for i in range(3):
            buffer.add(flat([i], 0, float(i), [i]))
        assert len(buffer) == 2
        rewards = {e.reward for e in buffer.tree.data}
        assert rewards == {1.0, 2.0}

    def test_overwritten_slot_keeps_fresh_priority(self):
        buffer = PrioritizedReplayBuffer(capacity=2, rng=random.Random(0))
        for i in range(2):
            buffer.add(flat([i], 0, float(i), [i]))
        _, indices, _ = buffer.sample(2)
        for i in range(2, 4):
            buffer.add(flat([i], 0, float(i), [i]))
        buffer.update_priorities(indices, [50.0, 50.0])
        np.testing.assert_allclose(buffer.tree.leaf_priorities(), [1.0, 1.0])
        assert buffer.max_priority == 1.0

        _, indices, _ = buffer.sample(2)
        buffer.update_priorities(indices, [50.0, 50.0])
        assert buffer.max_priority > 1.0


class TestMLP:
    def test_shapes(self):
        net = MLP([4, 8, 3], seed=0)
        assert net.forward(np.zeros((5, 4))).shape == (5, 3)
        assert net.predict(np.zeros(4)).shape == (3,)
        with pytest.raises(ValueError):
            net.forward(np.zeros(5))

    def test_fit_reduces_loss(self):
        rng = np.random.default_rng(0)
        x = rng.standard_normal((32, 4))
        y = x @ rng.standard_normal((4, 2))
        net = MLP([4, 16, 2], lr=1e-2, seed=0)
        first = net.fit(x, y)
        for _ in range(300):
            last = net.fit(x, y)
        assert last < first * 0.5

    def test_fit_rejects_bad_targets(self):
        net = MLP([2, 4, 2], seed=0)
        with pytest.raises(ValueError):
            net.fit(np.zeros((3, 2)), np.zeros((3, 5)))

    def test_copy_from(self):
        a = MLP([3, 5, 2], seed=1)
        b = MLP([3, 5, 2], seed=2)
        b.copy_from(a)
        x = np.ones((2, 3))
        np.testing.assert_array_equal(a.forward(x), b.forward(x))
        with pytest.raises(ValueError):
            MLP([3, 6, 2]).copy_from(a)

    def test_save_and_load(self):
        a = MLP([3, 5, 2], seed=1)
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, 'net.npz')
            a.save(path)
            b = MLP([3, 5, 2], seed=9)
            b.load(path)
        np.testing.assert_array_equal(a.predict(np.ones(3)), b.predict(np.ones(3)))

    def test_inference_not_blocked_by_fit(self):
        net = MLP([4, 8, 2], lr=1e-2, seed=0)
        before = net.get_params()
        entered = threading.Event()
        release = threading.Event()
        backward = net._backward

        def slow_backward(*args):
            entered.set()
            release.wait(5)
            return backward(*args)

        net._backward = slow_backward
        fitter = threading.Thread(target=net.fit, args=(np.ones((4, 4)), np.zeros((4, 2))))
        fitter.start()
        try:
            assert entered.wait(5)
            start = time.perf_counter()
            out = net.predict(np.ones(4))
            elapsed = time.perf_counter() - start
        finally:
            release.set()
            fitter.join(5)
        assert elapsed < 1.0
        # The in-flight step had not published yet
        expected, _ = net._forward(np.ones((1, 4), dtype=np.float32), before)
        np.testing.assert_allclose(out, expected[0], rtol=1e-6)
        assert not np.array_equal(net.get_params()['w0'], before['w0'])


def dqn_experiences(n, state_size=4, seed=0):
    rng = np.random.default_rng(seed)
    return [flat(rng.standard_normal(state_size), int(rng.integers(0, 8)),
                 float(rng.standard_normal()), rng.standard_normal(state_size),
                 bool(rng.random() < 0.1)) for _ in range(n)]


class TestDQNAgent:
    def test_target_starts_synced(self):
        agent = DQNAgent(state_size=4, seed=0)
        x = np.ones((1, 4))
        np.testing.assert_array_equal(agent.online.forward(x), agent.target.forward(x))

    def test_target_sync_schedule(self):
        agent = DQNAgent(state_size=4, batch_size=4, update_target_every=5, seed=0)
        results = [agent.train(e) for e in dqn_experiences(8)]
        assert results[:3] == [None, None, None]
        assert agent.train_steps == 5
        assert agent.target_syncs == 1
        for name, value in agent.online.get_params().items():
            np.testing.assert_array_equal(value, agent.target.get_params()[name])

    def test_target_frozen_between_syncs(self):
        agent = DQNAgent(state_size=4, batch_size=4, update_target_every=100, seed=0)
        before = agent.target.get_params()
        for e in dqn_experiences(10):
            agent.train(e)
        after = agent.target.get_params()
        for name in before:
            np.testing.assert_array_equal(before[name], after[name])
        assert not np.array_equal(agent.online.get_params()['w0'], before['w0'])

    def test_epsilon_decays_to_floor(self):
        agent = DQNAgent(state_size=4, epsilon=1.0, epsilon_min=0.1, epsilon_decay=0.5, seed=0)
        batch = dqn_experiences(4)
        for _ in range(10):
            agent.train_batch(batch)
        assert agent.get_exploration_rate() == pytest.approx(0.1)

    def test_terminal_td_error(self):
        agent = DQNAgent(state_size=4, seed=0)
        state = np.array([0.1, 0.2, 0.3, 0.4])
        q_before = agent.q_values(state)[3]
        td = agent.train_batch([flat(state, 3, 2.0, np.zeros(4), done=True)])
        assert td[0] == pytest.approx(2.0 - q_before, abs=1e-5)

    def test_state_size_mismatch(self):
        agent = DQNAgent(state_size=4, seed=0)
        with pytest.raises(ValueError):
            agent.select_action(np.zeros(3))
        with pytest.raises(ValueError):
            agent.train(flat(np.zeros(5), 0, 0.0, np.zeros(5)))

    def test_greedy_selection(self):
        agent = DQNAgent(state_size=4, epsilon=0.0, epsilon_min=0.0, seed=0)
        state = np.ones(4)
        assert agent.select_action(state) == int(np.argmax(agent.q_values(state)))

    def test_save_and_load_resyncs_target(self):
        agent = DQNAgent(state_size=4, batch_size=4, seed=0)
        for e in dqn_experiences(12):
            agent.train(e)
        state = np.ones(4)
        with tempfile.TemporaryDirectory() as tmpdir:
            agent.save_model(tmpdir)
            restored = DQNAgent(state_size=4, batch_size=4, seed=5)
            restored.load_model(tmpdir)
        np.testing.assert_allclose(restored.q_values(state), agent.q_values(state))
        np.testing.assert_array_equal(restored.target.forward(state),
                                      restored.online.forward(state))
        assert restored.get_exploration_rate() == pytest.approx(agent.get_exploration_rate())

    def test_load_failures(self):
        agent = DQNAgent(state_size=4)
        with tempfile.TemporaryDirectory() as tmpdir:
            with pytest.raises(ModelLoadError):
                agent.load_model(tmpdir)
            DQNAgent(state_size=6).save_model(tmpdir)
            with pytest.raises(ModelLoadError):
                agent.load_model(tmpdir)

    def test_deferred_training_only_records(self):
        agent = DQNAgent(state_size=4, batch_size=4, seed=0)
        agent.defer_training()
        for e in dqn_experiences(6):
            assert agent.train(e) is None
        assert agent.train_steps == 0
        assert len(agent.buffer) == 6
        assert agent.train_step() is not None
        assert agent.train_steps == 1

    def test_corrupt_metadata_leaves_networks_untouched(self):
        source = DQNAgent(state_size=4, batch_size=4, seed=0)
        for e in dqn_experiences(8):
            source.train(e)
        agent = DQNAgent(state_size=4, seed=3)
        before = agent.online.get_params()
        with tempfile.TemporaryDirectory() as tmpdir:
            source.save_model(tmpdir)
            with open(os.path.join(tmpdir, 'meta.json'), 'w') as f:
                f.write('{"epsilon": ')
            with pytest.raises(ModelLoadError):
                agent.load_model(tmpdir)
        state = np.ones(4)
        for name, value in agent.online.get_params().items():
            np.testing.assert_array_equal(value, before[name])
        np.testing.assert_array_equal(agent.online.forward(state), agent.target.forward(state))


class TestPolicyGradientAgent:
    def test_probabilities(self):
        agent = PolicyGradientAgent(state_size=4, seed=0)
        probs = agent.action_probabilities(np.ones(4))
        assert probs.shape == (8,)
        assert probs.sum() == pytest.approx(1.0)
        assert 0 <= agent.select_action(np.ones(4)) < 8

    def test_discounted_returns(self):
        agent = PolicyGradientAgent(state_size=2, discount=0.5)
        returns = agent.discounted_returns([1.0, 1.0, 1.0, 1.0], [False, False, True, False])
        np.testing.assert_allclose(returns, [1.75, 1.5, 1.0, 1.0])

    def test_learns_rewarded_action(self):
        agent = PolicyGradientAgent(state_size=4, learning_rate=0.1, seed=3)
        state = np.array([1.0, 0.0, 0.0, 0.0])
        rng = np.random.default_rng(3)
        before = agent.action_probabilities(state)[2]
        for _ in range(300):
            batch = []
            for _ in range(16):
                action = int(rng.integers(0, 8))
                batch.append(flat(state, action, 1.0 if action == 2 else 0.0, state, done=True))
            agent.train_batch(batch)
        after = agent.action_probabilities(state)[2]
        assert after > before
        assert after > 0.5

    def test_train_buffers_until_episode_end(self):
        agent = PolicyGradientAgent(state_size=2, batch_size=10, seed=0)
        assert agent.train(flat([0.0, 1.0], 1, 1.0, [1.0, 0.0])) is None
        assert agent.get_stats()['pending_experiences'] == 1
        advantages = agent.train(flat([1.0, 0.0], 2, 0.0, [0.0, 0.0], done=True))
        assert len(advantages) == 2
        assert agent.get_stats()['pending_experiences'] == 0
        assert agent.get_stats()['episodes'] == 1

    def test_save_and_load(self):
        agent = PolicyGradientAgent(state_size=3, seed=0)
        agent.train_batch([flat([1, 2, 3], 0, 1.0, [1, 2, 3], done=True)])
        with tempfile.TemporaryDirectory() as tmpdir:
            agent.save_model(tmpdir)
            restored = PolicyGradientAgent(state_size=3, seed=7)
            restored.load_model(tmpdir)
        np.testing.assert_allclose(restored.action_probabilities([1, 2, 3]),
                                   agent.action_probabilities([1, 2, 3]))
        with tempfile.TemporaryDirectory() as tmpdir:
            with pytest.raises(ModelLoadError):
                restored.load_model(tmpdir)

    def test_deferred_segments_trained_by_train_step(self):
        agent = PolicyGradientAgent(state_size=2, batch_size=10, seed=0)
        agent.defer_training()
        before = agent.get_params()
        assert agent.train(flat([0.0, 1.0], 1, 1.0, [1.0, 0.0], done=True)) is None
        assert agent.train(flat([1.0, 0.0], 2, 1.0, [0.0, 0.0], done=True)) is None
        assert agent.get_stats()['pending_segments'] == 2
        np.testing.assert_array_equal(agent.get_params()['w1'], before['w1'])

        assert agent.train_step() is not None
        assert agent.updates == 2
        assert agent.get_stats()['pending_segments'] == 0
        assert agent.train_step() is None

    def test_corrupt_metadata_leaves_policy_untouched(self):
        source = PolicyGradientAgent(state_size=3, seed=0)
        source.train_batch([flat([1, 2, 3], 0, 1.0, [1, 2, 3], done=True)])
        agent = PolicyGradientAgent(state_size=3, seed=7)
        before = agent.get_params()
        with tempfile.TemporaryDirectory() as tmpdir:
            source.save_model(tmpdir)
            with open(os.path.join(tmpdir, 'meta.json'), 'w') as f:
                json.dump({'baseline': 'high'}, f)
            with pytest.raises(ModelLoadError):
                agent.load_model(tmpdir)
        for name, value in agent.get_params().items():
            np.testing.assert_array_equal(value, before[name])
        assert agent.baseline == 0.0


def movement_sequence(length=12, phase=0.0):
    t = np.arange(length) * 0.3 + phase
    return np.stack([np.sin(t) * 0.5, np.cos(t) * 0.5], axis=1)


class TestMovementPredictor:
    def test_per_gate_weights(self):
        model = MovementPredictor(input_size=2, hidden_size=8, output_size=2, seed=0)
        params = model.get_params()
        for gate in ('i', 'f', 'g', 'o'):
            assert params[f'W_{gate}'].shape == (10, 8)
        np.testing.assert_array_equal(params['b_f'], np.ones(8))

    def test_training_reduces_loss(self):
        model = MovementPredictor(input_size=2, hidden_size=16, output_size=2,
                                  learning_rate=0.05, seed=0)
        seq = movement_sequence()
        first = model.train_sequence(seq[:-1], seq[1:])
        for _ in range(500):
            last = model.train_sequence(seq[:-1], seq[1:])
        assert last < first * 0.5
        assert model.get_stats()['training_steps'] == 501

    def test_streaming_and_reset(self):
        model = MovementPredictor(input_size=2, hidden_size=8, output_size=2, seed=0)
        first = model.predict([0.1, 0.2])
        second = model.predict([0.1, 0.2])
        assert not np.allclose(first, second)
        model.reset_state()
        np.testing.assert_allclose(model.predict([0.1, 0.2]), first)

    def test_forward_sequence_matches_streaming(self):
        model = MovementPredictor(input_size=2, hidden_size=8, output_size=2, seed=0)
        seq = movement_sequence(5)
        outputs = model.forward_sequence(seq)
        model.reset_state()
        streamed = np.array([model.predict(x) for x in seq])
        np.testing.assert_allclose(outputs, streamed)

    def test_predict_sequence(self):
        model = MovementPredictor(input_size=2, hidden_size=8, output_size=2, seed=0)
        predictions = model.predict_sequence([0.0, 0.5], steps=4)
        assert len(predictions) == 4
        assert all(np.all(np.abs(p) <= 1.0) for p in predictions)

    def test_malformed_sequences_skipped(self):
        model = MovementPredictor(input_size=2, hidden_size=4, output_size=2, seed=0)
        assert model.split_sequence([1.0, 2.0, 3.0]) is None
        assert model.split_sequence([1.0, 2.0]) is None
        assert model.train_on_batch([[1.0, 2.0, 3.0]]) is None
        loss = model.train_on_batch([[1.0, 2.0, 3.0], movement_sequence(4).ravel()])
        assert loss is not None and loss >= 0.0

    def test_input_size_checked(self):
        model = MovementPredictor(input_size=3, hidden_size=4, output_size=3)
        with pytest.raises(ValueError):
            model.predict([1.0, 2.0])

    def test_confidence(self):
        assert MovementPredictor.get_confidence([]) == 0.0
        assert MovementPredictor.get_confidence([2.0, 4.0]) == 1.0
        assert MovementPredictor.get_confidence([0.2, -0.4]) == pytest.approx(0.3)

    def test_save_and_load(self):
        model = MovementPredictor(input_size=2, hidden_size=4, output_size=2, seed=0)
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, 'movement.npz')
            model.save(path)
            restored = MovementPredictor(input_size=2, hidden_size=4, output_size=2, seed=1)
            restored.load(path)
        np.testing.assert_allclose(restored.forward_sequence(movement_sequence(3)),
                                   model.forward_sequence(movement_sequence(3)))


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
