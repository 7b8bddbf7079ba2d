"""
Tests for the DQN agent.
"""
import dataclasses

import numpy as np
import pytest
import torch

from dqn_agent import DQNAgent, DuelingQNetwork, QNetwork
from replay_memory import Experience
from rl_config import ConfigurationError
from trading_env import N_STATE_EXTRAS, RLReward, RLState

N_FEATURES = 4
STATE_SIZE = N_FEATURES + N_STATE_EXTRAS
N_ACTIONS = 7


def make_state(rng: np.random.Generator) -> RLState:
    return RLState(
        features=rng.normal(size=N_FEATURES).astype(np.float32),
        position=float(rng.uniform()),
        capital=float(rng.uniform(0.5, 1.5)),
        portfolio_value=float(rng.uniform(0.5, 1.5)),
        volatility=float(rng.uniform(0.0, 0.05)),
        momentum=float(rng.normal(0.0, 0.02)),
        trend_strength=float(rng.normal(0.0, 0.001)),
        time_step=int(rng.integers(0, 500)),
    )


def make_experience(rng: np.random.Generator, done: bool = False, reward: float = None) -> Experience:
    total = float(rng.normal()) if reward is None else reward
    return Experience(
        state=make_state(rng),
        action=int(rng.integers(N_ACTIONS)),
        reward=RLReward(total=total),
        next_state=make_state(rng),
        done=done,
    )


def fill_memory(agent: DQNAgent, n: int, seed: int = 0) -> None:
    rng = np.random.default_rng(seed)
    for _ in range(n):
        e = make_experience(rng, done=bool(rng.random() < 0.2))
        agent.store_experience(e.state, e.action, e.reward, e.next_state, e.done)


def parameters_equal(a: torch.nn.Module, b: torch.nn.Module) -> bool:
    return all(torch.equal(p, q) for p, q in zip(a.state_dict().values(), b.state_dict().values()))


def snapshot(network: torch.nn.Module):
    return {k: v.clone() for k, v in network.state_dict().items()}


@pytest.fixture
def agent(agent_config):
    return DQNAgent(STATE_SIZE, N_ACTIONS, agent_config)


class TestConstruction:
    """Test network setup"""

    def test_networks_start_synced(self, agent):
        assert parameters_equal(agent.online_net, agent.target_net)
        assert not agent.target_net.training

    def test_plain_and_dueling_topology(self, agent_config):
        plain = DQNAgent(STATE_SIZE, N_ACTIONS, agent_config)
        dueling = DQNAgent(STATE_SIZE, N_ACTIONS, dataclasses.replace(agent_config, dueling_dqn=True))
        assert isinstance(plain.online_net, QNetwork)
        assert isinstance(dueling.online_net, DuelingQNetwork)
        assert dueling.q_values(make_state(np.random.default_rng(0))).shape == (N_ACTIONS,)

    def test_invalid_config_rejected(self, agent_config):
        with pytest.raises(ConfigurationError):
            DQNAgent(STATE_SIZE, N_ACTIONS, dataclasses.replace(agent_config, batch_size=0))
        with pytest.raises(ConfigurationError):
            DQNAgent(STATE_SIZE, N_ACTIONS, dataclasses.replace(agent_config, epsilon_min=0.5, epsilon=0.1))

    def test_wrong_state_length_rejected(self, agent):
        with pytest.raises(ConfigurationError):
            agent.q_values(np.zeros(STATE_SIZE + 1))


class TestActionSelection:
    """Test epsilon-greedy policy"""

    def test_actions_in_range(self, agent):
        rng = np.random.default_rng(1)
        for _ in range(50):
            action = agent.choose_action(make_state(rng))
            assert 0 <= action < N_ACTIONS

    def test_zero_epsilon_is_greedy(self, agent):
        agent.epsilon = 0.0
        rng = np.random.default_rng(2)
        for _ in range(10):
            state = make_state(rng)
            assert agent.choose_action(state) == int(np.argmax(agent.q_values(state)))
            assert agent.choose_action(state) == agent.greedy_action(state)


class TestEpsilon:
    """Test exploration schedule"""

    def test_decay_after_100_steps(self, agent):
        """1.0 * 0.99^100 ~= 0.366 with floor 0.1"""
        values = [agent.epsilon]
        for _ in range(100):
            values.append(agent.decay_epsilon())

        assert agent.epsilon == pytest.approx(max(0.1, 0.99 ** 100), rel=1e-9)
        assert agent.epsilon == pytest.approx(0.366, abs=1e-3)
        assert all(a >= b for a, b in zip(values, values[1:]))

    def test_floor(self, agent):
        for _ in range(1000):
            agent.decay_epsilon()
        assert agent.epsilon == agent.epsilon_min

    def test_train_decays_once_per_update(self, agent):
        fill_memory(agent, 20)
        agent.train()
        assert agent.epsilon == pytest.approx(0.99)
        agent.train()
        assert agent.epsilon == pytest.approx(0.99 ** 2)


class TestLearning:
    """Test the learning update"""

    def test_noop_on_scarce_data(self, agent_config):
        """Batch size 4, memory 2: train() returns 0 and changes nothing"""
        agent = DQNAgent(STATE_SIZE, N_ACTIONS, dataclasses.replace(agent_config, batch_size=4))
        fill_memory(agent, 2)
        before = snapshot(agent.online_net)

        assert agent.train() == 0.0
        assert agent.update_steps == 0
        assert agent.epsilon == 1.0
        after = agent.online_net.state_dict()
        assert all(torch.equal(before[k], after[k]) for k in before)

    def test_train_updates_parameters(self, agent):
        fill_memory(agent, 20)
        before = snapshot(agent.online_net)

        loss = agent.train()

        assert isinstance(loss, float)
        assert loss > 0.0
        assert agent.update_steps == 1
        after = agent.online_net.state_dict()
        assert any(not torch.equal(before[k], after[k]) for k in before)

    def test_target_unchanged_between_syncs(self, agent):
        """Gradient updates never touch the target network"""
        fill_memory(agent, 20)
        target_before = snapshot(agent.target_net)

        for _ in range(agent.target_update_frequency - 1):
            agent.train()

        after = agent.target_net.state_dict()
        assert all(torch.equal(target_before[k], after[k]) for k in target_before)
        assert not parameters_equal(agent.online_net, agent.target_net)

    def test_target_sync_exactness(self, agent):
        """Right after a sync, Q_target == Q_online for every probe"""
        fill_memory(agent, 20)
        for _ in range(agent.target_update_frequency):
            agent.train()

        assert agent.target_syncs == 1
        probes = torch.from_numpy(
            np.stack([make_state(np.random.default_rng(i)).to_vector() for i in range(16)])
        )
        agent.online_net.eval()
        with torch.no_grad():
            assert torch.equal(agent.online_net(probes), agent.target_net(probes))

    def test_non_finite_reward_skips_update(self, agent):
        """NaN targets skip the gradient step without decaying epsilon"""
        rng = np.random.default_rng(5)
        for _ in range(10):
            e = make_experience(rng, reward=float('nan'))
            agent.store_experience(e.state, e.action, e.reward, e.next_state, e.done)
        before = snapshot(agent.online_net)

        assert agent.train() == 0.0
        assert agent.epsilon == 1.0
        assert agent.update_steps == 0
        after = agent.online_net.state_dict()
        assert all(torch.equal(before[k], after[k]) for k in before)

    def test_dropout_leaves_untaken_actions_without_gradient(self, agent_config):
        """With dropout active, only the taken action's output receives gradient"""
        agent = DQNAgent(STATE_SIZE, N_ACTIONS, dataclasses.replace(agent_config, dropout=0.5))
        rng = np.random.default_rng(8)
        for _ in range(agent.batch_size):
            e = make_experience(rng)
            agent.store_experience(e.state, 0, e.reward, e.next_state, e.done)

        assert agent.train() > 0.0

        grad = agent.online_net.head.bias.grad
        assert grad[0].item() != 0.0
        assert torch.count_nonzero(grad[1:]).item() == 0

    def test_prioritized_replay_attaches_priority(self, agent_config):
        agent = DQNAgent(STATE_SIZE, N_ACTIONS, dataclasses.replace(agent_config, prioritized_replay=True))
        rng = np.random.default_rng(0)
        e = make_experience(rng, reward=-2.5)
        agent.store_experience(e.state, e.action, e.reward, e.next_state, e.done)
        stored = next(iter(agent.memory))
        assert stored.priority == pytest.approx(2.5 + 1e-6)


class TestTargets:
    """Test target matrix computation"""

    @staticmethod
    def hand_targets(agent: DQNAgent, batch, double: bool) -> np.ndarray:
        states = torch.from_numpy(np.stack([e.state.to_vector() for e in batch]))
        next_states = torch.from_numpy(np.stack([e.next_state.to_vector() for e in batch]))
        agent.online_net.eval()
        with torch.no_grad():
            q = agent.online_net(states).numpy().copy()
            q_next_online = agent.online_net(next_states).numpy()
            q_next_target = agent.target_net(next_states).numpy()

        for i, e in enumerate(batch):
            if e.done:
                q[i, e.action] = e.reward.total
            elif double:
                best = int(np.argmax(q_next_online[i]))
                q[i, e.action] = e.reward.total + agent.gamma * q_next_target[i, best]
            else:
                q[i, e.action] = e.reward.total + agent.gamma * q_next_target[i].max()
        return q

    @staticmethod
    def desync(agent: DQNAgent) -> None:
        """Perturb the target network so online and target disagree"""
        with torch.no_grad():
            for p in agent.target_net.parameters():
                p.add_(torch.randn_like(p) * 0.1)

    def test_double_q_targets_match_hand_computation(self, agent):
        self.desync(agent)
        rng = np.random.default_rng(11)
        batch = [make_experience(rng, done=(i % 4 == 0)) for i in range(12)]

        targets = agent.compute_targets(batch)

        np.testing.assert_allclose(targets, self.hand_targets(agent, batch, double=True), rtol=1e-5, atol=1e-6)

    def test_standard_dqn_targets(self, agent_config):
        agent = DQNAgent(STATE_SIZE, N_ACTIONS, dataclasses.replace(agent_config, double_dqn=False))
        self.desync(agent)
        rng = np.random.default_rng(12)
        batch = [make_experience(rng) for _ in range(8)]

        targets = agent.compute_targets(batch)

        np.testing.assert_allclose(targets, self.hand_targets(agent, batch, double=False), rtol=1e-5, atol=1e-6)

    @pytest.mark.parametrize("gamma", [0.0, 0.5, 0.99])
    def test_terminal_target_is_reward(self, agent_config, gamma):
        agent = DQNAgent(STATE_SIZE, N_ACTIONS, dataclasses.replace(agent_config, discount_factor=gamma))
        rng = np.random.default_rng(3)
        e = make_experience(rng, done=True, reward=1.5)

        targets = agent.compute_targets([e])

        assert targets[0, e.action] == 1.5

    def test_other_actions_keep_online_prediction(self, agent):
        rng = np.random.default_rng(4)
        e = make_experience(rng)

        targets = agent.compute_targets([e])
        q = agent.q_values(e.state)

        for a in range(N_ACTIONS):
            if a != e.action:
                assert targets[0, a] == pytest.approx(q[a])


class TestLearningRate:
    """Test adaptive learning-rate control"""

    def test_adjust_creates_fresh_optimizer(self, agent):
        old_optimizer = agent.optimizer
        before = snapshot(agent.online_net)

        new_rate = agent.adjust_learning_rate(0.95)

        assert new_rate == pytest.approx(0.00095)
        assert agent.optimizer is not old_optimizer
        assert agent.optimizer.param_groups[0]['lr'] == pytest.approx(0.00095)
        after = agent.online_net.state_dict()
        assert all(torch.equal(before[k], after[k]) for k in before)

    def test_adjust_clamped(self, agent):
        assert agent.adjust_learning_rate(100.0) == agent.config.max_learning_rate
        assert agent.adjust_learning_rate(1e-6) == agent.config.min_learning_rate


class TestPersistence:
    """Test save/load and dispose"""

    def test_save_load_round_trip(self, agent, agent_config, tmp_path):
        fill_memory(agent, 20)
        agent.train()
        path = str(tmp_path / "agent.pt")
        agent.save_model(path)

        restored = DQNAgent(STATE_SIZE, N_ACTIONS, dataclasses.replace(agent_config, seed=99))
        restored.load_model(path)

        assert restored.epsilon == agent.epsilon
        assert restored.update_steps == agent.update_steps
        assert parameters_equal(restored.online_net, agent.online_net)
        assert parameters_equal(restored.online_net, restored.target_net)

    def test_load_clamps_epsilon_to_agent_bounds(self, agent, agent_config, tmp_path):
        """A checkpoint epsilon outside [epsilon_min, epsilon_initial] is clamped"""
        path = str(tmp_path / "agent.pt")
        agent.save_model(path)
        assert agent.epsilon == 1.0

        restored = DQNAgent(STATE_SIZE, N_ACTIONS, dataclasses.replace(agent_config, epsilon=0.4))
        restored.load_model(path)

        assert restored.epsilon == 0.4
        assert restored.epsilon_min <= restored.epsilon <= restored.epsilon_initial

    def test_load_rejects_mismatched_shape(self, agent, agent_config, tmp_path):
        path = str(tmp_path / "agent.pt")
        agent.save_model(path)
        other = DQNAgent(STATE_SIZE, N_ACTIONS + 1, agent_config)
        with pytest.raises(ConfigurationError):
            other.load_model(path)

    def test_dispose(self, agent):
        state = make_state(np.random.default_rng(0))
        agent.dispose()

        with pytest.raises(ConfigurationError):
            agent.choose_action(state)
        with pytest.raises(ConfigurationError):
            agent.train()
        with pytest.raises(ConfigurationError):
            agent.dispose()
        assert agent.get_stats()['disposed'] is True
