"""
Tests for the episode runner.
"""
import dataclasses

import numpy as np
import pandas as pd
import pytest

from callbacks import EarlyStopping, TrainingCallback
from dqn_agent import DQNAgent
from rl_config import ConfigurationError
from trading_env import TradingEnvironment
from trainer import EpisodeMetrics, Trainer


@pytest.fixture
def env(price_series, env_config):
    prices, volumes = price_series
    return TradingEnvironment(prices, volumes, env_config, seed=0)


@pytest.fixture
def test_env(price_series, env_config):
    prices, volumes = price_series
    return TradingEnvironment(prices[150:], volumes[150:], env_config, seed=1)


@pytest.fixture
def agent(env, agent_config):
    return DQNAgent(env.state_size, env.n_actions, agent_config)


@pytest.fixture
def trainer(env, agent, trainer_config):
    return Trainer(env, agent, trainer_config)


class RecordingCallback(TrainingCallback):
    """Collects hook invocations in order"""

    def __init__(self):
        self.events = []

    def on_train_begin(self, trainer):
        self.events.append('train_begin')

    def on_episode_begin(self, trainer, episode):
        self.events.append(f'episode_begin:{episode}')

    def on_train_step_end(self, trainer, step, loss):
        self.events.append('step')

    def on_episode_end(self, trainer, metrics):
        self.events.append(f'episode_end:{metrics.episode}')

    def on_train_end(self, trainer):
        self.events.append('train_end')


class TestRunEpisode:
    """Test single training episodes"""

    def test_metrics_appended(self, trainer):
        metrics = trainer.run_episode()

        assert isinstance(metrics, EpisodeMetrics)
        assert metrics.episode == 0
        assert trainer.history == [metrics]
        assert metrics.steps > 0
        assert metrics.average_reward == pytest.approx(metrics.total_reward / metrics.steps)

    def test_step_cap(self, trainer, trainer_config):
        metrics = trainer.run_episode()
        assert metrics.steps == trainer_config.max_steps_per_episode

    def test_experiences_stored_and_trained(self, trainer):
        metrics = trainer.run_episode()
        assert len(trainer.agent.memory) == metrics.steps
        assert trainer.agent.update_steps > 0
        assert metrics.loss > 0.0

    def test_history_is_a_copy(self, trainer):
        trainer.run_episode()
        history = trainer.history
        history.clear()
        assert len(trainer.history) == 1

    def test_natural_episode_end(self, price_series, env_config, agent_config, trainer_config):
        """Short series ends on done before the step cap"""
        prices, volumes = price_series
        env = TradingEnvironment(prices[:40], volumes[:40], env_config)
        agent = DQNAgent(env.state_size, env.n_actions, agent_config)
        metrics = Trainer(env, agent, trainer_config).run_episode()
        assert metrics.steps <= 40 - env_config.timesteps - 1


class TestTrainForEpisodes:
    """Test multi-episode training"""

    def test_runs_n_episodes_with_callback(self, trainer):
        seen = []
        results = trainer.train_for_episodes(3, callback=seen.append)

        assert [m.episode for m in results] == [0, 1, 2]
        assert seen == results
        assert len(trainer.history) == 3

    def test_epsilon_non_increasing(self, trainer):
        results = trainer.train_for_episodes(3)
        epsilons = [m.epsilon for m in results]
        assert all(a >= b for a, b in zip(epsilons, epsilons[1:]))
        assert all(trainer.agent.epsilon_min <= e <= 1.0 for e in epsilons)

    def test_callback_order(self, env, agent, trainer_config):
        recorder = RecordingCallback()
        trainer = Trainer(env, agent, trainer_config, callbacks=[recorder])
        trainer.train_for_episodes(2)

        events = [e for e in recorder.events if e != 'step']
        assert events == [
            'train_begin',
            'episode_begin:0', 'episode_end:0',
            'episode_begin:1', 'episode_end:1',
            'train_end',
        ]
        assert 'step' in recorder.events

    def test_early_stopping(self, env, agent, trainer_config):
        stopper = EarlyStopping(monitor='total_return', patience=1, mode='min', min_delta=1e9)
        trainer = Trainer(env, agent, trainer_config, callbacks=[stopper])

        results = trainer.train_for_episodes(10)

        assert len(results) == 2
        assert trainer.stop_training
        assert stopper.stopped_episode == 1

    def test_history_frame(self, trainer):
        trainer.train_for_episodes(2)
        frame = trainer.history_frame()

        assert isinstance(frame, pd.DataFrame)
        assert len(frame) == 2
        for column in ('episode', 'total_reward', 'average_reward', 'epsilon', 'loss', 'total_return',
                       'sharpe_ratio', 'max_drawdown', 'win_rate', 'total_trades'):
            assert column in frame.columns

    def test_empty_history_frame(self, trainer):
        frame = trainer.history_frame()
        assert frame.empty
        assert 'total_return' in frame.columns


class TestEvaluate:
    """Test greedy evaluation"""

    def test_epsilon_restored(self, trainer, test_env):
        trainer.agent.epsilon = 0.42
        trainer.evaluate(test_env, 2)
        assert trainer.agent.epsilon == 0.42

    def test_no_learning_during_evaluation(self, trainer, test_env):
        trainer.run_episode()
        memory_size = len(trainer.agent.memory)
        updates = trainer.agent.update_steps
        history_size = len(trainer.history)

        results = trainer.evaluate(test_env, 1)

        assert len(results) == 1
        assert results[0].epsilon == 0.0
        assert len(trainer.agent.memory) == memory_size
        assert trainer.agent.update_steps == updates
        assert len(trainer.history) == history_size

    def test_evaluation_is_deterministic(self, trainer, test_env):
        first = trainer.evaluate(test_env, 1)[0]
        second = trainer.evaluate(test_env, 1)[0]
        assert first.total_return == second.total_return
        assert first.total_trades == second.total_trades

    def test_epsilon_restored_on_error(self, trainer, test_env, monkeypatch):
        def broken_step(action):
            raise RuntimeError("boom")

        monkeypatch.setattr(test_env, 'step', broken_step)
        trainer.agent.epsilon = 0.7
        with pytest.raises(RuntimeError):
            trainer.evaluate(test_env, 1)
        assert trainer.agent.epsilon == 0.7

    def test_incompatible_env_rejected(self, trainer, price_series, env_config):
        prices, volumes = price_series
        hybrid = TradingEnvironment(prices, volumes, dataclasses.replace(env_config, enable_hybrid_approach=True))
        with pytest.raises(ConfigurationError):
            trainer.evaluate(hybrid, 1)


class TestConstruction:
    """Test trainer validation"""

    def test_mismatched_agent_rejected(self, env, agent_config, trainer_config):
        agent = DQNAgent(env.state_size + 1, env.n_actions, agent_config)
        with pytest.raises(ConfigurationError):
            Trainer(env, agent, trainer_config)

    def test_disposed_agent_is_fatal(self, trainer):
        trainer.agent.dispose()
        with pytest.raises(ConfigurationError):
            trainer.run_episode()
        assert np.isfinite(trainer.agent.epsilon)
