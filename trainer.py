"""
Episode runner for the DQN trading agent.

Drives environment/agent interaction, trains on a fixed step cadence,
collects per-episode metrics and runs greedy evaluation on held-out data.
"""

import logging
from dataclasses import asdict, dataclass
from typing import Callable, Dict, List, Optional, Sequence

import pandas as pd

from callbacks import TrainingCallback
from dqn_agent import DQNAgent
from rl_config import ConfigurationError, TrainerConfig
from trading_env import TradingEnvironment

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EpisodeMetrics:
    """Per-episode performance record."""
    episode: int
    total_reward: float
    average_reward: float
    epsilon: float
    loss: float
    total_return: float
    sharpe_ratio: float
    max_drawdown: float
    win_rate: float
    total_trades: int
    steps: int
    learning_rate: float

    def to_dict(self) -> Dict[str, float]:
        return asdict(self)


class Trainer:
    """
    Episode runner.

    Attributes:
        env: Training environment
        agent: Agent being trained
        config: Trainer configuration
        callbacks: Observers invoked in list order
        stop_training: Set by a callback to end train_for_episodes early
    """

    def __init__(
        self,
        env: TradingEnvironment,
        agent: DQNAgent,
        config: Optional[TrainerConfig] = None,
        callbacks: Optional[Sequence[TrainingCallback]] = None
    ):
        self.config = config or TrainerConfig()
        self.config.validate()
        self._check_compatible(env, agent)

        self.env = env
        self.agent = agent
        self.callbacks: List[TrainingCallback] = list(callbacks or [])
        self.episode_count = 0
        self.stop_training = False
        self._history: List[EpisodeMetrics] = []

    @staticmethod
    def _check_compatible(env: TradingEnvironment, agent: DQNAgent) -> None:
        if env.n_actions != agent.n_actions or env.state_size != agent.state_size:
            raise ConfigurationError(
                f"Trainer: environment (state_size={env.state_size}, n_actions={env.n_actions}) "
                f"does not match agent (state_size={agent.state_size}, n_actions={agent.n_actions})"
            )

    @property
    def history(self) -> List[EpisodeMetrics]:
        """Copy of the training history."""
        return list(self._history)

    def history_frame(self) -> pd.DataFrame:
        """Training history as a DataFrame (one row per episode)."""
        columns = list(EpisodeMetrics.__dataclass_fields__)
        return pd.DataFrame([m.to_dict() for m in self._history], columns=columns)

    def _build_metrics(
        self,
        env: TradingEnvironment,
        episode: int,
        total_reward: float,
        steps: int,
        epsilon: float,
        loss: float
    ) -> EpisodeMetrics:
        results = env.get_episode_results()
        return EpisodeMetrics(
            episode=episode,
            total_reward=total_reward,
            average_reward=total_reward / steps if steps > 0 else 0.0,
            epsilon=epsilon,
            loss=loss,
            total_return=results['total_return'],
            sharpe_ratio=results['sharpe_ratio'],
            max_drawdown=results['max_drawdown'],
            win_rate=results['win_rate'],
            total_trades=results['total_trades'],
            steps=steps,
            learning_rate=self.agent.learning_rate,
        )

    def run_episode(self) -> EpisodeMetrics:
        """
        Run one training episode.

        The loop ends when the environment reports done or the step cap is
        reached. agent.train() is called every `train_every` steps.

        Returns:
            EpisodeMetrics appended to the history
        """
        episode = self.episode_count
        for callback in self.callbacks:
            callback.on_episode_begin(self, episode)

        state = self.env.reset()
        total_reward = 0.0
        step_count = 0
        last_loss = 0.0
        done = False

        while not done and step_count < self.config.max_steps_per_episode:
            action = self.agent.choose_action(state)
            next_state, reward, done, info = self.env.step(action)
            self.agent.store_experience(state, action, reward, next_state, done)

            if step_count % self.config.train_every == 0:
                loss = self.agent.train()
                if loss != 0.0:
                    last_loss = loss
                for callback in self.callbacks:
                    callback.on_train_step_end(self, step_count, loss)

            total_reward += reward.total
            step_count += 1
            state = next_state

        if not done:
            logger.info(f"Episode {episode} hit the step cap ({self.config.max_steps_per_episode})")

        metrics = self._build_metrics(
            self.env, episode, total_reward, step_count, self.agent.epsilon, last_loss
        )
        self._history.append(metrics)
        self.episode_count += 1

        for callback in self.callbacks:
            callback.on_episode_end(self, metrics)

        return metrics

    def train_for_episodes(
        self,
        n_episodes: int,
        callback: Optional[Callable[[EpisodeMetrics], None]] = None
    ) -> List[EpisodeMetrics]:
        """
        Run `n_episodes` training episodes sequentially.

        Args:
            n_episodes: Number of episodes
            callback: Optional function called with each episode's metrics

        Returns:
            Metrics of the episodes run by this call
        """
        self.stop_training = False
        results: List[EpisodeMetrics] = []

        for observer in self.callbacks:
            observer.on_train_begin(self)

        for _ in range(n_episodes):
            metrics = self.run_episode()
            results.append(metrics)
            if callback is not None:
                callback(metrics)
            if self.stop_training:
                logger.info(f"Training stopped early after episode {metrics.episode}")
                break

        for observer in self.callbacks:
            observer.on_train_end(self)

        return results

    def evaluate(self, test_env: TradingEnvironment, n_episodes: int = 1) -> List[EpisodeMetrics]:
        """
        Greedy evaluation on a separate environment.

        Epsilon is forced to 0 for the duration and restored afterward. No
        experiences are stored and no learning updates are made.

        Args:
            test_env: Held-out environment
            n_episodes: Number of evaluation episodes

        Returns:
            Metrics per evaluation episode (not added to the history)
        """
        self._check_compatible(test_env, self.agent)
        results: List[EpisodeMetrics] = []
        saved_epsilon = self.agent.epsilon

        try:
            self.agent.epsilon = 0.0
            for episode in range(n_episodes):
                state = test_env.reset()
                total_reward = 0.0
                step_count = 0
                done = False

                while not done and step_count < self.config.max_steps_per_episode:
                    action = self.agent.choose_action(state)
                    state, reward, done, info = test_env.step(action)
                    total_reward += reward.total
                    step_count += 1

                metrics = self._build_metrics(test_env, episode, total_reward, step_count, 0.0, 0.0)
                results.append(metrics)
                logger.info(
                    f"Evaluation episode {episode} | Return: {metrics.total_return:+.2%} | "
                    f"Sharpe: {metrics.sharpe_ratio:+.3f} | MaxDD: {metrics.max_drawdown:.2%} | "
                    f"Trades: {metrics.total_trades}"
                )
        finally:
            self.agent.epsilon = saved_epsilon

        return results
