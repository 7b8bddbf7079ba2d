"""
Training-loop callbacks.

Callbacks are observers invoked by the Trainer, in list order, at fixed
extension points. They may read trainer state, adjust the agent's learning
rate or request a stop by setting `trainer.stop_training`.
"""

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, Optional

import numpy as np

if TYPE_CHECKING:
    from trainer import EpisodeMetrics, Trainer

logger = logging.getLogger(__name__)


class TrainingCallback:
    """Base class. All hooks are no-ops."""

    def on_train_begin(self, trainer: 'Trainer') -> None:
        pass

    def on_episode_begin(self, trainer: 'Trainer', episode: int) -> None:
        pass

    def on_train_step_end(self, trainer: 'Trainer', step: int, loss: float) -> None:
        pass

    def on_episode_end(self, trainer: 'Trainer', metrics: 'EpisodeMetrics') -> None:
        pass

    def on_train_end(self, trainer: 'Trainer') -> None:
        pass


class ProgressLogger(TrainingCallback):
    """Log a progress line every `log_every` episodes."""

    def __init__(self, log_every: int = 10):
        self.log_every = max(1, log_every)

    def on_train_begin(self, trainer: 'Trainer') -> None:
        logger.info("Training started")

    def on_episode_end(self, trainer: 'Trainer', metrics: 'EpisodeMetrics') -> None:
        if metrics.episode % self.log_every != 0:
            return
        logger.info(
            f"Episode {metrics.episode:4d} | "
            f"Return: {metrics.total_return:+.2%} | "
            f"Reward: {metrics.total_reward:+.3f} | "
            f"Sharpe: {metrics.sharpe_ratio:+.3f} | "
            f"MaxDD: {metrics.max_drawdown:.2%} | "
            f"Trades: {metrics.total_trades} | "
            f"WinRate: {metrics.win_rate:.1%} | "
            f"Eps: {metrics.epsilon:.3f} | "
            f"Loss: {metrics.loss:.5f}"
        )

    def on_train_end(self, trainer: 'Trainer') -> None:
        history = trainer.history
        if not history:
            return
        best = max(m.total_return for m in history)
        logger.info(f"Training finished after {len(history)} episodes (best return {best:+.2%})")


class AdaptiveLearningRate(TrainingCallback):
    """
    Rolling-return learning-rate control.

    For episode indices above `warmup_episodes` that are multiples of
    `frequency`, the mean
    total return of the last `window` episodes decides the adjustment:
    above `good_threshold` the rate shrinks (fine-tuning), below
    `poor_threshold` it grows (faster adaptation).
    """

    def __init__(
        self,
        warmup_episodes: int = 20,
        frequency: int = 10,
        window: int = 10,
        good_threshold: float = 0.05,
        poor_threshold: float = -0.1,
        shrink_factor: float = 0.95,
        growth_factor: float = 1.05
    ):
        self.warmup_episodes = warmup_episodes
        self.frequency = frequency
        self.window = window
        self.good_threshold = good_threshold
        self.poor_threshold = poor_threshold
        self.shrink_factor = shrink_factor
        self.growth_factor = growth_factor

    def on_episode_end(self, trainer: 'Trainer', metrics: 'EpisodeMetrics') -> None:
        episode = metrics.episode
        if episode <= self.warmup_episodes or episode % self.frequency != 0:
            return

        recent = [m.total_return for m in trainer.history[-self.window:]]
        average_return = float(np.mean(recent))

        if average_return > self.good_threshold:
            trainer.agent.adjust_learning_rate(self.shrink_factor)
        elif average_return < self.poor_threshold:
            trainer.agent.adjust_learning_rate(self.growth_factor)
        else:
            return
        logger.info(
            f"Adaptive LR: mean return {average_return:+.2%} over last {len(recent)} episodes, "
            f"learning rate now {trainer.agent.learning_rate:.6f}"
        )


class EarlyStopping(TrainingCallback):
    """Stop when a metric has not improved for `patience` episodes."""

    def __init__(
        self,
        monitor: str = 'total_return',
        patience: int = 20,
        min_delta: float = 0.0,
        mode: str = 'max'
    ):
        if mode not in ('max', 'min'):
            raise ValueError(f"mode must be 'max' or 'min', got {mode}")
        self.monitor = monitor
        self.patience = patience
        self.min_delta = min_delta
        self.mode = mode
        self.best: Optional[float] = None
        self.wait = 0
        self.stopped_episode: Optional[int] = None

    def on_train_begin(self, trainer: 'Trainer') -> None:
        self.best = None
        self.wait = 0
        self.stopped_episode = None

    def _improved(self, value: float) -> bool:
        if self.best is None:
            return True
        if self.mode == 'max':
            return value > self.best + self.min_delta
        return value < self.best - self.min_delta

    def on_episode_end(self, trainer: 'Trainer', metrics: 'EpisodeMetrics') -> None:
        value = float(getattr(metrics, self.monitor))
        if self._improved(value):
            self.best = value
            self.wait = 0
            return

        self.wait += 1
        if self.wait >= self.patience:
            self.stopped_episode = metrics.episode
            trainer.stop_training = True
            logger.info(
                f"Early stopping at episode {metrics.episode}: {self.monitor} has not improved "
                f"for {self.patience} episodes (best {self.best:.4f})"
            )


class BestModelCheckpoint(TrainingCallback):
    """Save the agent whenever the monitored metric reaches a new best."""

    def __init__(self, path: str, monitor: str = 'total_return', mode: str = 'max'):
        if mode not in ('max', 'min'):
            raise ValueError(f"mode must be 'max' or 'min', got {mode}")
        self.path = Path(path)
        self.monitor = monitor
        self.mode = mode
        self.best: Optional[float] = None
        self.best_episode: Optional[int] = None

    def on_episode_end(self, trainer: 'Trainer', metrics: 'EpisodeMetrics') -> None:
        value = float(getattr(metrics, self.monitor))
        if self.best is not None:
            if self.mode == 'max' and value <= self.best:
                return
            if self.mode == 'min' and value >= self.best:
                return

        self.best = value
        self.best_episode = metrics.episode
        self.path.parent.mkdir(parents=True, exist_ok=True)
        trainer.agent.save_model(str(self.path))
        logger.info(f"New best {self.monitor} {value:.4f} at episode {metrics.episode}: {self.path}")

    def summary(self) -> Dict[str, Any]:
        return {'best': self.best, 'best_episode': self.best_episode, 'path': str(self.path)}
