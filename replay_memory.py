"""
Experience replay memory.

Bounded FIFO store of transitions with uniform or priority-weighted
sampling (both with replacement).
"""

from collections import deque
from dataclasses import dataclass
from typing import Iterator, List, Optional

import numpy as np

from trading_env import RLReward, RLState

PRIORITY_EPSILON = 1e-6


@dataclass(frozen=True)
class Experience:
    """Single transition. Never mutated after insertion."""
    state: RLState
    action: int
    reward: RLReward
    next_state: RLState
    done: bool
    priority: Optional[float] = None


class ReplayMemory:
    """
    Fixed-capacity replay memory.

    The oldest experience is evicted when a push exceeds capacity.
    """

    def __init__(self, capacity: int, prioritized: bool = False, seed: Optional[int] = None):
        """
        Initialize replay memory.

        Args:
            capacity: Maximum number of experiences to store
            prioritized: Sample proportionally to |reward.total| + epsilon
            seed: Seed for the sampling generator (None = non-reproducible)
        """
        if capacity <= 0:
            raise ValueError(f"capacity must be positive, got {capacity}")
        self.capacity = capacity
        self.prioritized = prioritized
        self.buffer = deque(maxlen=capacity)
        self.rng = np.random.default_rng(seed)

    def push(self, experience: Experience) -> None:
        """Store an experience, evicting the oldest one when full."""
        self.buffer.append(experience)

    def sample(self, batch_size: int) -> List[Experience]:
        """
        Sample a batch with replacement.

        Returns the whole buffer (in insertion order) when it holds fewer
        than `batch_size` experiences.

        Args:
            batch_size: Number of experiences to draw

        Returns:
            List of experiences
        """
        if len(self.buffer) < batch_size:
            return list(self.buffer)

        if self.prioritized:
            indices = self._priority_indices(batch_size)
        else:
            indices = self.rng.integers(0, len(self.buffer), size=batch_size)

        return [self.buffer[i] for i in indices]

    def _priority_indices(self, batch_size: int) -> np.ndarray:
        """Roulette-wheel selection by inverse-CDF lookup."""
        priorities = np.array([self._priority(e) for e in self.buffer], dtype=np.float64)
        cumulative = np.cumsum(priorities)
        cumulative /= cumulative[-1]
        draws = self.rng.random(batch_size)
        indices = np.searchsorted(cumulative, draws, side='right')
        return np.minimum(indices, len(self.buffer) - 1)

    @staticmethod
    def _priority(experience: Experience) -> float:
        if experience.priority is not None:
            return experience.priority
        return abs(experience.reward.total) + PRIORITY_EPSILON

    def clear(self) -> None:
        self.buffer.clear()

    def __len__(self) -> int:
        return len(self.buffer)

    def __iter__(self) -> Iterator[Experience]:
        return iter(self.buffer)
