"""
Default feature provider and market statistics.

A feature provider maps (prices, volumes, index) to a fixed-length float
vector. The vector only uses data up to and including `index`, and is
zero-filled when there is not enough history. The feature count is an
attribute of the provider and is passed to the environment explicitly.
"""

import logging
from typing import List

import numpy as np

logger = logging.getLogger(__name__)

# Lookback windows used by the market statistics
VOLATILITY_LOOKBACK = 20
MOMENTUM_LOOKBACK = 10
TREND_LOOKBACK = 20
VOLUME_LOOKBACK = 20


def calculate_volatility(prices: np.ndarray, index: int, lookback: int = VOLATILITY_LOOKBACK) -> float:
    """Standard deviation of simple returns over the last `lookback` bars."""
    if index < 1:
        return 0.0
    start = max(0, index - lookback)
    window = prices[start:index + 1]
    if len(window) < 2:
        return 0.0
    returns = np.diff(window) / window[:-1]
    return float(np.std(returns))


def calculate_momentum(prices: np.ndarray, index: int, lookback: int = MOMENTUM_LOOKBACK) -> float:
    """Rate of change over `lookback` bars; 0.0 without enough history."""
    if index < lookback:
        return 0.0
    past = prices[index - lookback]
    if past == 0:
        return 0.0
    return float((prices[index] - past) / past)


def calculate_trend_strength(prices: np.ndarray, index: int, lookback: int = TREND_LOOKBACK) -> float:
    """
    Least-squares slope over the last `lookback` prices, normalized by price.

    Args:
        prices: Price series
        index: Current bar (inclusive)
        lookback: Regression window

    Returns:
        Slope per bar as a fraction of the current price
    """
    if index < lookback - 1:
        return 0.0
    window = prices[index - lookback + 1:index + 1]
    x = np.arange(len(window), dtype=np.float64)
    x_mean = x.mean()
    denominator = np.sum((x - x_mean) ** 2)
    if denominator == 0:
        return 0.0
    slope = np.sum((x - x_mean) * (window - window.mean())) / denominator
    return float(slope / (prices[index] + 1e-8))


def calculate_volume_profile(volumes: np.ndarray, index: int, lookback: int = VOLUME_LOOKBACK) -> str:
    """Classify current volume against its recent average as 'high', 'low' or 'normal'."""
    if index < lookback:
        return 'normal'
    average = float(np.mean(volumes[index - lookback:index]))
    if average <= 0:
        return 'normal'
    current = volumes[index]
    if current > average * 1.5:
        return 'high'
    if current < average * 0.5:
        return 'low'
    return 'normal'


class DefaultFeatureProvider:
    """
    Technical-indicator feature vector.

    Features (in order):
        return_1, return_5, return_10   - simple returns over 1/5/10 bars
        sma_5_ratio, sma_10_ratio, sma_20_ratio - price / SMA - 1
        rsi_14                          - RSI scaled to [-1, 1]
        bollinger_position              - (price - SMA20) / (2 * std20), clipped to [-1, 1]
        volume_ratio                    - volume / 20-bar average - 1, clipped to [-1, 5]
        volatility_20                   - std of 20-bar returns
    """

    FEATURE_NAMES: List[str] = [
        'return_1', 'return_5', 'return_10',
        'sma_5_ratio', 'sma_10_ratio', 'sma_20_ratio',
        'rsi_14', 'bollinger_position', 'volume_ratio', 'volatility_20',
    ]

    def __init__(self, lookback: int = 20):
        if lookback < 20:
            raise ValueError(f"lookback must be >= 20, got {lookback}")
        self.lookback = lookback
        self.n_features = len(self.FEATURE_NAMES)

    def compute(self, prices: np.ndarray, volumes: np.ndarray, index: int) -> np.ndarray:
        """
        Compute the feature vector at `index`.

        Args:
            prices: Price series
            volumes: Volume series (same length as prices)
            index: Current bar

        Returns:
            Float array of length n_features; zeros without enough history
        """
        features = np.zeros(self.n_features, dtype=np.float32)
        if index < self.lookback or index >= len(prices):
            return features

        price = prices[index]

        features[0] = price / prices[index - 1] - 1.0
        features[1] = price / prices[index - 5] - 1.0
        features[2] = price / prices[index - 10] - 1.0

        for i, window in enumerate((5, 10, 20)):
            sma = np.mean(prices[index - window + 1:index + 1])
            features[3 + i] = price / sma - 1.0

        features[6] = self._rsi(prices, index, 14)

        window = prices[index - 19:index + 1]
        std = np.std(window)
        features[7] = np.clip((price - window.mean()) / (2.0 * std + 1e-8), -1.0, 1.0)

        average_volume = np.mean(volumes[index - 20:index])
        if average_volume > 0:
            features[8] = np.clip(volumes[index] / average_volume - 1.0, -1.0, 5.0)

        features[9] = calculate_volatility(prices, index)

        if not np.all(np.isfinite(features)):
            logger.debug(f"Non-finite features at index {index}, replacing with zeros")
            features = np.nan_to_num(features, nan=0.0, posinf=0.0, neginf=0.0)

        return features

    @staticmethod
    def _rsi(prices: np.ndarray, index: int, period: int) -> float:
        deltas = np.diff(prices[index - period:index + 1])
        gains = deltas[deltas > 0].sum()
        losses = -deltas[deltas < 0].sum()
        if gains + losses == 0:
            return 0.0
        rsi = gains / (gains + losses)
        return float(2.0 * rsi - 1.0)
