"""
Pytest Configuration and Shared Fixtures
Provides reusable test fixtures for the entire test suite.
"""
import pytest
import numpy as np
import pandas as pd
from pathlib import Path
import sys

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from rl_config import AgentConfig, EnvironmentConfig, TrainerConfig  # noqa: E402


@pytest.fixture
def price_series():
    """Random-walk price and volume series (300 bars)"""
    np.random.seed(42)

    n_samples = 300
    returns = np.random.normal(0.0005, 0.01, n_samples)
    prices = 100.0 * np.cumprod(1 + returns)
    volumes = np.random.uniform(1_000, 5_000, n_samples)
    return prices, volumes


@pytest.fixture
def price_frame(price_series):
    """Price series as a DataFrame with timestamp/close/volume columns"""
    prices, volumes = price_series
    return pd.DataFrame({
        'Timestamp': pd.date_range(start='2024-01-01', periods=len(prices), freq='h'),
        'Close': prices,
        'Volume': volumes,
    })


@pytest.fixture
def frictionless_config():
    """Environment config without costs, penalties or warm-up"""
    return EnvironmentConfig(
        initial_capital=10_000.0,
        commission=0.0,
        slippage=0.0,
        timesteps=0,
        transaction_cost_penalty=0.0,
        holding_penalty=0.0,
        volatility_penalty=0.0,
        drawdown_penalty=0.0,
        reward_scaling=1.0,
    )


@pytest.fixture
def env_config():
    """Small-warm-up environment config"""
    return EnvironmentConfig(timesteps=20)


@pytest.fixture
def agent_config():
    """Small, seeded agent config"""
    return AgentConfig(
        learning_rate=0.001,
        discount_factor=0.9,
        epsilon=1.0,
        epsilon_decay=0.99,
        epsilon_min=0.1,
        batch_size=8,
        memory_size=500,
        target_update_frequency=5,
        hidden_layers=[16, 8],
        seed=7,
        device='cpu',
    )


@pytest.fixture
def trainer_config():
    """Trainer config with a short step cap"""
    return TrainerConfig(train_every=2, max_steps_per_episode=50, log_every=1)
