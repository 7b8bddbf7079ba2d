"""
Configuration for the RL trading core.

Environment, agent and trainer settings are plain dataclasses. Named presets
are factories returning fresh instances, so callers can mutate a preset
without affecting other runs. Preset constants are kept as data.
"""

import json
import logging
from dataclasses import dataclass, field, asdict, fields, is_dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)


class ConfigurationError(ValueError):
    """Fatal misconfiguration of a component (never retried)."""


@dataclass
class RegimeThresholds:
    """Thresholds for market regime classification."""
    volatility_threshold: float = 0.02
    trend_strength_threshold: float = 0.0005
    momentum_threshold: float = 0.003


@dataclass
class RiskManagementConfig:
    """Risk limits applied by the environment."""
    enabled: bool = True
    max_drawdown_threshold: float = 0.25
    position_size_multiplier: float = 1.0
    # Regimes in which position_size_multiplier is applied
    multiplier_regimes: List[str] = field(default_factory=lambda: ['trending', 'bullish'])
    volatility_scaling: bool = False
    regime_based_position_sizing: bool = False


@dataclass
class SyntheticDataConfig:
    """Synthetic price segments appended over the tail of the series."""
    enable_trending_markets: bool = True
    enable_ranging_markets: bool = True
    enable_volatile_markets: bool = True
    noise_level: float = 0.01
    trend_strength: float = 0.002
    start_fraction: float = 0.7


@dataclass
class EnvironmentConfig:
    """Trading environment configuration."""
    initial_capital: float = 10_000.0
    commission: float = 0.001
    slippage: float = 0.0005
    timesteps: int = 20  # Warm-up bars before the first decision
    max_position_size: float = 1.0
    min_position_size: float = 0.1
    reward_scaling: float = 100.0
    risk_free_rate: float = 0.0
    periods_per_year: int = 252
    transaction_cost_penalty: float = 0.001
    holding_penalty: float = 0.0
    volatility_penalty: float = 0.05
    drawdown_penalty: float = 0.005
    regime_bonus: float = 0.1

    enable_market_regime_detection: bool = False
    enable_synthetic_data: bool = False
    enable_hybrid_approach: bool = False
    enable_dynamic_position_sizing: bool = False

    regime_thresholds: RegimeThresholds = field(default_factory=RegimeThresholds)
    risk_management: RiskManagementConfig = field(default_factory=RiskManagementConfig)
    synthetic_data: SyntheticDataConfig = field(default_factory=SyntheticDataConfig)

    # Episode ends early when the portfolio drops below these fractions of initial capital
    terminal_value_fraction: float = 0.2
    terminal_value_fraction_high_risk: float = 0.15

    def validate(self) -> None:
        if self.initial_capital <= 0:
            raise ConfigurationError(
                f"EnvironmentConfig: initial_capital must be positive, got {self.initial_capital}"
            )
        if not 0.0 <= self.commission < 1.0 or not 0.0 <= self.slippage < 1.0:
            raise ConfigurationError(
                "EnvironmentConfig: commission and slippage must lie in [0, 1)"
            )
        if self.timesteps < 0:
            raise ConfigurationError("EnvironmentConfig: timesteps must be >= 0")
        if not 0.0 <= self.min_position_size <= self.max_position_size <= 1.0:
            raise ConfigurationError(
                "EnvironmentConfig: require 0 <= min_position_size <= max_position_size <= 1, "
                f"got min={self.min_position_size}, max={self.max_position_size}"
            )


@dataclass
class AgentConfig:
    """Value agent configuration."""
    learning_rate: float = 0.001
    discount_factor: float = 0.95
    epsilon: float = 1.0
    epsilon_decay: float = 0.995
    epsilon_min: float = 0.01
    batch_size: int = 32
    memory_size: int = 10_000
    target_update_frequency: int = 100
    hidden_layers: List[int] = field(default_factory=lambda: [128, 64])
    activation: str = 'relu'
    optimizer: str = 'adam'
    loss: str = 'mse'
    gradient_clipping: float = 1.0
    dropout: float = 0.0
    weight_decay: float = 0.0
    prioritized_replay: bool = False
    double_dqn: bool = True
    dueling_dqn: bool = False
    # Adaptive learning-rate band
    min_learning_rate: float = 0.0001
    max_learning_rate: float = 0.01
    seed: Optional[int] = None
    device: Optional[str] = None

    def validate(self) -> None:
        if self.batch_size <= 0:
            raise ConfigurationError(f"AgentConfig: batch_size must be positive, got {self.batch_size}")
        if self.memory_size <= 0:
            raise ConfigurationError(f"AgentConfig: memory_size must be positive, got {self.memory_size}")
        if self.target_update_frequency <= 0:
            raise ConfigurationError("AgentConfig: target_update_frequency must be positive")
        if not 0.0 <= self.epsilon_min <= self.epsilon <= 1.0:
            raise ConfigurationError(
                f"AgentConfig: require 0 <= epsilon_min <= epsilon <= 1, "
                f"got epsilon={self.epsilon}, epsilon_min={self.epsilon_min}"
            )
        if not 0.0 < self.epsilon_decay <= 1.0:
            raise ConfigurationError("AgentConfig: epsilon_decay must lie in (0, 1]")
        if not 0.0 <= self.discount_factor <= 1.0:
            raise ConfigurationError("AgentConfig: discount_factor must lie in [0, 1]")
        if not self.hidden_layers:
            raise ConfigurationError("AgentConfig: hidden_layers must not be empty")
        if self.optimizer not in ('adam', 'rmsprop'):
            raise ConfigurationError(f"AgentConfig: unknown optimizer '{self.optimizer}'")
        if self.loss not in ('mse', 'huber'):
            raise ConfigurationError(f"AgentConfig: unknown loss '{self.loss}'")
        if self.activation not in ('relu', 'leaky_relu', 'tanh', 'elu'):
            raise ConfigurationError(f"AgentConfig: unknown activation '{self.activation}'")
        if not 0.0 < self.min_learning_rate <= self.max_learning_rate:
            raise ConfigurationError("AgentConfig: invalid learning-rate band")


@dataclass
class TrainerConfig:
    """Episode runner configuration."""
    train_every: int = 10
    max_steps_per_episode: int = 1000
    log_every: int = 10

    def validate(self) -> None:
        if self.train_every <= 0:
            raise ConfigurationError("TrainerConfig: train_every must be positive")
        if self.max_steps_per_episode <= 0:
            raise ConfigurationError("TrainerConfig: max_steps_per_episode must be positive")


# ============================================================================
# PRESETS
# ============================================================================

def default_preset() -> Tuple[EnvironmentConfig, AgentConfig]:
    """Plain DQN over the base action space with no regime features."""
    return EnvironmentConfig(), AgentConfig()


def improved_preset() -> Tuple[EnvironmentConfig, AgentConfig]:
    """Regime detection and dynamic sizing on real data, more exploration."""
    env_config = EnvironmentConfig(
        initial_capital=10_000.0,
        commission=0.001,
        slippage=0.0005,
        timesteps=20,
        max_position_size=0.8,
        min_position_size=0.1,
        reward_scaling=500.0,
        risk_free_rate=0.02,
        transaction_cost_penalty=0.1,
        holding_penalty=0.0,
        volatility_penalty=0.05,
        enable_market_regime_detection=True,
        enable_synthetic_data=False,
        enable_hybrid_approach=False,
        enable_dynamic_position_sizing=True,
        regime_thresholds=RegimeThresholds(
            volatility_threshold=0.015,
            trend_strength_threshold=0.0002,
            momentum_threshold=0.001,
        ),
        risk_management=RiskManagementConfig(
            max_drawdown_threshold=0.15,
            position_size_multiplier=1.2,
            volatility_scaling=True,
            regime_based_position_sizing=True,
        ),
    )
    agent_config = AgentConfig(
        learning_rate=0.001,
        discount_factor=0.95,
        epsilon=0.8,
        epsilon_decay=0.995,
        epsilon_min=0.15,
        batch_size=64,
        memory_size=10_000,
        target_update_frequency=10,
        hidden_layers=[256, 128, 64],
        gradient_clipping=0.5,
        prioritized_replay=True,
        double_dqn=True,
        dueling_dqn=True,
    )
    return env_config, agent_config


def conservative_preset() -> Tuple[EnvironmentConfig, AgentConfig]:
    """Smaller positions and a strict drawdown limit."""
    env_config, agent_config = improved_preset()
    env_config.max_position_size = 0.5
    env_config.min_position_size = 0.05
    env_config.reward_scaling = 300.0
    env_config.regime_thresholds = RegimeThresholds(
        volatility_threshold=0.02,
        trend_strength_threshold=0.0005,
        momentum_threshold=0.002,
    )
    env_config.risk_management = RiskManagementConfig(
        max_drawdown_threshold=0.1,
        position_size_multiplier=1.0,
        volatility_scaling=True,
        regime_based_position_sizing=True,
    )
    return env_config, agent_config


def aggressive_preset() -> Tuple[EnvironmentConfig, AgentConfig]:
    """Full sizing and looser drawdown tolerance."""
    env_config, agent_config = improved_preset()
    env_config.max_position_size = 1.0
    env_config.min_position_size = 0.2
    env_config.reward_scaling = 800.0
    env_config.regime_thresholds = RegimeThresholds(
        volatility_threshold=0.01,
        trend_strength_threshold=0.0001,
        momentum_threshold=0.0005,
    )
    env_config.risk_management = RiskManagementConfig(
        max_drawdown_threshold=0.25,
        position_size_multiplier=1.5,
        volatility_scaling=False,
        regime_based_position_sizing=True,
    )
    return env_config, agent_config


def high_return_preset() -> Tuple[EnvironmentConfig, AgentConfig]:
    """Aggressive sizing with synthetic data and the hybrid action space."""
    env_config = EnvironmentConfig(
        initial_capital=10_000.0,
        commission=0.0005,
        slippage=0.0002,
        timesteps=30,
        max_position_size=1.0,
        min_position_size=0.2,
        reward_scaling=200.0,
        risk_free_rate=0.02,
        transaction_cost_penalty=0.005,
        holding_penalty=0.0,
        volatility_penalty=0.02,
        enable_market_regime_detection=True,
        enable_synthetic_data=True,
        enable_hybrid_approach=True,
        enable_dynamic_position_sizing=True,
        regime_thresholds=RegimeThresholds(
            volatility_threshold=0.04,
            trend_strength_threshold=0.0005,
            momentum_threshold=0.003,
        ),
        risk_management=RiskManagementConfig(
            max_drawdown_threshold=0.25,
            position_size_multiplier=1.2,
            volatility_scaling=False,
            regime_based_position_sizing=True,
        ),
        synthetic_data=SyntheticDataConfig(
            noise_level=0.008,
            trend_strength=0.004,
        ),
    )
    agent_config = AgentConfig(
        learning_rate=0.002,
        discount_factor=0.92,
        epsilon=0.4,
        epsilon_decay=0.998,
        epsilon_min=0.05,
        batch_size=64,
        memory_size=15_000,
        target_update_frequency=50,
        hidden_layers=[256, 128, 64],
        gradient_clipping=0.5,
        prioritized_replay=True,
        double_dqn=True,
        dueling_dqn=True,
    )
    return env_config, agent_config


def momentum_focused_preset() -> Tuple[EnvironmentConfig, AgentConfig]:
    """Trend following: early trend detection, multiplier only in trending regimes."""
    env_config, agent_config = high_return_preset()
    env_config.reward_scaling = 300.0
    env_config.regime_thresholds = RegimeThresholds(
        volatility_threshold=0.03,
        trend_strength_threshold=0.0003,
        momentum_threshold=0.002,
    )
    env_config.risk_management = RiskManagementConfig(
        max_drawdown_threshold=0.3,
        position_size_multiplier=1.5,
        multiplier_regimes=['trending'],
        volatility_scaling=False,
        regime_based_position_sizing=True,
    )
    return env_config, agent_config


def volatility_harvesting_preset() -> Tuple[EnvironmentConfig, AgentConfig]:
    """Trade volatile conditions with volatility-scaled sizing."""
    env_config, agent_config = high_return_preset()
    env_config.regime_thresholds = RegimeThresholds(
        volatility_threshold=0.02,
        trend_strength_threshold=0.001,
        momentum_threshold=0.005,
    )
    env_config.risk_management = RiskManagementConfig(
        max_drawdown_threshold=0.2,
        position_size_multiplier=0.8,
        multiplier_regimes=['volatile'],
        volatility_scaling=True,
        regime_based_position_sizing=True,
    )
    env_config.synthetic_data = SyntheticDataConfig(
        noise_level=0.015,
        trend_strength=0.003,
    )
    return env_config, agent_config


PRESETS: Dict[str, Callable[[], Tuple[EnvironmentConfig, AgentConfig]]] = {
    'default': default_preset,
    'improved': improved_preset,
    'conservative': conservative_preset,
    'aggressive': aggressive_preset,
    'high_return': high_return_preset,
    'momentum_focused': momentum_focused_preset,
    'volatility_harvesting': volatility_harvesting_preset,
}


def get_preset(name: str) -> Tuple[EnvironmentConfig, AgentConfig]:
    """
    Build a named preset.

    Args:
        name: One of PRESETS

    Returns:
        Tuple of (EnvironmentConfig, AgentConfig)
    """
    if name not in PRESETS:
        raise ConfigurationError(
            f"Unknown preset '{name}'. Available: {sorted(PRESETS)}"
        )
    return PRESETS[name]()


# ============================================================================
# JSON PERSISTENCE
# ============================================================================

def config_to_dict(config: Any) -> Dict[str, Any]:
    """Convert a (nested) config dataclass to a plain dict."""
    return asdict(config)


def _apply_overrides(config: Any, overrides: Dict[str, Any]) -> Any:
    """Recursively apply a dict of overrides onto a dataclass instance."""
    known = {f.name: f for f in fields(config)}
    for key, value in overrides.items():
        if key not in known:
            raise ConfigurationError(
                f"{type(config).__name__}: unknown configuration key '{key}'"
            )
        current = getattr(config, key)
        if is_dataclass(current) and isinstance(value, dict):
            _apply_overrides(current, value)
        else:
            setattr(config, key, value)
    return config


def save_config(
    path: str,
    env_config: EnvironmentConfig,
    agent_config: AgentConfig,
    trainer_config: Optional[TrainerConfig] = None
) -> None:
    """Write the run configuration to a JSON file."""
    payload = {
        'environment': config_to_dict(env_config),
        'agent': config_to_dict(agent_config),
        'trainer': config_to_dict(trainer_config or TrainerConfig()),
    }
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    with open(path, 'w') as f:
        json.dump(payload, f, indent=2)
    logger.info(f"Configuration saved: {path}")


def load_config(
    path: str,
    preset: str = 'default'
) -> Tuple[EnvironmentConfig, AgentConfig, TrainerConfig]:
    """
    Load a JSON configuration on top of a preset.

    The file may contain any subset of the 'environment', 'agent' and
    'trainer' sections; missing keys keep the preset's values.

    Args:
        path: Path to JSON file
        preset: Name of the base preset

    Returns:
        Tuple of (EnvironmentConfig, AgentConfig, TrainerConfig)
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path, 'r') as f:
        payload = json.load(f)

    env_config, agent_config = get_preset(preset)
    trainer_config = TrainerConfig()

    _apply_overrides(env_config, payload.get('environment', {}))
    _apply_overrides(agent_config, payload.get('agent', {}))
    _apply_overrides(trainer_config, payload.get('trainer', {}))

    env_config.validate()
    agent_config.validate()
    trainer_config.validate()

    logger.info(f"Loaded configuration from {config_path} (preset: {preset})")
    return env_config, agent_config, trainer_config
