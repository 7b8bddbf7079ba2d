"""
Single-asset trading environment for RL training.

A finite-horizon simulator over a historical price/volume series. The agent
takes long-only position-sizing actions; the environment enforces the
accounting rules (commission, slippage, cash limits), tracks drawdown with
a forced risk exit, detects market regimes and produces a structured reward.

Step protocol: the action executes at the current bar's price, the cursor
advances by one bar, and the portfolio is re-marked at the new price.
"""

import logging
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Dict, List, Optional, Tuple

import numpy as np

from features import (
    DefaultFeatureProvider,
    calculate_momentum,
    calculate_trend_strength,
    calculate_volatility,
    calculate_volume_profile,
)
from rl_config import ConfigurationError, EnvironmentConfig

logger = logging.getLogger(__name__)


# Minimal Gym-style spaces
class Space:
    """Base space class."""
    pass


class Discrete(Space):
    """Discrete action space."""
    def __init__(self, n: int):
        self.n = n

    def contains(self, x) -> bool:
        try:
            value = int(x)
        except (TypeError, ValueError, OverflowError):
            return False
        return value == x and 0 <= value < self.n

    def sample(self, rng: np.random.Generator) -> int:
        return int(rng.integers(self.n))


class Box(Space):
    """Continuous space."""
    def __init__(self, low, high, shape, dtype):
        self.low = low
        self.high = high
        self.shape = shape
        self.dtype = dtype


class Action(IntEnum):
    """Discrete action space. The first 7 actions form the base space."""
    HOLD = 0
    BUY_SMALL = 1
    BUY_MEDIUM = 2
    BUY_LARGE = 3
    SELL_SMALL = 4
    SELL_MEDIUM = 5
    SELL_LARGE = 6
    # Hybrid action space only
    HOLD_CASH = 7
    RULE_BASED_BUY = 8
    RULE_BASED_SELL = 9
    HYBRID_BUY = 10
    HYBRID_SELL = 11


N_BASE_ACTIONS = 7
N_HYBRID_ACTIONS = 12

BUY_SIZES = {
    Action.BUY_SMALL: 0.25,
    Action.BUY_MEDIUM: 0.5,
    Action.BUY_LARGE: 1.0,
}

SELL_SIZES = {
    Action.SELL_SMALL: 0.25,
    Action.SELL_MEDIUM: 0.5,
    Action.SELL_LARGE: 1.0,
}

REGIMES = ('trending', 'ranging', 'volatile', 'bullish', 'bearish')
MARKET_CONDITIONS = ('favorable', 'neutral', 'unfavorable')
RISK_LEVEL_SCORES = {'high': 0.8, 'medium': 0.5, 'low': 0.2}

# Scalar fields appended to the feature vector
N_STATE_EXTRAS = 7 + len(REGIMES) + 3 + len(MARKET_CONDITIONS) + 3


@dataclass(frozen=True)
class MarketRegime:
    """Classified market regime at one bar."""
    regime: str
    confidence: float
    volatility: float
    momentum: float
    trend_strength: float
    volume_profile: str
    is_favorable: bool
    recommended_position_size: float
    risk_level: str


@dataclass(frozen=True)
class RLState:
    """Immutable observation produced by the environment."""
    features: np.ndarray
    position: float
    capital: float
    portfolio_value: float
    volatility: float
    momentum: float
    trend_strength: float
    time_step: int
    market_regime: str = 'ranging'
    regime_confidence: float = 0.5
    risk_score: float = 0.0
    optimal_position_size: float = 1.0
    market_condition: str = 'neutral'
    synthetic_data: bool = False
    rule_based_signal: float = 0.0
    hybrid_weight: float = 0.0

    def to_vector(self) -> np.ndarray:
        """
        Flatten the state into the network input.

        Layout: features, position, capital, portfolio value, volatility,
        momentum, trend strength, time step / 1000, regime one-hot,
        regime confidence, risk score, optimal size, condition one-hot,
        synthetic flag, rule-based signal, hybrid weight.
        """
        regime_one_hot = [1.0 if self.market_regime == r else 0.0 for r in REGIMES]
        condition_one_hot = [1.0 if self.market_condition == c else 0.0 for c in MARKET_CONDITIONS]
        extras = [
            self.position,
            self.capital,
            self.portfolio_value,
            self.volatility,
            self.momentum,
            self.trend_strength,
            self.time_step / 1000.0,
            *regime_one_hot,
            self.regime_confidence,
            self.risk_score,
            self.optimal_position_size,
            *condition_one_hot,
            1.0 if self.synthetic_data else 0.0,
            self.rule_based_signal,
            self.hybrid_weight,
        ]
        return np.concatenate([
            np.asarray(self.features, dtype=np.float32),
            np.asarray(extras, dtype=np.float32),
        ])


@dataclass(frozen=True)
class RLReward:
    """Structured reward. Only `total` is used for learning."""
    total: float
    raw_return: float = 0.0
    risk_penalty: float = 0.0
    transaction_cost_penalty: float = 0.0
    holding_penalty: float = 0.0
    volatility_penalty: float = 0.0
    regime_bonus: float = 0.0
    risk_bonus: float = 0.0

    @property
    def components(self) -> Dict[str, float]:
        return {
            'raw_return': self.raw_return,
            'risk_penalty': self.risk_penalty,
            'transaction_cost_penalty': self.transaction_cost_penalty,
            'holding_penalty': self.holding_penalty,
            'volatility_penalty': self.volatility_penalty,
            'regime_bonus': self.regime_bonus,
            'risk_bonus': self.risk_bonus,
        }


@dataclass
class RoundTrip:
    """Open-to-flat position lifecycle used for win rate and holding periods."""
    entry_step: int
    cost: float = 0.0
    proceeds: float = 0.0
    exit_step: Optional[int] = None

    @property
    def pnl(self) -> float:
        return self.proceeds - self.cost


class TradingEnvironment:
    """
    Long-only single-asset trading simulator.

    Account model:
    - Entry: execution price = price * (1 + slippage); units bought =
      spend / (execution price * (1 + commission)); spend limited to cash
    - Exit: proceeds = units * price * (1 - slippage) * (1 - commission)
    - Portfolio value = cash + units * price
    - Position fraction = units * price / portfolio value, in [0, 1]

    Every executed order counts as one trade. A forced risk exit liquidates
    the whole position when drawdown from the running peak exceeds the
    configured threshold.
    """

    def __init__(
        self,
        prices,
        volumes,
        config: Optional[EnvironmentConfig] = None,
        feature_provider=None,
        seed: Optional[int] = None
    ):
        """
        Initialize the environment.

        Args:
            prices: Price series (copied)
            volumes: Volume series, same length as prices (copied)
            config: Environment configuration (defaults if None)
            feature_provider: Object with `n_features` and
                `compute(prices, volumes, index)`; DefaultFeatureProvider if None
            seed: Seed for synthetic data generation (None = non-reproducible)
        """
        self.config = config or EnvironmentConfig()
        self.config.validate()

        self.prices = np.array(prices, dtype=np.float64)
        self.volumes = np.array(volumes, dtype=np.float64)

        if self.prices.ndim != 1 or self.volumes.ndim != 1:
            raise ConfigurationError("TradingEnvironment: price and volume series must be one-dimensional")
        if len(self.prices) != len(self.volumes):
            raise ConfigurationError(
                f"TradingEnvironment: price series ({len(self.prices)}) and volume series "
                f"({len(self.volumes)}) must have the same length"
            )
        if len(self.prices) == 0:
            raise ConfigurationError("TradingEnvironment: price series is empty")
        if len(self.prices) < self.config.timesteps + 2:
            raise ConfigurationError(
                f"TradingEnvironment: need at least {self.config.timesteps + 2} bars for a "
                f"{self.config.timesteps}-bar warm-up, got {len(self.prices)}"
            )
        if not np.all(np.isfinite(self.prices)) or np.any(self.prices <= 0):
            raise ConfigurationError("TradingEnvironment: prices must be finite and positive")

        self.feature_provider = feature_provider or DefaultFeatureProvider()
        self.n_features = int(self.feature_provider.n_features)

        self.rng = np.random.default_rng(seed)

        self.synthetic_mask = np.zeros(len(self.prices), dtype=bool)
        if self.config.enable_synthetic_data:
            self._generate_synthetic_data()

        self.n_actions = N_HYBRID_ACTIONS if self.config.enable_hybrid_approach else N_BASE_ACTIONS
        self.state_size = self.n_features + N_STATE_EXTRAS
        self.action_space = Discrete(self.n_actions)
        self.observation_space = Box(low=-np.inf, high=np.inf, shape=(self.state_size,), dtype=np.float32)

        logger.info(
            f"TradingEnvironment: {len(self.prices)} bars, warm-up {self.config.timesteps}, "
            f"{self.n_actions} actions, state size {self.state_size}"
        )

        self.reset()

    # ------------------------------------------------------------------
    # Episode lifecycle
    # ------------------------------------------------------------------

    def reset(self) -> RLState:
        """
        Reset the account and cursor for a new episode.

        Returns:
            Initial state at the first bar after the warm-up
        """
        self.current_step = self.config.timesteps
        self.initial_capital = self.config.initial_capital
        self.cash = self.config.initial_capital
        self.units = 0.0
        self.peak_value = self.config.initial_capital
        self.total_trades = 0
        self.bars_in_position = 0

        self.round_trips: List[RoundTrip] = []
        self.open_trip: Optional[RoundTrip] = None

        self.portfolio_values: List[float] = [self.initial_capital]
        self.action_history: List[int] = []
        self.reward_history: List[RLReward] = []
        self.state_history: List[RLState] = []
        self.regime_history: List[str] = []

        self.done = False

        self._current_regime = self._detect_market_regime()
        self.current_state = self._get_state()
        return self.current_state

    def step(self, action) -> Tuple[RLState, RLReward, bool, Dict[str, Any]]:
        """
        Execute one action.

        Args:
            action: Action index within the active action space

        Returns:
            Tuple of (next_state, reward, done, info)
        """
        if not self.action_space.contains(action):
            raise ConfigurationError(
                f"TradingEnvironment: invalid action {action!r}, "
                f"expected an integer in [0, {self.n_actions})"
            )
        if self.done:
            raise RuntimeError("Episode has finished; call reset() before stepping again")

        action = Action(int(action))
        price = self.prices[self.current_step]
        previous_value = self._portfolio_value(price)
        previous_position = self._position_fraction(price)
        regime = self._current_regime

        self._execute_action(action, price)

        # Advance time
        self.current_step += 1
        new_price = self.prices[self.current_step]

        # Drawdown tracking and forced risk exit
        value = self._portfolio_value(new_price)
        self.peak_value = max(self.peak_value, value)
        drawdown = self._drawdown(value)
        risk_exit = False
        risk_config = self.config.risk_management
        if risk_config.enabled and drawdown > risk_config.max_drawdown_threshold and self.units > 0:
            logger.debug(
                f"Risk exit at step {self.current_step}: drawdown {drawdown:.2%} > "
                f"{risk_config.max_drawdown_threshold:.2%}"
            )
            self._sell(1.0, new_price)
            risk_exit = True
            value = self._portfolio_value(new_price)
            drawdown = self._drawdown(value)

        if self.units > 0:
            self.bars_in_position += 1
        else:
            self.bars_in_position = 0

        self.portfolio_values.append(value)

        self._current_regime = self._detect_market_regime()
        reward = self._calculate_reward(
            previous_value=previous_value,
            value=value,
            previous_position=previous_position,
            position=self._position_fraction(new_price),
            drawdown=drawdown,
        )

        terminal_fraction = (
            self.config.terminal_value_fraction_high_risk
            if self._current_regime.risk_level == 'high'
            else self.config.terminal_value_fraction
        )
        capital_depleted = bool(value < terminal_fraction * self.initial_capital)
        done = bool(self.current_step >= len(self.prices) - 1 or capital_depleted)
        self.done = done

        state = self._get_state()
        self.current_state = state

        self.action_history.append(int(action))
        self.reward_history.append(reward)
        self.state_history.append(state)
        self.regime_history.append(regime.regime)

        info = self._get_info(price=new_price, value=value, risk_exit=risk_exit,
                              capital_depleted=capital_depleted)
        return state, reward, done, info

    # ------------------------------------------------------------------
    # Order execution
    # ------------------------------------------------------------------

    def _execute_action(self, action: Action, price: float) -> None:
        optimal_size = self._calculate_optimal_position_size(self._current_regime)

        if action in BUY_SIZES:
            self._buy(BUY_SIZES[action] * optimal_size, price)
        elif action in SELL_SIZES:
            self._sell(SELL_SIZES[action], price)
        elif action == Action.HOLD_CASH:
            if self.units > 0:
                self._sell(1.0, price)
        elif action == Action.RULE_BASED_BUY:
            signal = self._rule_based_signal(self._current_regime)
            if signal > 0:
                self._buy(signal * optimal_size, price)
        elif action == Action.RULE_BASED_SELL:
            signal = self._rule_based_signal(self._current_regime)
            if signal < 0:
                self._sell(abs(signal), price)
        elif action == Action.HYBRID_BUY:
            weight = self._hybrid_weight(self._current_regime)
            signal = self._rule_based_signal(self._current_regime)
            size = (0.5 + weight * signal) * optimal_size
            if size > 0:
                self._buy(size, price)
        elif action == Action.HYBRID_SELL:
            weight = self._hybrid_weight(self._current_regime)
            signal = self._rule_based_signal(self._current_regime)
            self._sell(0.5 + weight * abs(signal), price)
        # HOLD: no order

    def _buy(self, size: float, price: float) -> None:
        """
        Increase the position by `size` (fraction of portfolio value).

        Args:
            size: Requested position increase in [0, 1]
            price: Market price of the bar
        """
        value = self._portfolio_value(price)
        increase = min(size, 1.0 - self._position_fraction(price))
        spend = min(self.cash, increase * value)
        if spend <= 0 or value <= 0:
            return

        execution_price = price * (1.0 + self.config.slippage)
        units = spend / (execution_price * (1.0 + self.config.commission))

        self.cash -= spend
        self.units += units
        self.total_trades += 1

        if self.open_trip is None:
            self.open_trip = RoundTrip(entry_step=self.current_step)
        self.open_trip.cost += spend

    def _sell(self, fraction: float, price: float) -> None:
        """
        Sell a fraction of the held units.

        Args:
            fraction: Fraction of held units to sell, clipped to [0, 1]
            price: Market price of the bar
        """
        fraction = min(max(fraction, 0.0), 1.0)
        if self.units <= 0 or fraction <= 0:
            return

        units_sold = self.units if fraction >= 1.0 else self.units * fraction
        proceeds = units_sold * price * (1.0 - self.config.slippage) * (1.0 - self.config.commission)

        self.cash += proceeds
        self.units -= units_sold
        if fraction >= 1.0 or self.units <= 1e-12:
            self.units = 0.0
        self.total_trades += 1

        if self.open_trip is not None:
            self.open_trip.proceeds += proceeds
            if self.units == 0.0:
                self.open_trip.exit_step = self.current_step
                self.round_trips.append(self.open_trip)
                self.open_trip = None

    # ------------------------------------------------------------------
    # Account helpers
    # ------------------------------------------------------------------

    def _portfolio_value(self, price: Optional[float] = None) -> float:
        if price is None:
            price = self.prices[self.current_step]
        return self.cash + self.units * price

    def _position_fraction(self, price: Optional[float] = None) -> float:
        if price is None:
            price = self.prices[self.current_step]
        value = self._portfolio_value(price)
        if value <= 0 or self.units <= 0:
            return 0.0
        return min(1.0, self.units * price / value)

    def _drawdown(self, value: float) -> float:
        if self.peak_value <= 0:
            return 0.0
        return max(0.0, (self.peak_value - value) / self.peak_value)

    # ------------------------------------------------------------------
    # Market analysis
    # ------------------------------------------------------------------

    def _detect_market_regime(self) -> MarketRegime:
        """
        Classify the market at the current bar.

        Rules (first match wins):
        - volatility above threshold -> volatile
        - |trend| above threshold: bullish (trend > 0, momentum > threshold),
          bearish (trend < 0, momentum < -threshold), otherwise trending
        - otherwise ranging
        """
        index = self.current_step
        volatility = calculate_volatility(self.prices, index)
        momentum = calculate_momentum(self.prices, index)
        trend = calculate_trend_strength(self.prices, index)
        volume_profile = calculate_volume_profile(self.volumes, index)
        max_size = self.config.max_position_size

        if not self.config.enable_market_regime_detection:
            return MarketRegime(
                regime='ranging', confidence=0.5, volatility=volatility, momentum=momentum,
                trend_strength=trend, volume_profile=volume_profile, is_favorable=False,
                recommended_position_size=max_size * 0.5, risk_level='medium',
            )

        thresholds = self.config.regime_thresholds
        if volatility > thresholds.volatility_threshold:
            regime, confidence = 'volatile', min(0.9, volatility / 0.1)
            favorable, size, risk_level = False, max_size * 0.2, 'high'
        elif abs(trend) > thresholds.trend_strength_threshold:
            if trend > 0 and momentum > thresholds.momentum_threshold:
                regime, confidence = 'bullish', min(0.9, (trend + momentum) / 0.1)
                favorable, size, risk_level = True, max_size * 0.8, 'low'
            elif trend < 0 and momentum < -thresholds.momentum_threshold:
                regime, confidence = 'bearish', min(0.9, (abs(trend) + abs(momentum)) / 0.1)
                favorable, size, risk_level = False, max_size * 0.1, 'high'
            else:
                regime, confidence = 'trending', min(0.8, abs(trend) / 0.05)
                favorable, size, risk_level = abs(momentum) > 0.01, max_size * 0.6, 'medium'
        else:
            regime, confidence = 'ranging', 0.7
            favorable, size, risk_level = volatility < 0.02, max_size * 0.4, 'low'

        return MarketRegime(
            regime=regime, confidence=confidence, volatility=volatility, momentum=momentum,
            trend_strength=trend, volume_profile=volume_profile, is_favorable=favorable,
            recommended_position_size=size, risk_level=risk_level,
        )

    def _calculate_risk_score(self, regime: MarketRegime) -> float:
        """Mean of volatility, drawdown, position and regime risk, each in [0, 1]."""
        value = self._portfolio_value()
        volatility_risk = min(1.0, regime.volatility * 20.0)
        drawdown_risk = min(1.0, self._drawdown(value) * 2.0)
        position_risk = self._position_fraction()
        regime_risk = RISK_LEVEL_SCORES[regime.risk_level]
        return (volatility_risk + drawdown_risk + position_risk + regime_risk) / 4.0

    def _calculate_optimal_position_size(self, regime: MarketRegime) -> float:
        """Position size hint applied to buy orders."""
        config = self.config
        if not config.enable_dynamic_position_sizing:
            return config.max_position_size

        risk_config = config.risk_management
        size = config.max_position_size
        if risk_config.regime_based_position_sizing:
            size = regime.recommended_position_size
            if regime.regime in risk_config.multiplier_regimes:
                size *= risk_config.position_size_multiplier

        if risk_config.volatility_scaling:
            size *= max(0.1, 1.0 - regime.volatility * 10.0)

        size *= max(0.1, 1.0 - self._calculate_risk_score(regime))

        return max(config.min_position_size, min(config.max_position_size, size))

    @staticmethod
    def _rule_based_signal(regime: MarketRegime) -> float:
        """Rule-based trading signal in [-1, 1] derived from the regime."""
        if regime.regime == 'bullish' and regime.momentum > 0.01 and regime.trend_strength > 0.001:
            return 0.8
        if regime.regime == 'bearish' and regime.momentum < -0.01 and regime.trend_strength < -0.001:
            return -0.8
        if regime.regime == 'trending' and abs(regime.momentum) > 0.005:
            return 0.5 if regime.momentum > 0 else -0.5
        if regime.regime == 'ranging' and regime.volatility < 0.02:
            return 0.2
        return 0.0

    @staticmethod
    def _hybrid_weight(regime: MarketRegime) -> float:
        return min(0.8, regime.confidence * 0.8)

    @staticmethod
    def _market_condition(regime: MarketRegime) -> str:
        if regime.is_favorable:
            return 'favorable'
        if regime.risk_level == 'high':
            return 'unfavorable'
        return 'neutral'

    # ------------------------------------------------------------------
    # Reward
    # ------------------------------------------------------------------

    def _calculate_reward(
        self,
        previous_value: float,
        value: float,
        previous_position: float,
        position: float,
        drawdown: float
    ) -> RLReward:
        """
        Compute the structured reward for the step just taken.

        total = (raw - rf / periods - penalties) * reward_scaling
                [+ regime bonus + risk bonus when regime detection and
                 dynamic position sizing are both enabled]
        """
        config = self.config
        regime = self._current_regime

        raw_return = (value - previous_value) / previous_value if previous_value > 0 else 0.0
        risk_free = config.risk_free_rate / config.periods_per_year

        transaction_cost_penalty = abs(position - previous_position) * config.transaction_cost_penalty
        holding_penalty = config.holding_penalty * self.bars_in_position if self.units > 0 else 0.0
        volatility_penalty = config.volatility_penalty * regime.volatility if self.units > 0 else 0.0
        risk_penalty = config.drawdown_penalty * drawdown

        penalties = transaction_cost_penalty + holding_penalty + volatility_penalty + risk_penalty
        total = (raw_return - risk_free - penalties) * config.reward_scaling

        regime_bonus = 0.0
        risk_bonus = 0.0
        if config.enable_market_regime_detection and config.enable_dynamic_position_sizing:
            if regime.is_favorable and raw_return > 0:
                regime_bonus = config.regime_bonus
            risk_bonus = self._risk_management_bonus(regime, position, drawdown)
            total += regime_bonus + risk_bonus

        return RLReward(
            total=float(total),
            raw_return=float(raw_return),
            risk_penalty=float(risk_penalty),
            transaction_cost_penalty=float(transaction_cost_penalty),
            holding_penalty=float(holding_penalty),
            volatility_penalty=float(volatility_penalty),
            regime_bonus=float(regime_bonus),
            risk_bonus=float(risk_bonus),
        )

    def _risk_management_bonus(self, regime: MarketRegime, position: float, drawdown: float) -> float:
        bonus = 0.0
        risk_score = self._calculate_risk_score(regime)
        if risk_score < 0.3:
            bonus += 0.05
        elif risk_score < 0.5:
            bonus += 0.02

        optimal = self._calculate_optimal_position_size(regime)
        if optimal > 0 and 0.8 < position / optimal < 1.2:
            bonus += 0.03

        if drawdown < 0.1:
            bonus += 0.04
        return bonus

    # ------------------------------------------------------------------
    # Observation / info
    # ------------------------------------------------------------------

    def _get_state(self) -> RLState:
        index = self.current_step
        regime = self._current_regime
        price = self.prices[index]

        features = np.asarray(
            self.feature_provider.compute(self.prices, self.volumes, index), dtype=np.float32
        ).copy()
        if features.shape != (self.n_features,):
            raise ConfigurationError(
                f"Feature provider returned shape {features.shape}, expected ({self.n_features},)"
            )
        features.setflags(write=False)

        hybrid = self.config.enable_hybrid_approach
        return RLState(
            features=features,
            position=self._position_fraction(price),
            capital=self.cash / self.initial_capital,
            portfolio_value=self._portfolio_value(price) / self.initial_capital,
            volatility=regime.volatility,
            momentum=regime.momentum,
            trend_strength=regime.trend_strength,
            time_step=index,
            market_regime=regime.regime,
            regime_confidence=regime.confidence,
            risk_score=self._calculate_risk_score(regime),
            optimal_position_size=self._calculate_optimal_position_size(regime),
            market_condition=self._market_condition(regime),
            synthetic_data=bool(self.synthetic_mask[index]),
            rule_based_signal=self._rule_based_signal(regime) if hybrid else 0.0,
            hybrid_weight=self._hybrid_weight(regime) if hybrid else 0.0,
        )

    def _get_info(self, price: float, value: float, risk_exit: bool, capital_depleted: bool) -> Dict[str, Any]:
        return {
            'portfolio_value': value,
            'position': self._position_fraction(price),
            'cash': self.cash,
            'price': price,
            'time_step': self.current_step,
            'total_trades': self.total_trades,
            'win_rate': self._win_rate(),
            'regime': self._current_regime.regime,
            'risk_score': self._calculate_risk_score(self._current_regime),
            'risk_exit': risk_exit,
            'capital_depleted': capital_depleted,
        }

    def get_current_market_data(self) -> Dict[str, Any]:
        """Market snapshot at the current bar."""
        regime = self._current_regime
        return {
            'price': float(self.prices[self.current_step]),
            'volume': float(self.volumes[self.current_step]),
            'time_step': self.current_step,
            'regime': regime.regime,
            'volatility': regime.volatility,
            'momentum': regime.momentum,
            'trend_strength': regime.trend_strength,
            'volume_profile': regime.volume_profile,
        }

    # ------------------------------------------------------------------
    # Episode results
    # ------------------------------------------------------------------

    def _win_rate(self) -> float:
        if not self.round_trips:
            return 0.0
        wins = sum(1 for trip in self.round_trips if trip.pnl > 0)
        return wins / len(self.round_trips)

    def get_episode_results(self) -> Dict[str, Any]:
        """
        Summarize the episode since the last reset().

        Returns:
            Dictionary with total return, Sharpe ratio, max drawdown, win
            rate, trade count and secondary diagnostics
        """
        values = np.asarray(self.portfolio_values, dtype=np.float64)
        final_value = float(values[-1])
        total_return = (final_value - self.initial_capital) / self.initial_capital

        if len(values) > 1:
            step_returns = np.diff(values) / values[:-1]
            sharpe_ratio = float(np.mean(step_returns) / (np.std(step_returns) + 1e-8))
        else:
            sharpe_ratio = 0.0

        running_peak = np.maximum.accumulate(values)
        max_drawdown = float(np.max((running_peak - values) / running_peak))

        holding_periods = [trip.exit_step - trip.entry_step for trip in self.round_trips]
        if self.open_trip is not None:
            holding_periods.append(self.current_step - self.open_trip.entry_step)
        average_holding_period = float(np.mean(holding_periods)) if holding_periods else 0.0

        regime_rewards: Dict[str, List[float]] = {}
        for regime, reward in zip(self.regime_history, self.reward_history):
            regime_rewards.setdefault(regime, []).append(reward.total)
        regime_performance = {regime: float(np.mean(r)) for regime, r in regime_rewards.items()}

        synthetic_rewards = [
            reward.total for state, reward in zip(self.state_history, self.reward_history)
            if state.synthetic_data
        ]

        hybrid_actions = {
            Action.RULE_BASED_BUY, Action.RULE_BASED_SELL, Action.HYBRID_BUY, Action.HYBRID_SELL
        }
        hybrid_rewards = [
            reward.total for action, reward in zip(self.action_history, self.reward_history)
            if action in hybrid_actions
        ]

        favorable_steps = sum(
            1 for state in self.state_history
            if state.market_condition == 'favorable' and state.position > 0.1
        )

        return {
            'total_return': float(total_return),
            'sharpe_ratio': sharpe_ratio,
            'max_drawdown': max_drawdown,
            'win_rate': self._win_rate(),
            'total_trades': self.total_trades,
            'final_portfolio_value': final_value,
            'average_holding_period': average_holding_period,
            'closed_trades': len(self.round_trips),
            'regime_performance': regime_performance,
            'risk_management_score': self._risk_management_score(),
            'favorable_condition_steps': favorable_steps,
            'synthetic_data_performance': float(np.mean(synthetic_rewards)) if synthetic_rewards else 0.0,
            'hybrid_performance': float(np.mean(hybrid_rewards)) if hybrid_rewards else 0.0,
            'portfolio_values': values.tolist(),
        }

    def _risk_management_score(self) -> float:
        """Blend of low average risk, share of low-risk steps and small step losses."""
        if not self.state_history:
            return 0.0
        risk_scores = np.array([state.risk_score for state in self.state_history])
        values = np.asarray(self.portfolio_values, dtype=np.float64)
        step_losses = np.maximum(0.0, (values[:-1] - values[1:]) / values[:-1])
        return float(
            (1.0 - risk_scores.mean()) * 0.4
            + np.mean(risk_scores < 0.3) * 0.4
            + (1.0 - step_losses.mean()) * 0.2
        )

    # ------------------------------------------------------------------
    # Synthetic data
    # ------------------------------------------------------------------

    def _generate_synthetic_data(self) -> None:
        """
        Regenerate the tail of the (copied) price series.

        Bars cycle through trending, ranging and volatile segments by index
        modulo 3; disabled segment types keep the historical price.
        """
        synthetic = self.config.synthetic_data
        start = max(1, int(len(self.prices) * synthetic.start_fraction))

        for i in range(start, len(self.prices)):
            self.synthetic_mask[i] = True
            previous = self.prices[i - 1]
            segment = i % 3
            if segment == 0 and synthetic.enable_trending_markets:
                noise = (self.rng.random() - 0.5) * synthetic.noise_level
                self.prices[i] = previous * (1.0 + synthetic.trend_strength + noise)
            elif segment == 1 and synthetic.enable_ranging_markets:
                noise = (self.rng.random() - 0.5) * synthetic.noise_level
                self.prices[i] = previous * (1.0 + (self.rng.random() - 0.5) * 0.02 + noise)
            elif segment == 2 and synthetic.enable_volatile_markets:
                self.prices[i] = previous * (1.0 + (self.rng.random() - 0.5) * 0.05)
            self.prices[i] = max(self.prices[i], 0.01)

        logger.info(f"Synthetic data: regenerated {int(self.synthetic_mask.sum())} bars from index {start}")
