"""
Tests for configuration dataclasses, presets and JSON persistence.
"""
import json

import pytest

from rl_config import (
    PRESETS,
    AgentConfig,
    ConfigurationError,
    EnvironmentConfig,
    TrainerConfig,
    get_preset,
    load_config,
    save_config,
)


class TestPresets:
    """Test named preset factories"""

    @pytest.mark.parametrize("name", sorted(PRESETS))
    def test_presets_validate(self, name):
        env_config, agent_config = get_preset(name)
        env_config.validate()
        agent_config.validate()

    def test_expected_presets(self):
        assert set(PRESETS) == {
            'default', 'improved', 'conservative', 'aggressive',
            'high_return', 'momentum_focused', 'volatility_harvesting',
        }

    def test_unknown_preset(self):
        with pytest.raises(ConfigurationError):
            get_preset('moonshot')

    def test_presets_are_fresh_instances(self):
        first, _ = get_preset('high_return')
        first.regime_thresholds.volatility_threshold = 1.0
        second, _ = get_preset('high_return')
        assert second.regime_thresholds.volatility_threshold == 0.04

    def test_high_return_values(self):
        env_config, agent_config = get_preset('high_return')
        assert env_config.commission == 0.0005
        assert env_config.timesteps == 30
        assert env_config.enable_hybrid_approach
        assert env_config.risk_management.max_drawdown_threshold == 0.25
        assert agent_config.learning_rate == 0.002
        assert agent_config.target_update_frequency == 50
        assert agent_config.double_dqn and agent_config.dueling_dqn

    def test_momentum_multiplier_only_in_trending(self):
        env_config, _ = get_preset('momentum_focused')
        assert env_config.risk_management.multiplier_regimes == ['trending']
        assert env_config.risk_management.position_size_multiplier == 1.5


class TestValidation:
    """Test validate() error reporting"""

    def test_agent_epsilon_bounds(self):
        with pytest.raises(ConfigurationError, match="epsilon"):
            AgentConfig(epsilon=0.05, epsilon_min=0.1).validate()

    def test_agent_unknown_optimizer(self):
        with pytest.raises(ConfigurationError):
            AgentConfig(optimizer='sgd').validate()

    def test_environment_position_bounds(self):
        with pytest.raises(ConfigurationError):
            EnvironmentConfig(min_position_size=0.9, max_position_size=0.5).validate()

    def test_trainer_cadence(self):
        with pytest.raises(ConfigurationError):
            TrainerConfig(train_every=0).validate()

    def test_configuration_error_is_value_error(self):
        assert issubclass(ConfigurationError, ValueError)


class TestPersistence:
    """Test JSON load/save"""

    def test_round_trip(self, tmp_path):
        env_config, agent_config = get_preset('conservative')
        trainer_config = TrainerConfig(train_every=5)
        path = tmp_path / "run.json"

        save_config(str(path), env_config, agent_config, trainer_config)
        loaded_env, loaded_agent, loaded_trainer = load_config(str(path), preset='default')

        assert loaded_env == env_config
        assert loaded_agent == agent_config
        assert loaded_trainer == trainer_config

    def test_partial_overrides(self, tmp_path):
        path = tmp_path / "overrides.json"
        path.write_text(json.dumps({
            'environment': {'commission': 0.002, 'regime_thresholds': {'momentum_threshold': 0.01}},
            'agent': {'batch_size': 16},
        }))

        env_config, agent_config, _ = load_config(str(path), preset='improved')

        assert env_config.commission == 0.002
        assert env_config.regime_thresholds.momentum_threshold == 0.01
        assert env_config.regime_thresholds.volatility_threshold == 0.015
        assert agent_config.batch_size == 16
        assert agent_config.hidden_layers == [256, 128, 64]

    def test_unknown_key(self, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text(json.dumps({'agent': {'learning_rat': 0.1}}))
        with pytest.raises(ConfigurationError, match="learning_rat"):
            load_config(str(path))

    def test_invalid_values_rejected(self, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text(json.dumps({'agent': {'batch_size': -1}}))
        with pytest.raises(ConfigurationError):
            load_config(str(path))

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(str(tmp_path / "missing.json"))
