"""
Unit tests for configuration loading and validation.

Tests strict validation and error handling for budget configs.
"""

import logging
import os
import shutil
import sys
import tempfile
from unittest.mock import patch

import pytest
import yaml

from usage_ledger.config.loader import (
    DEFAULT_BASE_URL,
    AppConfig,
    MeteringConfig,
    describe_config,
    load_config,
    load_config_from_env,
)
from usage_ledger.core.periods import BudgetPeriod
from usage_ledger.core.policy import BudgetPolicy, CorruptLedgerAction, Role
from usage_ledger.logging_config import setup_logging


class TestConfigLoading:
    """Test configuration loading and validation."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        """Clean up test environment."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write_config(self, config_data, filename: str = "config.yaml") -> str:
        """Write configuration data to temporary file."""
        config_path = os.path.join(self.temp_dir, filename)
        with open(config_path, 'w', encoding='utf-8') as f:
            yaml.dump(config_data, f)
        return config_path

    def _valid_config(self) -> dict:
        return {
            "budget": {"period": "monthly", "guest": 0.5, "member": 10},
            "roles": {
                "admins": [1001],
                "members": ["2001", 2002],
                "stats_min_role": "user",
            },
            "storage": {"dir": "data/usage", "on_corrupt_ledger": "deny"},
            "metering": {
                "api_key": "sk-test-key",
                "base_url": "https://example.test/api/v1/",
                "timeout": 5,
                "model": "openai/gpt-4o-mini",
            },
        }

    def test_valid_config_loads_correctly(self):
        """Test that a valid configuration loads correctly."""
        config = load_config(self._write_config(self._valid_config()))

        policy = config.policy
        assert policy.period is BudgetPeriod.MONTHLY
        assert policy.guest_budget == 0.5
        assert policy.member_budget == 10.0
        assert policy.admin_ids == frozenset({"1001"})
        assert policy.member_ids == frozenset({"2001", "2002"})
        assert policy.stats_min_role is Role.USER
        assert policy.corrupt_ledger_action is CorruptLedgerAction.DENY

        assert config.storage_dir == "data/usage"
        assert config.metering.api_key == "sk-test-key"
        assert config.metering.base_url == "https://example.test/api/v1"
        assert config.metering.timeout == 5.0
        assert config.metering.model == "openai/gpt-4o-mini"

    def test_minimal_config_uses_defaults(self):
        config = load_config(self._write_config({
            "budget": {"period": "daily", "guest": 0, "member": 1},
        }))

        assert config.policy.admin_ids == frozenset()
        assert config.policy.stats_min_role is Role.ADMIN
        assert config.policy.corrupt_ledger_action is CorruptLedgerAction.ALLOW
        assert config.storage_dir == "logs"
        assert config.metering == MeteringConfig()

    def test_missing_file(self):
        with pytest.raises(FileNotFoundError):
            load_config(os.path.join(self.temp_dir, "nope.yaml"))

    def test_empty_file(self):
        path = os.path.join(self.temp_dir, "empty.yaml")
        open(path, 'w').close()
        with pytest.raises(ValueError, match="empty"):
            load_config(path)

    def test_invalid_yaml(self):
        path = os.path.join(self.temp_dir, "bad.yaml")
        with open(path, 'w', encoding='utf-8') as f:
            f.write("budget: [unclosed")
        with pytest.raises(yaml.YAMLError):
            load_config(path)

    def test_unknown_top_level_key(self):
        data = self._valid_config()
        data["budgets"] = {}
        with pytest.raises(ValueError, match="Unknown configuration keys"):
            load_config(self._write_config(data))

    def test_unknown_budget_key(self):
        data = self._valid_config()
        data["budget"]["admin"] = 5
        with pytest.raises(ValueError, match="Unknown budget keys"):
            load_config(self._write_config(data))

    def test_missing_budget_section(self):
        with pytest.raises(ValueError, match="Missing required 'budget'"):
            load_config(self._write_config({"roles": {"admins": []}}))

    @pytest.mark.parametrize("key", ["period", "guest", "member"])
    def test_missing_budget_value(self, key):
        data = self._valid_config()
        del data["budget"][key]
        with pytest.raises(ValueError, match=f"Missing required '{key}'"):
            load_config(self._write_config(data))

    @pytest.mark.parametrize("period", ["", "weekly", None])
    def test_invalid_period_is_fatal(self, period):
        data = self._valid_config()
        data["budget"]["period"] = period
        with pytest.raises(ValueError, match="budget period"):
            load_config(self._write_config(data))

    def test_invalid_budget_value(self):
        data = self._valid_config()
        data["budget"]["guest"] = "lots"
        with pytest.raises(ValueError, match="budget.guest"):
            load_config(self._write_config(data))

    @pytest.mark.parametrize("role", ["GUEST", "owner", 3])
    def test_invalid_stats_role(self, role):
        data = self._valid_config()
        data["roles"]["stats_min_role"] = role
        with pytest.raises(ValueError, match="stats_min_role"):
            load_config(self._write_config(data))

    def test_invalid_ids(self):
        data = self._valid_config()
        data["roles"]["admins"] = "1001"
        with pytest.raises(ValueError, match="roles.admins"):
            load_config(self._write_config(data))

    def test_invalid_corrupt_action(self):
        data = self._valid_config()
        data["storage"]["on_corrupt_ledger"] = "panic"
        with pytest.raises(ValueError, match="on_corrupt_ledger"):
            load_config(self._write_config(data))

    def test_invalid_timeout(self):
        data = self._valid_config()
        data["metering"]["timeout"] = 0
        with pytest.raises(ValueError, match="metering.timeout"):
            load_config(self._write_config(data))


class TestEnvConfig:
    """Test configuration from environment variables."""

    def test_env_config(self):
        config = load_config_from_env({
            "BUDGET_PERIOD": "total",
            "GUEST_BUDGET": "0.25",
            "USER_BUDGET": "5",
            "ADMIN_IDS": "1, 2",
            "ALLOWED_USER_IDS": "3,,4 ",
            "STATS_MIN_ROLE": "USER",
            "USAGE_DIR": "/var/lib/usage",
            "API_KEY": "sk-abc",
            "MODEL": "meta/llama",
        })

        assert config.policy.period is BudgetPeriod.TOTAL
        assert config.policy.guest_budget == 0.25
        assert config.policy.member_budget == 5.0
        assert config.policy.admin_ids == frozenset({"1", "2"})
        assert config.policy.member_ids == frozenset({"3", "4"})
        assert config.policy.stats_min_role is Role.USER
        assert config.storage_dir == "/var/lib/usage"
        assert config.metering.base_url == DEFAULT_BASE_URL
        assert config.metering.model == "meta/llama"

    def test_env_defaults(self):
        config = load_config_from_env({})
        assert config.policy.period is BudgetPeriod.MONTHLY
        assert config.policy.guest_budget == 0.0
        assert config.storage_dir == "logs"

    def test_empty_period_is_fatal(self):
        with pytest.raises(ValueError, match="budget period must be set"):
            load_config_from_env({"BUDGET_PERIOD": ""})

    def test_invalid_budget_is_fatal(self):
        with pytest.raises(ValueError, match="USER_BUDGET"):
            load_config_from_env({"USER_BUDGET": "ten"})


class TestDescribeConfig:
    """Test the explicit config dump."""

    def test_lists_fields_and_masks_key(self):
        config = AppConfig(
            policy=BudgetPolicy(
                guest_budget=0.5,
                member_budget=10.0,
                admin_ids=frozenset({"1"}),
            ),
            metering=MeteringConfig(api_key="sk-or-v1-secretvalue"),
        )
        lines = describe_config(config)

        assert "budget_period: monthly" in lines
        assert "admin_ids: 1" in lines
        assert "member_ids: (none)" in lines
        assert "api_key: sk-o...ue" in lines
        assert not any("secretvalue" in line for line in lines)


class TestSetupLogging:
    """Test root logger configuration."""

    def test_logs_to_stderr(self, monkeypatch):
        monkeypatch.setenv("LOG_LEVEL", "debug")
        with patch("usage_ledger.logging_config.logging.basicConfig") as basic_config:
            setup_logging()

        kwargs = basic_config.call_args.kwargs
        [handler] = kwargs["handlers"]
        assert handler.stream is sys.stderr
        assert kwargs["level"] == logging.DEBUG
        assert kwargs["force"] is True
