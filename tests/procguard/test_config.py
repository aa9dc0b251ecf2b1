"""
Tests for configuration loading, environment overrides and validation.
"""

import pytest

from procguard.config import (
    CONFIG_FILENAME,
    DEFAULT_SIGNATURE,
    DEFAULTS,
    Config,
    _convert_env_value,
    _env_key_to_path,
    find_config_file,
    get_config,
    set_config,
)
from procguard.exceptions import ConfigError

# =============================================================================
# Defaults
# =============================================================================


@pytest.mark.unit
class TestDefaults:
    """Test built-in defaults."""

    def test_defaults(self, clean_env):
        config = Config()
        assert config.unregistered_policy == "default"
        assert config.aliases == ("subprocess", "procguard.subprocess")
        assert config.timeout_ms == 3000
        assert config.max_workers == 8
        assert config.signature == DEFAULT_SIGNATURE
        assert config.get("audit.subpath") == "logs/procguard/zombies.log"
        assert config.get("intercept.enabled") is False

    def test_data_is_merged_over_defaults(self, clean_env):
        config = Config({"termination": {"timeout_ms": 100}})
        assert config.timeout_ms == 100
        assert config.max_workers == 8

    def test_get_and_has(self, clean_env):
        config = Config()
        assert config.get("missing.key", "fallback") == "fallback"
        assert config.has("termination.timeout_ms")
        assert config.has("audit.log_file")
        assert not config.has("termination.nope")

    def test_to_dict_is_a_copy(self, clean_env):
        config = Config()
        data = config.to_dict()
        data["termination"]["timeout_ms"] = 1
        assert config.timeout_ms == 3000


# =============================================================================
# Environment overrides
# =============================================================================


@pytest.mark.unit
class TestEnvironmentOverrides:
    """Test PROCGUARD_* variables."""

    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("true", True),
            ("False", False),
            ("42", 42),
            ("1.5", 1.5),
            ("none", None),
            ("a,b", ["a", "b"]),
            ("text", "text"),
        ],
    )
    def test_convert_env_value(self, raw, expected):
        assert _convert_env_value(raw) == expected

    def test_env_key_resolves_underscored_keys(self):
        assert _env_key_to_path("PROCGUARD_TERMINATION_TIMEOUT_MS", DEFAULTS) == [
            "termination",
            "timeout_ms",
        ]
        assert _env_key_to_path("PROCGUARD_INTERCEPT_SYNC_DELAY_CAP_MS", DEFAULTS) == [
            "intercept",
            "sync_delay_cap_ms",
        ]
        assert _env_key_to_path("PROCGUARD_UNKNOWN_THING", DEFAULTS) is None

    def test_override_values(self, clean_env):
        clean_env.setenv("PROCGUARD_TERMINATION_TIMEOUT_MS", "250")
        clean_env.setenv("PROCGUARD_INTERCEPT_UNREGISTERED", "passthrough")
        config = Config()
        assert config.timeout_ms == 250
        assert config.unregistered_policy == "passthrough"

    def test_list_override(self, clean_env):
        clean_env.setenv("PROCGUARD_INTERCEPT_ALIASES", "subprocess")
        assert Config().aliases == ("subprocess",)

    def test_strict_shortcut(self, clean_env):
        clean_env.setenv("PROCGUARD_STRICT", "1")
        assert Config().unregistered_policy == "strict"

    def test_strict_shortcut_disabled(self, clean_env):
        clean_env.setenv("PROCGUARD_STRICT", "0")
        assert Config().unregistered_policy == "default"

    def test_log_file_shortcut(self, clean_env, temp_dir):
        target = str(temp_dir / "audit.log")
        clean_env.setenv("PROCGUARD_LOG_FILE", target)
        assert Config().get("audit.log_file") == target

    def test_overrides_can_be_disabled(self, clean_env):
        clean_env.setenv("PROCGUARD_TERMINATION_TIMEOUT_MS", "250")
        assert Config(env_overrides=False).timeout_ms == 3000


# =============================================================================
# Files
# =============================================================================


@pytest.mark.unit
class TestConfigFiles:
    """Test YAML loading and discovery."""

    def test_load_explicit_file(self, clean_env, temp_dir):
        path = temp_dir / "custom.yaml"
        path.write_text("termination:\n  timeout_ms: 750\n")
        config = Config.load(path)
        assert config.timeout_ms == 750
        assert config.source == path

    def test_settings_under_top_level_key(self, clean_env, temp_dir):
        path = temp_dir / "custom.yaml"
        path.write_text("procguard:\n  intercept:\n    unregistered: strict\n")
        assert Config.load(path).unregistered_policy == "strict"

    def test_env_beats_file(self, clean_env, temp_dir):
        path = temp_dir / "custom.yaml"
        path.write_text("termination:\n  max_workers: 2\n")
        clean_env.setenv("PROCGUARD_TERMINATION_MAX_WORKERS", "6")
        assert Config.load(path).max_workers == 6

    def test_find_config_file_searches_upward(self, temp_dir):
        (temp_dir / CONFIG_FILENAME).write_text("{}\n")
        nested = temp_dir / "a" / "b"
        nested.mkdir(parents=True)
        assert find_config_file(nested) == (temp_dir / CONFIG_FILENAME).resolve()

    def test_discovered_file_is_optional(self, clean_env, temp_dir):
        clean_env.chdir(temp_dir)
        config = Config.load()
        assert config.source is None
        assert config.timeout_ms == 3000

    def test_missing_explicit_file(self, temp_dir):
        with pytest.raises(ConfigError, match="not found"):
            Config.load(temp_dir / "nope.yaml")

    def test_invalid_yaml(self, temp_dir):
        path = temp_dir / "bad.yaml"
        path.write_text("termination: [unclosed\n")
        with pytest.raises(ConfigError, match="Invalid YAML"):
            Config.load(path)

    def test_non_mapping_root(self, temp_dir):
        path = temp_dir / "list.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigError, match="mapping"):
            Config.load(path)

    def test_empty_file(self, clean_env, temp_dir):
        path = temp_dir / "empty.yaml"
        path.write_text("")
        assert Config.load(path).timeout_ms == 3000


# =============================================================================
# Validation
# =============================================================================


@pytest.mark.unit
class TestValidation:
    """Test rejected values."""

    def test_unknown_policy(self, clean_env):
        with pytest.raises(ConfigError, match="policy"):
            Config({"intercept": {"unregistered": "maybe"}})

    @pytest.mark.parametrize("value", [0, -5, "fast", True])
    def test_non_positive_timeout(self, clean_env, value):
        with pytest.raises(ConfigError, match="positive integer"):
            Config({"termination": {"timeout_ms": value}})

    def test_aliases_must_be_a_list(self, clean_env):
        with pytest.raises(ConfigError):
            Config({"intercept": {"aliases": "subprocess"}})


@pytest.mark.unit
class TestGlobalConfig:
    """Test the process-wide settings."""

    def test_set_and_reset(self, clean_env):
        custom = Config({"termination": {"max_workers": 3}})
        set_config(custom)
        try:
            assert get_config() is custom
        finally:
            set_config(None)
        assert get_config() is not custom
        set_config(None)
