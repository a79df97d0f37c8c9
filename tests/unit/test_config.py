"""Tests for configuration loading and validation."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from triage_engine.config.loader import load_config, substitute_env_vars, validate_config
from triage_engine.config.schema import (
    AgentRunnerConfig,
    LoggingConfig,
    PriorityRules,
    SourceConfig,
    StreamConfig,
    TriageConfig,
    ViewConfig,
)
from triage_engine.models.session import ProcessingOptions
from triage_engine.models.view import SortDirection, SortField


class TestSubstituteEnvVars:
    """Test environment variable substitution."""

    def test_substitute_single_var(self, monkeypatch: pytest.MonkeyPatch):
        """Test substituting a single environment variable."""
        monkeypatch.setenv("TEST_VAR", "test_value")
        result = substitute_env_vars("Value is ${TEST_VAR}")
        assert result == "Value is test_value"

    def test_substitute_multiple_vars(self, monkeypatch: pytest.MonkeyPatch):
        """Test substituting multiple environment variables."""
        monkeypatch.setenv("VAR1", "value1")
        monkeypatch.setenv("VAR2", "value2")
        result = substitute_env_vars("${VAR1} and ${VAR2}")
        assert result == "value1 and value2"

    def test_missing_env_var_raises(self, monkeypatch: pytest.MonkeyPatch):
        """Test that missing environment variables raise ValueError."""
        monkeypatch.delenv("MISSING", raising=False)
        with pytest.raises(ValueError, match="Environment variable MISSING not found"):
            substitute_env_vars("Value is ${MISSING}")

    def test_no_substitution_needed(self):
        """Test text without environment variables passes through unchanged."""
        result = substitute_env_vars("plain text without vars")
        assert result == "plain text without vars"


class TestSourceConfig:
    """Test SourceConfig validation."""

    def test_defaults(self):
        """Test that the default source runs the dry-run command."""
        config = SourceConfig()
        assert config.kind == "command"
        assert "--dry-run" in config.command
        assert config.timeout == 120.0

    def test_unknown_kind_rejected(self):
        """Test that only known source kinds are accepted."""
        with pytest.raises(ValidationError):
            SourceConfig(kind="ftp")

    def test_timeout_bounds(self):
        """Test timeout must be positive."""
        with pytest.raises(ValidationError):
            SourceConfig(timeout=0)


class TestAgentRunnerConfig:
    """Test AgentRunnerConfig validation."""

    def test_empty_command_rejected(self):
        """Test that the agent needs a launch command."""
        with pytest.raises(ValidationError, match="agent.command must not be empty"):
            AgentRunnerConfig(command=[])

    def test_default_providers(self):
        """Test the default provider list."""
        assert AgentRunnerConfig().providers == ["zeropath", "sentry", "codecov"]

    def test_terminate_grace_bounds(self):
        """Test the SIGTERM grace period bounds."""
        with pytest.raises(ValidationError):
            AgentRunnerConfig(terminate_grace=-1)


class TestStreamConfig:
    """Test StreamConfig validation."""

    def test_default_values(self):
        """Test default retention and timing."""
        config = StreamConfig()
        assert config.max_activities == 500
        assert config.truncate_length == 200
        assert config.heartbeat_interval == 15.0
        assert config.idle_timeout == 45.0

    def test_idle_timeout_must_exceed_heartbeat(self):
        """Test that an idle timeout below the heartbeat is rejected."""
        with pytest.raises(ValidationError, match="idle_timeout must be greater"):
            StreamConfig(heartbeat_interval=30, idle_timeout=20)

    def test_max_activities_bounds(self):
        """Test max_activities must be at least 1."""
        with pytest.raises(ValidationError):
            StreamConfig(max_activities=0)


class TestProcessingOptions:
    """Test processing option bounds."""

    def test_defaults(self):
        """Test default processing options."""
        options = ProcessingOptions()
        assert options.mode == "build"
        assert options.model == "sonnet"
        assert options.max_iterations == 10
        assert options.auto_push is True

    @pytest.mark.parametrize("iterations", [0, 51])
    def test_iteration_bounds(self, iterations: int):
        """Test max_iterations is limited to 1-50."""
        with pytest.raises(ValidationError):
            ProcessingOptions(max_iterations=iterations)

    def test_unknown_model_rejected(self):
        """Test that only known models are accepted."""
        with pytest.raises(ValidationError):
            ProcessingOptions(model="haiku")


class TestPriorityRules:
    """Test provider priority defaults."""

    def test_defaults(self):
        """Test the default provider weights."""
        rules = PriorityRules()
        assert rules.zeropath.critical == 100
        assert rules.sentry.fatal == 85
        assert rules.codecov.critical == 20.0
        assert rules.github_labels["security"] == 95
        assert rules.github_default == 25
        assert rules.linear.urgent == 95

    def test_priority_out_of_range_rejected(self):
        """Test that priorities stay within 0-100."""
        with pytest.raises(ValidationError):
            PriorityRules.model_validate({"sentry": {"fatal": 150}})


class TestViewConfig:
    """Test initial view state."""

    def test_defaults(self):
        """Test the default sort is priority descending."""
        config = ViewConfig()
        assert config.sort_field is SortField.PRIORITY
        assert config.sort_direction is SortDirection.DESC
        assert config.group_by is None

    def test_string_values_coerced(self):
        """Test that YAML strings become enum members."""
        config = ViewConfig.model_validate({"sort_field": "date", "group_by": "provider"})
        assert config.sort_field is SortField.DATE
        assert config.group_by is not None
        assert config.group_by.value == "provider"


class TestLoggingConfig:
    """Test logging configuration."""

    def test_invalid_level_rejected(self):
        """Test that unknown log levels are rejected."""
        with pytest.raises(ValidationError):
            LoggingConfig(level="VERBOSE")


class TestEnvironmentSettings:
    """Test TRIAGE_* environment overrides."""

    def test_nested_env_override(self, monkeypatch: pytest.MonkeyPatch):
        """Test that nested keys use a double underscore."""
        monkeypatch.setenv("TRIAGE_STREAM__IDLE_TIMEOUT", "60")
        monkeypatch.setenv("TRIAGE_SOURCE__KIND", "file")
        monkeypatch.setenv("TRIAGE_SOURCE__PATH", "/tmp/issues.json")
        config = TriageConfig()
        assert config.stream.idle_timeout == 60
        assert config.source.kind == "file"
        assert config.source.path == Path("/tmp/issues.json")


class TestLoadConfig:
    """Test loading configuration from files."""

    def test_load_valid_config(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
        """Test loading a complete configuration file."""
        monkeypatch.setenv("TEST_ISSUES_TOKEN", "token-value")
        config_file = tmp_path / "config.yaml"
        config_file.write_text(
            """
source:
  kind: http
  url: https://triage.example.com/api/issues
  token: ${TEST_ISSUES_TOKEN}

agent:
  command: ["bash", "meta-ralph.sh"]
  providers: [zeropath, sentry]

processing:
  mode: plan
  max_iterations: 5

view:
  sort_field: severity
  group_by: severity

logging:
  level: DEBUG
  format: console
"""
        )

        config = load_config(config_file)

        assert config.source.kind == "http"
        assert config.source.token == "token-value"
        assert config.agent.providers == ["zeropath", "sentry"]
        assert config.processing.mode == "plan"
        assert config.processing.max_iterations == 5
        assert config.view.sort_field is SortField.SEVERITY
        assert config.logging.level == "DEBUG"

    def test_load_empty_file_uses_defaults(self, tmp_path: Path):
        """Test that an empty YAML file yields the defaults."""
        config_file = tmp_path / "config.yaml"
        config_file.write_text("")
        config = load_config(config_file)
        assert config.source.kind == "command"

    def test_load_without_path(self):
        """Test loading from the environment alone."""
        config = load_config(None)
        assert isinstance(config, TriageConfig)

    def test_load_config_missing_file(self):
        """Test that missing config file raises FileNotFoundError."""
        with pytest.raises(FileNotFoundError):
            load_config(Path("/nonexistent/config.yaml"))

    def test_load_config_missing_env_var(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
        """Test that a missing environment variable raises ValueError."""
        monkeypatch.delenv("MISSING_TRIAGE_VAR", raising=False)
        config_file = tmp_path / "config.yaml"
        config_file.write_text("source:\n  token: ${MISSING_TRIAGE_VAR}\n")

        with pytest.raises(ValueError, match="MISSING_TRIAGE_VAR"):
            load_config(config_file)


class TestValidateConfig:
    """Test cross-field validation."""

    def test_http_source_without_url(self):
        """Test that the HTTP source needs a URL."""
        config = TriageConfig.model_validate({"source": {"kind": "http"}})
        with pytest.raises(ValueError, match="source.url missing"):
            validate_config(config)

    def test_file_source_without_path(self):
        """Test that the file source needs a path."""
        config = TriageConfig.model_validate({"source": {"kind": "file"}})
        with pytest.raises(ValueError, match="source.path missing"):
            validate_config(config)

    def test_command_source_without_command(self):
        """Test that the command source needs a command."""
        config = TriageConfig.model_validate({"source": {"kind": "command", "command": []}})
        with pytest.raises(ValueError, match="source.command is empty"):
            validate_config(config)

    def test_valid_config_passes(self):
        """Test that the defaults pass cross-field validation."""
        validate_config(TriageConfig.model_validate({}))
