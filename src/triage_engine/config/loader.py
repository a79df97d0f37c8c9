"""Configuration loader with YAML parsing and environment variable substitution."""

import os
import re
from pathlib import Path

import yaml

from .schema import TriageConfig


def substitute_env_vars(text: str) -> str:
    """
    Replace ${VAR_NAME} patterns with environment variable values.

    Args:
        text: Text containing ${VAR_NAME} patterns

    Returns:
        Text with environment variables substituted

    Raises:
        ValueError: If a referenced environment variable is not set
    """

    def replacer(match: re.Match[str]) -> str:
        var_name = match.group(1)
        value = os.environ.get(var_name)
        if value is None:
            raise ValueError(f"Environment variable {var_name} not found")
        return value

    return re.sub(r"\$\{([^}]+)\}", replacer, text)


def load_config(path: Path | None = None) -> TriageConfig:
    """
    Load configuration from a YAML file, or from the environment alone.

    Args:
        path: Path to YAML configuration file. When None, settings come from
            ``TRIAGE_*`` environment variables and ``.env`` only.

    Returns:
        Validated TriageConfig instance

    Raises:
        FileNotFoundError: If the config file doesn't exist
        ValueError: If environment variables are missing or the config is inconsistent
        pydantic.ValidationError: If the config doesn't match the schema
    """
    if path is None:
        config = TriageConfig()
        validate_config(config)
        return config

    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {path}")

    with path.open() as f:
        raw_yaml = f.read()

    yaml_with_env = substitute_env_vars(raw_yaml)
    config_dict = yaml.safe_load(yaml_with_env) or {}

    config = TriageConfig.model_validate(config_dict)
    validate_config(config)

    return config


def validate_config(config: TriageConfig) -> None:
    """
    Perform cross-field validation.

    Ensures the field the selected issue source needs is present.

    Args:
        config: Configuration to validate

    Raises:
        ValueError: If source-specific settings are missing
    """
    source = config.source
    if source.kind == "command" and not source.command:
        raise ValueError("Command source selected but source.command is empty")
    if source.kind == "http" and not source.url:
        raise ValueError("HTTP source selected but source.url missing")
    if source.kind == "file" and source.path is None:
        raise ValueError("File source selected but source.path missing")
