"""Bridge configuration loading and validation.

Reads ``hassbridge.toml``, resolves ``${VAR}`` references from the
environment, and returns a validated BridgeConfig dataclass. The
``[home_assistant]`` section is validated by the module's own pydantic
schema.
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from hassbridge.modules.home_assistant import HomeAssistantConfig

DEFAULT_CONFIG_FILE = "hassbridge.toml"
DEFAULT_PORT = 40300
DEFAULT_STATE_DIR = "~/.hassbridge"

# Pattern matching ${VAR_NAME}, alphanumeric + underscore variable names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")
_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
_LOG_FORMATS = ("text", "json")


class ConfigError(Exception):
    """Raised when bridge configuration is missing, malformed, or invalid."""


@dataclass
class LoggingConfig:
    """Logging configuration from [bridge.logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class BridgeConfig:
    """Parsed and validated bridge configuration."""

    name: str = "hassbridge"
    port: int = DEFAULT_PORT
    state_dir: Path = field(default_factory=lambda: Path(DEFAULT_STATE_DIR).expanduser())
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    home_assistant: HomeAssistantConfig = field(default_factory=HomeAssistantConfig)
    source: Path | None = None


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings. Non-string leaf values (int, bool,
    float) are returned unchanged.

    Raises
    ------
    ConfigError
        If a referenced environment variable is not set.
    """
    if isinstance(value, dict):
        return {k: resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [resolve_env_vars(item) for item in value]

    if isinstance(value, str):
        return _resolve_string(value)

    return value


def _resolve_string(s: str) -> str:
    """Replace all ``${VAR_NAME}`` occurrences in *s* with env var values.

    Collects all missing variable names and reports them in a single error.
    The original value is not echoed since it may hold a secret.
    """
    missing: list[str] = []

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        env_value = os.environ.get(var_name)
        if env_value is None:
            missing.append(var_name)
            return match.group(0)
        return env_value

    result = _ENV_VAR_PATTERN.sub(_replace, s)

    if missing:
        raise ConfigError(f"Unresolved environment variable(s) in config: {', '.join(missing)}")

    return result


def _parse_logging(bridge_section: dict[str, Any]) -> LoggingConfig:
    section = bridge_section.get("logging", {})
    if not isinstance(section, dict):
        raise ConfigError("bridge.logging must be a TOML table")

    level = str(section.get("level", "INFO")).upper()
    if level not in _LOG_LEVELS:
        raise ConfigError(f"bridge.logging.level must be one of {', '.join(_LOG_LEVELS)}")

    fmt = str(section.get("format", "text")).lower()
    if fmt not in _LOG_FORMATS:
        raise ConfigError("bridge.logging.format must be 'text' or 'json'")

    log_root = section.get("log_root")
    if log_root is not None and not isinstance(log_root, str):
        raise ConfigError("bridge.logging.log_root must be a string when set")

    return LoggingConfig(level=level, format=fmt, log_root=log_root or None)


def _format_validation_error(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        loc = ".".join(str(p) for p in error.get("loc", ()))
        parts.append(f"home_assistant.{loc}: {error.get('msg')}" if loc else str(error.get("msg")))
    return "; ".join(parts)


def parse_config(data: dict[str, Any], source: Path | None = None) -> BridgeConfig:
    """Validate an already-parsed TOML document."""
    data = resolve_env_vars(data)

    bridge_section = data.get("bridge")
    if not isinstance(bridge_section, dict):
        raise ConfigError("Missing [bridge] section in config")

    name = bridge_section.get("name", "hassbridge")
    if not isinstance(name, str) or not name.strip():
        raise ConfigError("bridge.name must be a non-empty string")

    port = bridge_section.get("port", DEFAULT_PORT)
    if isinstance(port, bool) or not isinstance(port, int) or not 0 < port < 65536:
        raise ConfigError("bridge.port must be an integer between 1 and 65535")

    state_dir = bridge_section.get("state_dir", DEFAULT_STATE_DIR)
    if not isinstance(state_dir, str) or not state_dir.strip():
        raise ConfigError("bridge.state_dir must be a non-empty string")

    ha_section = data.get("home_assistant", {})
    if not isinstance(ha_section, dict):
        raise ConfigError("home_assistant must be a TOML table")
    try:
        home_assistant = HomeAssistantConfig.model_validate(ha_section)
    except ValidationError as exc:
        raise ConfigError(_format_validation_error(exc)) from exc

    return BridgeConfig(
        name=name.strip(),
        port=port,
        state_dir=Path(state_dir).expanduser(),
        logging=_parse_logging(bridge_section),
        home_assistant=home_assistant,
        source=source,
    )


def load_config(path: Path | str = DEFAULT_CONFIG_FILE) -> BridgeConfig:
    """Load and validate a ``hassbridge.toml``.

    Parameters
    ----------
    path:
        Path to the TOML file.

    Returns
    -------
    BridgeConfig
        Fully parsed and validated configuration.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, references unset
        environment variables, or fails validation.
    """
    toml_path = Path(path).expanduser()

    if not toml_path.is_file():
        raise ConfigError(f"Config file not found: {toml_path}")

    try:
        data = tomllib.loads(toml_path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    return parse_config(data, source=toml_path)
