"""Configuration loading, environment overrides, and logging setup."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import TYPE_CHECKING, Any

import yaml

from scriptharness.models import HarnessConfig

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

# ---------------------------------------------------------------------------
# YAML loading
# ---------------------------------------------------------------------------


def load_config(path: str | None) -> HarnessConfig:
    """Load a ``HarnessConfig`` from a YAML file, or defaults when *path* is None.

    Args:
        path: Path to a YAML mapping of ``HarnessConfig`` fields.

    Returns:
        The validated configuration.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the file is not valid YAML or does not parse to a mapping.
        pydantic.ValidationError: If a field fails validation.
    """
    if path is None:
        return HarnessConfig()

    file_path = Path(path)
    if not file_path.exists():
        msg = f"config file not found: {path}"
        raise FileNotFoundError(msg)

    with open(file_path, encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as exc:
            msg = f"config file is not valid YAML: {path}"
            raise ValueError(msg) from exc

    if data is None:
        data = {}
    if not isinstance(data, dict):
        msg = f"config file must contain a YAML mapping, got {type(data).__name__}"
        raise ValueError(msg)

    return HarnessConfig(**data)


# ---------------------------------------------------------------------------
# Environment variable support
# ---------------------------------------------------------------------------


def _positive_int(raw: str) -> int | None:
    try:
        value = int(raw)
    except ValueError:
        return None
    return value if value >= 1 else None


def _non_empty(raw: str) -> str | None:
    return raw or None


_ENV_OVERRIDES: dict[str, tuple[str, Callable[[str], Any]]] = {
    "SCRIPTHARNESS_TIMEOUT_MS": ("timeout_ms", _positive_int),
    "SCRIPTHARNESS_LOG_LEVEL": ("log_level", _non_empty),
    "SCRIPTHARNESS_FRAMEWORK_FILE": ("framework_file", _non_empty),
}


def apply_env_overrides(
    config: HarnessConfig, environ: Mapping[str, str] | None = None
) -> HarnessConfig:
    """Fill fields the config file left unset from ``SCRIPTHARNESS_*`` variables.

    A field that was given explicitly keeps its value, even when that value
    equals the default. Values that do not parse are ignored.

    Args:
        config: Configuration loaded from file or flags.
        environ: Variables to read; ``os.environ`` when omitted.
    """
    env = os.environ if environ is None else environ
    overrides: dict[str, Any] = {}
    for var, (field_name, parse) in _ENV_OVERRIDES.items():
        if field_name in config.model_fields_set or var not in env:
            continue
        value = parse(env[var])
        if value is not None:
            overrides[field_name] = value
    return config.model_copy(update=overrides) if overrides else config


# ---------------------------------------------------------------------------
# Logging configuration
# ---------------------------------------------------------------------------

_LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s - %(message)s"


def configure_logging(config: HarnessConfig) -> None:
    """Set the ``scriptharness`` logger level and attach its handlers once.

    A console handler is always present; ``log_file`` adds a file handler.
    """
    harness_logger = logging.getLogger("scriptharness")
    level = logging.getLevelNamesMapping().get(config.log_level.upper(), logging.INFO)
    harness_logger.setLevel(level)

    handlers = harness_logger.handlers
    missing: list[logging.Handler] = []
    if not any(type(h) is logging.StreamHandler for h in handlers):
        missing.append(logging.StreamHandler())
    if config.log_file is not None:
        log_path = os.path.abspath(config.log_file)
        if not any(getattr(h, "baseFilename", None) == log_path for h in handlers):
            missing.append(logging.FileHandler(log_path, encoding="utf-8"))

    formatter = logging.Formatter(_LOG_FORMAT)
    for handler in missing:
        handler.setFormatter(formatter)
        harness_logger.addHandler(handler)
