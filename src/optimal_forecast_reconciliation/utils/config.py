"""Configuration loading, logging setup and random streams for reconciliation runs."""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import numpy as np
import yaml

from ..exceptions import ConfigurationError
from .config_schema import ConfigValidator

DEFAULT_CONFIG_PATH = Path(__file__).parent.parent.parent.parent / "configs" / "default.yaml"
DEFAULT_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

REQUIRED_SECTIONS = ("reconciliation", "nonnegativity")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

logger = logging.getLogger(__name__)


def load_config(
    config_path: Optional[Union[str, Path]] = None,
    validate_schema: bool = True
) -> Dict[str, Any]:
    """
    Read a reconciliation configuration from YAML.

    The ``reconciliation`` and ``nonnegativity`` sections must be present;
    schema validation fills in every other section with its defaults.

    Args:
        config_path: Path to configuration file. If None, uses default config.
        validate_schema: Whether to validate against the schema and apply defaults.

    Returns:
        Configuration dictionary.

    Raises:
        FileNotFoundError: If config file is not found.
        yaml.YAMLError: If YAML parsing fails.
        ConfigurationError: If the file is empty, not a mapping, misses a
            required section or fails validation.
    """
    path = Path(config_path) if config_path is not None else DEFAULT_CONFIG_PATH
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {path}")

    with open(path, 'r', encoding='utf-8') as f:
        config = yaml.safe_load(f)

    if config is None:
        raise ConfigurationError(f"Configuration file is empty: {path}")
    if not isinstance(config, dict):
        raise ConfigurationError(
            f"Configuration root must be a mapping: {path}",
            context={"type": type(config).__name__},
        )

    missing = [section for section in REQUIRED_SECTIONS if section not in config]
    if missing:
        raise ConfigurationError(
            f"Missing required configuration sections: {missing}",
            context={"path": str(path)},
        )

    if validate_schema:
        config = ConfigValidator().validate(config)

    logger.info(f"Configuration loaded from {path}")
    return config


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    format_string: Optional[str] = None,
    console: bool = True
) -> None:
    """
    Configure the root logger for a reconciliation run.

    Existing root handlers are detached. Python warnings (such as
    ``FeasibilityWarning``) are routed through the ``py.warnings`` logger so
    they land in the same log file.

    Args:
        level: Logging level name, case-insensitive.
        log_file: Also write to this file; parent directories are created.
        format_string: Record format; defaults to ``DEFAULT_LOG_FORMAT``.
        console: Whether to log to stderr.

    Raises:
        ValueError: If invalid logging level is provided.
    """
    level_name = level.upper()
    if level_name not in LOG_LEVELS:
        raise ValueError(f"Invalid logging level: {level}")

    handlers: List[logging.Handler] = []
    if console:
        handlers.append(logging.StreamHandler())
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path, encoding='utf-8'))

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
    logging.basicConfig(level=level_name, format=format_string or DEFAULT_LOG_FORMAT, handlers=handlers)
    logging.captureWarnings(True)

    destination = f", writing to {log_file}" if log_file else ""
    logger.info(f"Logging configured at {level_name}{destination}")


def spawn_generators(seed: Optional[int], count: int = 1) -> List[np.random.Generator]:
    """
    Independent random streams derived from one seed.

    Stream ``i`` only depends on ``seed`` and ``i``, so a run that reconciles
    more forecast columns draws the same samples for the columns it shares
    with a smaller run.

    Args:
        seed: Root seed; None draws fresh entropy.
        count: Number of streams.

    Returns:
        ``count`` generators, one per stream.

    Raises:
        ConfigurationError: If ``count`` is not positive.
    """
    if count < 1:
        raise ConfigurationError(f"count must be a positive integer, got {count}")

    children = np.random.SeedSequence(seed).spawn(count)
    logger.debug(f"Spawned {count} random streams from seed {seed}")
    return [np.random.default_rng(child) for child in children]
