"""Utility modules for forecast reconciliation."""

from .config import load_config, setup_logging, spawn_generators
from .config_schema import ConfigSchema, ConfigValidator
from .logging_utils import PerformanceLogger, StructuredLogger, log_function_call
from .type_validation import select_series, validate_numeric_frame

__all__ = [
    "load_config",
    "setup_logging",
    "spawn_generators",
    "ConfigSchema",
    "ConfigValidator",
    "PerformanceLogger",
    "StructuredLogger",
    "log_function_call",
    "select_series",
    "validate_numeric_frame",
]
