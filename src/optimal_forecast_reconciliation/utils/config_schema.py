"""Configuration schema validation for the reconciliation engine.

This module provides schema validation for configuration files, ensuring all
required parameters are present and have valid types and values.
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict

from ..exceptions import ConfigurationError

logger = logging.getLogger(__name__)

COVARIANCE_METHODS = ['identity', 'structural', 'sample', 'shrink', 'diagonal']


class ConfigSchema:
    """Configuration schema with validation rules."""

    @staticmethod
    def get_base_schema() -> Dict[str, Any]:
        """
        Get the base configuration schema definition.

        Returns:
            Dictionary defining the complete configuration schema with validation rules.
        """
        return {
            'structure': {
                'required': False,
                'type': dict,
                'default': {},
                'schema': {
                    'representation': {
                        'required': False,
                        'type': str,
                        'allowed': ['auto', 'zero_constraint', 'summing'],
                        'default': 'auto'
                    },
                    'temporal': {
                        'required': False,
                        'type': dict,
                        'nullable': True,
                        'default': None,
                        'schema': {
                            'max_frequency': {'required': True, 'type': int, 'min': 1, 'max': 8784},
                            'orders': {
                                'required': False,
                                'type': list,
                                'nullable': True,
                                'default': None,
                                'validator': 'validate_orders'
                            }
                        }
                    }
                }
            },
            'reconciliation': {
                'required': True,
                'type': dict,
                'schema': {
                    'covariance': {
                        'required': False,
                        'type': str,
                        'allowed': COVARIANCE_METHODS,
                        'default': 'shrink'
                    },
                    'fallback': {
                        'required': False,
                        'type': list,
                        'allowed': COVARIANCE_METHODS,
                        'default': []
                    },
                    'block_diagonal': {
                        'required': False,
                        'type': (bool, str),
                        'allowed': [False, True, 'order', 'series'],
                        'default': False
                    },
                    'allow_pseudo_inverse': {'required': False, 'type': bool, 'default': False},
                    'rcond': {'required': False, 'type': float, 'min': 0.0, 'max': 1.0, 'default': 1e-12}
                }
            },
            'nonnegativity': {
                'required': True,
                'type': dict,
                'schema': {
                    'enabled': {'required': False, 'type': bool, 'default': True},
                    'method': {
                        'required': False,
                        'type': str,
                        'allowed': ['exact', 'iterative_zero', 'set_negative_to_zero'],
                        'default': 'iterative_zero'
                    },
                    'tolerance': {'required': False, 'type': float, 'min': 0.0, 'max': 1.0, 'default': 1e-8},
                    'max_iter': {'required': False, 'type': int, 'min': 1, 'max': 1000000, 'default': 1000},
                    'qp_solver': {
                        'required': False,
                        'type': str,
                        'allowed': ['bvls', 'trf'],
                        'default': 'bvls'
                    }
                }
            },
            'probabilistic': {
                'required': False,
                'type': dict,
                'default': {},
                'schema': {
                    'n_samples': {'required': False, 'type': int, 'min': 1, 'max': 1000000, 'default': 500},
                    'n_jobs': {'required': False, 'type': int, 'min': 1, 'max': 256, 'default': 1},
                    'chunk_size': {'required': False, 'type': int, 'min': 1, 'default': 256},
                    'failure_policy': {
                        'required': False,
                        'type': str,
                        'allowed': ['raise', 'exclude', 'fallback'],
                        'default': 'exclude'
                    }
                }
            },
            'logging': {
                'required': False,
                'type': dict,
                'default': {},
                'schema': {
                    'level': {
                        'required': False,
                        'type': str,
                        'allowed': ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
                        'default': 'INFO'
                    },
                    'file': {
                        'required': False,
                        'type': str,
                        'nullable': True,
                        'default': None,
                        'validator': 'validate_log_file_path'
                    },
                    'format': {
                        'required': False,
                        'type': str,
                        'default': '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
                    }
                }
            },
            'reproducibility': {
                'required': False,
                'type': dict,
                'default': {},
                'schema': {
                    'seed': {'required': False, 'type': int, 'min': 0, 'default': 42}
                }
            }
        }

    @staticmethod
    def validate_orders(field: str, value: Any) -> bool:
        """
        Validate a list of temporal aggregation orders.

        Divisibility by the maximum frequency is checked when the temporal
        structure is built.

        Raises:
            ValueError: If orders are not unique positive integers including 1.
        """
        if value is None:
            return True
        if not all(isinstance(k, int) and not isinstance(k, bool) and k >= 1 for k in value):
            raise ValueError(f"{field} must contain positive integers")
        if len(set(value)) != len(value):
            raise ValueError(f"{field} contains duplicate orders")
        if 1 not in value:
            raise ValueError(f"{field} must include order 1")
        return True

    @staticmethod
    def validate_log_file_path(field: str, value: Any) -> bool:
        """
        Validate log file path.

        Raises:
            ValueError: If the parent directory is not writable.
        """
        if value is None:
            return True

        path = Path(value)
        if path.parent.exists() and not os.access(path.parent, os.W_OK):
            raise ValueError(f"{field} parent directory is not writable: {path.parent}")

        return True


class ConfigValidator:
    """Configuration validator using the defined schema."""

    def __init__(self):
        self.schema = ConfigSchema.get_base_schema()
        self.logger = logging.getLogger(__name__)

    def validate(self, config: Dict[str, Any]) -> Dict[str, Any]:
        """
        Validate and normalize configuration.

        Args:
            config: Configuration dictionary to validate.

        Returns:
            Validated configuration with defaults applied.

        Raises:
            ConfigurationError: If configuration is invalid.
        """
        try:
            validated_config = self._validate_recursive(dict(config), self.schema, "root")
        except (TypeError, ValueError) as e:
            error_msg = f"Configuration validation failed: {e}"
            self.logger.error(error_msg)
            raise ConfigurationError(error_msg) from e

        self.logger.info("Configuration validation successful")
        return validated_config

    def _validate_recursive(self, config: Dict[str, Any], schema: Dict[str, Any], path: str) -> Dict[str, Any]:
        """
        Recursively validate configuration against schema.

        Args:
            config: Configuration section to validate.
            schema: Schema definition for this section.
            path: Current validation path for error messages.

        Returns:
            Validated configuration section.
        """
        validated = {}

        for field, field_schema in schema.items():
            field_path = f"{path}.{field}"

            if field_schema.get('required', False) and field not in config:
                raise ValueError(f"Required field missing: {field_path}")

            if field in config:
                value = config[field]
            elif 'default' in field_schema:
                default = field_schema['default']
                value = type(default)(default) if isinstance(default, (dict, list)) else default
            else:
                continue

            validated[field] = self._validate_field(value, field_schema, field_path)

        unknown_fields = set(config.keys()) - set(schema.keys())
        if unknown_fields:
            self.logger.warning(f"Unknown configuration fields in {path}: {unknown_fields}")

        return validated

    def _validate_field(self, value: Any, field_schema: Dict[str, Any], path: str) -> Any:
        """
        Validate a single configuration field.

        Args:
            value: Value to validate.
            field_schema: Schema definition for the field.
            path: Field path for error messages.

        Returns:
            Validated value.
        """
        if value is None and field_schema.get('nullable', False):
            return None

        expected_type = field_schema.get('type')
        # YAML reads "1e-8" (no decimal point) as a string
        if expected_type is float and isinstance(value, (int, str)) and not isinstance(value, bool):
            try:
                value = float(value)
            except ValueError:
                raise ValueError(f"{path} must be a number, got {value!r}") from None
        if expected_type and not isinstance(value, expected_type):
            names = getattr(expected_type, '__name__', None) or "/".join(t.__name__ for t in expected_type)
            raise ValueError(f"{path} must be of type {names}, got {type(value).__name__}")
        if expected_type is int and isinstance(value, bool):
            raise ValueError(f"{path} must be of type int, got bool")

        if isinstance(value, (int, float)) and not isinstance(value, bool):
            min_val = field_schema.get('min')
            max_val = field_schema.get('max')

            if min_val is not None and value < min_val:
                raise ValueError(f"{path} must be >= {min_val}, got {value}")
            if max_val is not None and value > max_val:
                raise ValueError(f"{path} must be <= {max_val}, got {value}")

        allowed = field_schema.get('allowed')
        if allowed is not None:
            if isinstance(value, list):
                invalid_items = [item for item in value if item not in allowed]
                if invalid_items:
                    raise ValueError(f"{path} contains invalid items {invalid_items}, allowed: {allowed}")
            elif value not in allowed:
                raise ValueError(f"{path} must be one of {allowed}, got {value}")

        validator_name = field_schema.get('validator')
        if validator_name:
            validator_func = getattr(ConfigSchema, validator_name, None)
            if validator_func:
                validator_func(path, value)
            else:
                self.logger.warning(f"Unknown validator: {validator_name}")

        nested_schema = field_schema.get('schema')
        if nested_schema and isinstance(value, dict):
            return self._validate_recursive(value, nested_schema, path)

        return value
