"""Configuration loading, schema validation and typed worker settings."""

import os
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional
from dataclasses import dataclass

import yaml

logger = logging.getLogger(__name__)


@dataclass
class ConfigValidationError:
    """Represents a configuration validation error."""
    path: str
    message: str


class ConfigValidationException(Exception):
    """Raised when config validation fails."""

    def __init__(self, errors: List[ConfigValidationError]):
        self.errors = errors
        messages = [f"{e.path}: {e.message}" for e in errors]
        super().__init__("Configuration validation failed:\n" + "\n".join(messages))


def _opt(type_name: str, **rules) -> Dict[str, Any]:
    return {"type": type_name, "required": False, **rules}


def _section(**properties) -> Dict[str, Any]:
    return {"type": "dict", "required": False, "properties": properties}


# Configuration schema definition
CONFIG_SCHEMA = {
    "server": _section(
        host=_opt("str"),
        port=_opt("int", min=1, max=65535),
        debug=_opt("bool"),
    ),
    "worker": _section(
        enabled=_opt("bool"),
        interval_seconds=_opt("float", min=0.1),
        max_bots_per_tick=_opt("int", min=1),
        order_max_retries=_opt("int", min=1),
        order_backoff_base_ms=_opt("int", min=0),
        order_backoff_max_ms=_opt("int", min=0),
        stop_max_retries=_opt("int", min=1),
        stop_backoff_base_ms=_opt("int", min=0),
        stop_backoff_max_ms=_opt("int", min=0),
        price_precision=_opt("int", min=0, max=18),
        amount_precision=_opt("int", min=0, max=18),
    ),
    "exchange": _section(
        exchange_id=_opt("str"),
        api_key=_opt("str"),
        api_secret=_opt("str"),
        sandbox_mode=_opt("bool"),
        allow_mainnet=_opt("bool"),
        dry_run=_opt("bool"),
        config_path=_opt("str"),
    ),
    "logging": _section(
        level=_opt("str", options=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]),
        format=_opt("str"),
    ),
}

_TYPE_MAP = {
    "str": str,
    "int": int,
    "float": (int, float),
    "bool": bool,
    "list": list,
    "dict": dict,
}


class ConfigService:
    """Service for loading and validating configuration."""

    def __init__(self, config_path: Optional[str] = None):
        """Initialize config service.

        Args:
            config_path: Path to config file. Defaults to $STRATEGYHUB_CONFIG,
                then backend/config.yaml.
        """
        if config_path is None:
            config_path = os.environ.get("STRATEGYHUB_CONFIG")
        if config_path is None:
            backend_dir = Path(__file__).parent.parent.parent
            config_path = str(backend_dir / "config.yaml")

        self.config_path = config_path
        self._config: Dict[str, Any] = {}

    def load_and_validate(self) -> Dict[str, Any]:
        """Load and validate the configuration file.

        A missing file is not an error: every setting has a default.

        Returns:
            Validated configuration dictionary.

        Raises:
            ConfigValidationException: If the YAML is malformed or fails the schema.
        """
        if not os.path.exists(self.config_path):
            logger.warning(f"Config file not found at {self.config_path}, using defaults")
            self._config = {}
            return self._config

        try:
            with open(self.config_path, "r") as f:
                config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigValidationException([ConfigValidationError("", f"Invalid YAML syntax: {e}")])

        config = self.validate(config if config is not None else {})
        self._config = config
        logger.info(f"Configuration loaded and validated from {self.config_path}")
        return config

    def validate(self, config: Any) -> Dict[str, Any]:
        """Validate an already-parsed config against CONFIG_SCHEMA."""
        if not isinstance(config, dict):
            raise ConfigValidationException([
                ConfigValidationError("", f"Config must be a dictionary, got {type(config).__name__}")
            ])

        errors = self._validate_dict(config, CONFIG_SCHEMA, "")
        if errors:
            raise ConfigValidationException(errors)
        return config

    def _validate_dict(self, data: Dict[str, Any], schema: Dict[str, Any], path: str) -> List[ConfigValidationError]:
        errors = []

        for key in data:
            if key not in schema:
                errors.append(ConfigValidationError(_join(path, key), f"Unknown configuration key '{key}'"))

        for key, prop_schema in schema.items():
            current_path = _join(path, key)
            if key in data:
                errors.extend(self._validate_value(data[key], prop_schema, current_path))
            elif prop_schema.get("required", False):
                errors.append(ConfigValidationError(current_path, "Required field missing"))

        return errors

    def _validate_value(self, value: Any, schema: Dict[str, Any], path: str) -> List[ConfigValidationError]:
        expected_type = schema.get("type")

        if expected_type == "dict":
            if not isinstance(value, dict):
                return [ConfigValidationError(path, f"Expected dict, got {type(value).__name__}")]
            return self._validate_dict(value, schema.get("properties", {}), path)

        expected = _TYPE_MAP.get(expected_type)
        if expected is None:
            return []

        # bool is an int subclass; reject it for numeric fields
        is_numeric = expected_type in ("int", "float")
        if not isinstance(value, expected) or (is_numeric and isinstance(value, bool)):
            return [ConfigValidationError(path, f"Expected {expected_type}, got {type(value).__name__}")]

        errors = []
        if is_numeric:
            if "min" in schema and value < schema["min"]:
                errors.append(ConfigValidationError(path, f"Value {value} is below minimum {schema['min']}"))
            if "max" in schema and value > schema["max"]:
                errors.append(ConfigValidationError(path, f"Value {value} is above maximum {schema['max']}"))

        if "options" in schema and value not in schema["options"]:
            errors.append(ConfigValidationError(
                path, f"Value '{value}' not in allowed options: {schema['options']}"
            ))
        return errors

    def get(self, key: str, default: Any = None) -> Any:
        """Get a configuration value.

        Args:
            key: Dot-notation key (e.g., "worker.interval_seconds")
            default: Default value if not found

        Returns:
            Configuration value
        """
        value = self._config
        for k in key.split("."):
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default
        return value

    def worker_settings(self) -> "WorkerSettings":
        return WorkerSettings.from_config(self)


def _join(path: str, key: str) -> str:
    return f"{path}.{key}" if path else key


@dataclass
class WorkerSettings:
    """Tunables for the worker loop and its processors."""
    enabled: bool = False
    interval_seconds: float = 5.0
    max_bots_per_tick: int = 50
    order_max_retries: int = 5
    order_backoff_base_ms: int = 1000
    order_backoff_max_ms: int = 30000
    stop_max_retries: int = 5
    stop_backoff_base_ms: int = 1000
    stop_backoff_max_ms: int = 30000
    price_precision: int = 2
    amount_precision: int = 8

    @classmethod
    def from_config(cls, config: ConfigService) -> "WorkerSettings":
        defaults = cls()
        values = {
            name: config.get(f"worker.{name}", getattr(defaults, name))
            for name in cls.__dataclass_fields__
        }
        return cls(**values)


# Global config service instance
config_service = ConfigService()
