"""
Custody Registry Configuration

Configuration with YAML files, environment variables, validation and
runtime overrides.

Configuration Sources (in order of precedence):
    1. Environment variables (CUSTODY_*)
    2. Runtime overrides (ConfigManager.set)
    3. Config files (explicit path, ./custody.yaml, ./config/custody.yaml,
       ~/.custody/config.yaml)
    4. Default values

Unlike a process-wide singleton, each RegistryService owns its own
RegistryConfig; two registries in one process never share settings.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar, Union

import yaml

from custody.observability import RegistryLayer, get_logger

T = TypeVar("T")

logger = get_logger("config", RegistryLayer.CONFIG)

LOG_LEVELS = ("debug", "info", "warning", "error", "critical")


class ConfigError(Exception):
    """Configuration error."""
    pass


class ConfigValidationError(ConfigError):
    """Configuration validation error."""
    pass


@dataclass
class ConfigValue(Generic[T]):
    """
    A single configuration value with metadata.

    Supports default values, environment variable binding,
    validation, and change callbacks.
    """
    default: T
    env_var: Optional[str] = None
    description: str = ""
    validator: Optional[Callable[[T], bool]] = None
    secret: bool = False
    _value: Optional[T] = field(default=None, repr=False)
    _callbacks: List[Callable[[Optional[T], T], None]] = field(default_factory=list, repr=False)

    def get(self) -> T:
        """Get the current value."""
        if self.env_var and self.env_var in os.environ:
            return self._coerce(os.environ[self.env_var])
        return self._value if self._value is not None else self.default

    def set(self, value: T) -> None:
        """Set the value with validation."""
        if isinstance(value, str) and not isinstance(self.default, str):
            value = self._coerce(value)
        if self.validator and not self.validator(value):
            raise ConfigValidationError(f"Invalid value for config: {value!r}")

        old_value = self._value
        self._value = value

        for callback in self._callbacks:
            callback(old_value, value)

    def reset(self) -> None:
        self._value = None

    def _coerce(self, value: str) -> T:
        """Coerce string value to target type."""
        target_type = type(self.default)

        try:
            if target_type == bool:
                return value.strip().lower() in ("true", "1", "yes", "on")  # type: ignore
            elif target_type == int:
                return int(value)  # type: ignore
            elif target_type == Decimal:
                return Decimal(value)  # type: ignore
            elif target_type == list:
                return [v.strip() for v in value.split(",") if v.strip()]  # type: ignore
        except (ValueError, ArithmeticError) as e:
            raise ConfigValidationError(
                f"Cannot coerce {value!r} to {target_type.__name__} ({self.env_var or 'value'})"
            ) from e
        return value  # type: ignore

    def on_change(self, callback: Callable[[Optional[T], T], None]) -> None:
        """Register a change callback."""
        self._callbacks.append(callback)


@dataclass
class RegistrySection:
    """Behaviour of the registry core."""
    admin_role: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="admin",
        env_var="CUSTODY_ADMIN_ROLE",
        description="Role recorded for the admin identity at initialization",
        validator=lambda x: isinstance(x, str) and bool(x.strip()),
    ))
    genesis_action: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="Product Manufactured",
        env_var="CUSTODY_GENESIS_ACTION",
        description="Action label of the synthetic first history step",
        validator=lambda x: isinstance(x, str) and bool(x.strip()),
    ))
    genesis_notes: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="Initial product registration",
        env_var="CUSTODY_GENESIS_NOTES",
        description="Notes of the synthetic first history step",
        validator=lambda x: isinstance(x, str),
    ))
    verify_history_on_read: ConfigValue[bool] = field(default_factory=lambda: ConfigValue(
        default=False,
        env_var="CUSTODY_VERIFY_HISTORY_ON_READ",
        description="Recompute the history hash chain on every verifyProduct call",
        validator=lambda x: isinstance(x, bool),
    ))


@dataclass
class EventsSection:
    """Notification recording."""
    record_notifications: ConfigValue[bool] = field(default_factory=lambda: ConfigValue(
        default=True,
        env_var="CUSTODY_RECORD_NOTIFICATIONS",
        description="Append every notification to the in-memory event store",
        validator=lambda x: isinstance(x, bool),
    ))
    max_stored_notifications: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=100000,
        env_var="CUSTODY_MAX_STORED_NOTIFICATIONS",
        description="Notifications kept in the event store before the oldest are dropped",
        validator=lambda x: isinstance(x, int) and x > 0,
    ))


@dataclass
class ObservabilitySection:
    """Logging output."""
    log_level: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="info",
        env_var="CUSTODY_LOG_LEVEL",
        description="Log level (debug, info, warning, error, critical)",
        validator=lambda x: x in LOG_LEVELS,
    ))
    log_format: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="json",
        env_var="CUSTODY_LOG_FORMAT",
        description="Log format (json, text)",
        validator=lambda x: x in ("json", "text"),
    ))


@dataclass
class AttestationSection:
    """Provenance report signing."""
    issuer_kid: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="key-1",
        env_var="CUSTODY_ISSUER_KID",
        description="Key id appended to did:key verification methods",
        validator=lambda x: isinstance(x, str) and bool(x.strip()),
    ))
    report_type: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="ProductProvenanceReport",
        env_var="CUSTODY_REPORT_TYPE",
        description="Document type written into provenance reports",
        validator=lambda x: isinstance(x, str) and bool(x.strip()),
    ))


@dataclass
class RegistryConfig:
    """
    Root configuration for a custody registry.

    Aggregates all section configurations.
    """
    registry: RegistrySection = field(default_factory=RegistrySection)
    events: EventsSection = field(default_factory=EventsSection)
    observability: ObservabilitySection = field(default_factory=ObservabilitySection)
    attestation: AttestationSection = field(default_factory=AttestationSection)

    def to_dict(self) -> Dict[str, Any]:
        def extract_values(obj: Any) -> Any:
            if isinstance(obj, ConfigValue):
                return obj.get()
            elif hasattr(obj, "__dataclass_fields__"):
                return {k: extract_values(getattr(obj, k)) for k in obj.__dataclass_fields__}
            return obj

        return extract_values(self)

    def to_yaml(self) -> str:
        return yaml.safe_dump(self.to_dict(), default_flow_style=False, sort_keys=True)


class ConfigManager:
    """Loads, overrides and validates a RegistryConfig."""

    DEFAULT_PATHS = (
        Path("custody.yaml"),
        Path("config/custody.yaml"),
        Path.home() / ".custody" / "config.yaml",
    )

    def __init__(self, config: Optional[RegistryConfig] = None):
        self._config = config or RegistryConfig()
        self._config_paths: List[Path] = []

    @property
    def config(self) -> RegistryConfig:
        return self._config

    @property
    def loaded_paths(self) -> List[Path]:
        return list(self._config_paths)

    def load_from_file(self, path: Union[str, Path]) -> None:
        """Load configuration from a YAML file."""
        path = Path(path)
        if not path.exists():
            raise ConfigError(f"Configuration file not found: {path}")

        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}") from e

        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ConfigError(f"Configuration root must be a mapping: {path}")

        self._apply_dict(data)
        self._config_paths.append(path)
        logger.info("configuration loaded", operation="load_config", path=str(path))

    def load_defaults(self) -> List[Path]:
        """Load every default config file that exists, in order."""
        loaded: List[Path] = []
        for path in self.DEFAULT_PATHS:
            if path.exists():
                self.load_from_file(path)
                loaded.append(path)
        return loaded

    def _apply_dict(self, data: Dict[str, Any]) -> None:
        def apply_to_config(config_obj: Any, values: Dict[str, Any]) -> None:
            for key, value in values.items():
                if not hasattr(config_obj, key):
                    logger.debug("ignoring unknown config key", key=key)
                    continue
                attr = getattr(config_obj, key)
                if isinstance(attr, ConfigValue):
                    attr.set(value)
                elif hasattr(attr, "__dataclass_fields__") and isinstance(value, dict):
                    apply_to_config(attr, value)

        apply_to_config(self._config, data)

    def _resolve(self, path: str) -> Any:
        obj: Any = self._config
        for part in path.split("."):
            if not hasattr(obj, part):
                raise ConfigError(f"Invalid config path: {path}")
            obj = getattr(obj, part)
        return obj

    def set(self, path: str, value: Any) -> None:
        """
        Set a configuration value by path.

        Example: manager.set("registry.verify_history_on_read", True)
        """
        attr = self._resolve(path)
        if not isinstance(attr, ConfigValue):
            raise ConfigError(f"Invalid config path: {path}")
        attr.set(value)

    def get(self, path: str) -> Any:
        """
        Get a configuration value by path.

        Example: manager.get("observability.log_level")
        """
        obj = self._resolve(path)
        if isinstance(obj, ConfigValue):
            return obj.get()
        return obj

    def validate(self) -> List[str]:
        """Validate all configuration values. Returns a list of errors."""
        errors: List[str] = []

        def validate_config(obj: Any, path: str = "") -> None:
            if isinstance(obj, ConfigValue):
                try:
                    value = obj.get()
                    if obj.validator and not obj.validator(value):
                        errors.append(f"{path}: validation failed for value {value!r}")
                except ConfigError as e:
                    errors.append(f"{path}: {e}")
            elif hasattr(obj, "__dataclass_fields__"):
                for field_name in obj.__dataclass_fields__:
                    field_path = f"{path}.{field_name}" if path else field_name
                    validate_config(getattr(obj, field_name), field_path)

        validate_config(self._config)
        return errors

    def export_schema(self) -> Dict[str, Any]:
        """Export configuration schema for documentation."""
        schema: Dict[str, Any] = {"properties": {}}

        def extract_schema(obj: Any, properties: Dict[str, Any]) -> None:
            if isinstance(obj, ConfigValue):
                properties["type"] = type(obj.default).__name__
                properties["default"] = "***" if obj.secret else str(obj.default)
                properties["description"] = obj.description
                if obj.env_var:
                    properties["env_var"] = obj.env_var
            elif hasattr(obj, "__dataclass_fields__"):
                for field_name in obj.__dataclass_fields__:
                    properties[field_name] = {}
                    extract_schema(getattr(obj, field_name), properties[field_name])

        extract_schema(self._config, schema["properties"])
        return schema


def load_config(path: Optional[Union[str, Path]] = None, *, use_defaults: bool = False) -> RegistryConfig:
    """Build a RegistryConfig from an optional YAML file and the environment."""
    manager = ConfigManager()
    if use_defaults:
        manager.load_defaults()
    if path is not None:
        manager.load_from_file(path)
    errors = manager.validate()
    if errors:
        raise ConfigValidationError("; ".join(errors))
    return manager.config


__all__ = [
    "ConfigError",
    "ConfigValidationError",
    "ConfigValue",
    "RegistrySection",
    "EventsSection",
    "ObservabilitySection",
    "AttestationSection",
    "RegistryConfig",
    "ConfigManager",
    "load_config",
]
