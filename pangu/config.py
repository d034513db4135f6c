"""
Pangu Configuration System

Unified configuration management with YAML files, environment variables,
validation, and runtime updates.

Configuration Sources (in order of precedence):
    1. Environment variables (PANGU_*)
    2. Runtime overrides
    3. User config file (~/.pangu/config.yaml)
    4. Project config file (./pangu.yaml)
    5. Default values

Copyright (c) 2026 Pangu. All rights reserved.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar, Union

import yaml

from pangu.errors import ConfigError

T = TypeVar("T")


class ConfigValidationError(ConfigError):
    """Configuration validation error."""
    pass


def _valid_pattern(value: str) -> bool:
    try:
        re.compile(value)
    except re.error:
        return False
    return True


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
    _value: Optional[T] = field(default=None, repr=False)
    _callbacks: List[Callable[[T, T], None]] = field(default_factory=list, repr=False)

    def get(self) -> T:
        """Get the current value."""
        if self.env_var and self.env_var in os.environ:
            return self._coerce(os.environ[self.env_var])
        return self._value if self._value is not None else self.default

    def set(self, value: T) -> None:
        """Set the value with validation."""
        if self.validator and not self.validator(value):
            raise ConfigValidationError(f"Invalid value for config: {value}")

        old_value = self._value
        self._value = value
        for callback in self._callbacks:
            callback(old_value, value)

    def reset(self) -> None:
        self._value = None

    def _coerce(self, value: str) -> T:
        """Coerce string value to target type."""
        target_type = type(self.default)

        if target_type == bool:
            return value.lower() in ("true", "1", "yes", "on")  # type: ignore
        elif target_type == int:
            return int(value)  # type: ignore
        elif target_type == float:
            return float(value)  # type: ignore
        elif target_type == dict:
            # "0:1,1:1000000,2:1000"
            pairs = (item.split(":", 1) for item in value.split(",") if item.strip())
            return {int(k): float(v) for k, v in pairs}  # type: ignore
        else:
            return value  # type: ignore

    def on_change(self, callback: Callable[[T, T], None]) -> None:
        """Register a change callback."""
        self._callbacks.append(callback)


@dataclass
class ReservationConfig:
    """Configuration for the Resource Reservation Manager."""
    draft_lease_seconds: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=30.0,
        env_var="PANGU_RESERVATION_LEASE",
        description="Lease of a reservation held by an in-flight build",
        validator=lambda x: x > 0,
    ))
    sweep_interval_seconds: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=5.0,
        env_var="PANGU_RESERVATION_SWEEP",
        description="Interval of the background expiry sweep",
        validator=lambda x: x > 0,
    ))


@dataclass
class AssemblyConfig:
    """Configuration for Transaction Assembly."""
    tx_version: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=1.0,
        env_var="PANGU_TX_VERSION",
        description="Transaction record version",
    ))
    default_gas: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=1.0,
        env_var="PANGU_DEFAULT_GAS",
        description="Interest-funded gas when a request does not name one",
        validator=lambda x: x >= 0,
    ))
    change_epsilon: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=1e-8,
        env_var="PANGU_CHANGE_EPSILON",
        description="Leftover below this value produces no change output",
        validator=lambda x: x >= 0,
    ))
    max_reselect_attempts: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=3,
        env_var="PANGU_MAX_RESELECT",
        description="Selection retries after a reservation conflict",
        validator=lambda x: x >= 0,
    ))
    self_verify: ConfigValue[bool] = field(default_factory=lambda: ConfigValue(
        default=True,
        env_var="PANGU_SELF_VERIFY",
        description="Verify every produced signature before transmission",
    ))
    cross_chain_destination_pattern: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default=r"^0x[0-9a-fA-F]{40}$",
        env_var="PANGU_CROSS_CHAIN_PATTERN",
        description="Destination format required by the cross-chain mode",
        validator=_valid_pattern,
    ))
    exchange_rates: ConfigValue[Dict[int, float]] = field(default_factory=lambda: ConfigValue(
        default={0: 1.0, 1: 1000000.0, 2: 1000.0},
        env_var="PANGU_EXCHANGE_RATES",
        description="Per asset type conversion into the primary asset",
        validator=lambda x: all(v > 0 for v in x.values()),
    ))


@dataclass
class WalletConfig:
    """Configuration for wallet live state."""
    pending_spend_ttl_seconds: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=86400.0,
        env_var="PANGU_PENDING_SPEND_TTL",
        description="How long a submitted unit stays out of selection",
        validator=lambda x: x > 0,
    ))


@dataclass
class SyncConfig:
    """Configuration for the account synchronizer."""
    poll_interval_seconds: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=3.0,
        env_var="PANGU_SYNC_POLL_INTERVAL",
        description="Account update poll interval",
        validator=lambda x: x > 0,
    ))
    max_consecutive_failures: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=5,
        env_var="PANGU_SYNC_MAX_FAILURES",
        description="Consecutive poll failures before polling pauses",
        validator=lambda x: x > 0,
    ))


@dataclass
class TransportConfig:
    """Configuration for submission and confirmation polling."""
    confirmation_poll_seconds: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=2.0,
        env_var="PANGU_CONFIRM_POLL",
        description="Status query interval while awaiting confirmation",
        validator=lambda x: x > 0,
    ))
    confirmation_timeout_seconds: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=60.0,
        env_var="PANGU_CONFIRM_TIMEOUT",
        description="Maximum wait for a confirmation verdict",
        validator=lambda x: x > 0,
    ))


@dataclass
class TimestampConfig:
    """Configuration for timestamped requests."""
    validity_window_seconds: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=300,
        env_var="PANGU_TIMESTAMP_WINDOW",
        description="Validity window the remote peer enforces",
        validator=lambda x: x > 0,
    ))


@dataclass
class ObservabilityConfig:
    """Configuration for Observability."""
    log_level: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="info",
        env_var="PANGU_LOG_LEVEL",
        description="Log level (debug, info, warning, error)",
        validator=lambda x: x in ("debug", "info", "warning", "error", "critical"),
    ))
    log_format: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="json",
        env_var="PANGU_LOG_FORMAT",
        description="Log format (json, text)",
        validator=lambda x: x in ("json", "text"),
    ))


@dataclass
class PanguConfig:
    """
    Root configuration for the wallet core.

    Aggregates all component configurations and provides
    serialization helpers.
    """
    reservation: ReservationConfig = field(default_factory=ReservationConfig)
    assembly: AssemblyConfig = field(default_factory=AssemblyConfig)
    wallet: WalletConfig = field(default_factory=WalletConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    transport: TransportConfig = field(default_factory=TransportConfig)
    timestamps: TimestampConfig = field(default_factory=TimestampConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        def extract_values(obj: Any) -> Any:
            if isinstance(obj, ConfigValue):
                return obj.get()
            elif hasattr(obj, "__dataclass_fields__"):
                return {k: extract_values(getattr(obj, k)) for k in obj.__dataclass_fields__}
            return obj

        return extract_values(self)

    def to_yaml(self) -> str:
        """Convert to YAML string."""
        return yaml.safe_dump(self.to_dict(), default_flow_style=False)


class ConfigManager:
    """
    Configuration manager with file loading and environment binding.

    Instances are independent; `get_config_manager()` hands out a
    process-wide default for the CLI.
    """

    DEFAULT_PATHS = (
        Path("pangu.yaml"),
        Path("config/pangu.yaml"),
        Path.home() / ".pangu" / "config.yaml",
    )

    def __init__(self, config: Optional[PanguConfig] = None):
        self._config = config or PanguConfig()
        self._config_paths: List[Path] = []
        self._watchers: List[Callable[[PanguConfig], None]] = []

    @property
    def config(self) -> PanguConfig:
        """Get the current configuration."""
        return self._config

    def load_from_file(self, path: Union[str, Path]) -> None:
        """Load configuration from a YAML file."""
        path = Path(path)
        if not path.exists():
            raise ConfigError(f"Configuration file not found: {path}")

        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)

        if data is not None and not isinstance(data, dict):
            raise ConfigError(f"Configuration root must be a mapping: {path}")
        if data:
            self._apply_dict(data)
        if path not in self._config_paths:
            self._config_paths.append(path)

    def load_defaults(self) -> List[Path]:
        """Load default configuration files if they exist."""
        loaded: List[Path] = []
        for path in self.DEFAULT_PATHS:
            if path.exists():
                self.load_from_file(path)
                loaded.append(path)
        return loaded

    def _apply_dict(self, data: Dict[str, Any]) -> None:
        """Apply dictionary values to configuration."""
        def apply_to_config(config_obj: Any, values: Dict[str, Any], prefix: str) -> None:
            for key, value in values.items():
                path = f"{prefix}{key}"
                if not hasattr(config_obj, key):
                    raise ConfigError(f"Unknown config key: {path}")
                attr = getattr(config_obj, key)
                if isinstance(attr, ConfigValue):
                    attr.set(value)
                elif hasattr(attr, "__dataclass_fields__") and isinstance(value, dict):
                    apply_to_config(attr, value, f"{path}.")
                else:
                    raise ConfigError(f"Invalid config section: {path}")

        apply_to_config(self._config, data, "")

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

        Example: manager.set("reservation.draft_lease_seconds", 10.0)
        """
        attr = self._resolve(path)
        if not isinstance(attr, ConfigValue):
            raise ConfigError(f"Invalid config path: {path}")
        attr.set(value)

    def get(self, path: str) -> Any:
        """
        Get a configuration value by path.

        Example: manager.get("assembly.change_epsilon")
        """
        obj = self._resolve(path)
        if isinstance(obj, ConfigValue):
            return obj.get()
        return obj

    def watch(self, callback: Callable[[PanguConfig], None]) -> None:
        """Register a callback for configuration changes."""
        self._watchers.append(callback)

    def reload(self) -> None:
        """Reload configuration from all loaded files."""
        for path in self._config_paths:
            if path.exists():
                self.load_from_file(path)

        for watcher in self._watchers:
            watcher(self._config)

    def validate(self) -> List[str]:
        """
        Validate all configuration values.

        Returns list of validation errors.
        """
        errors: List[str] = []

        def validate_config(obj: Any, path: str = "") -> None:
            if isinstance(obj, ConfigValue):
                try:
                    value = obj.get()
                    if obj.validator and not obj.validator(value):
                        errors.append(f"{path}: validation failed for value {value}")
                except (TypeError, ValueError) as e:
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
                properties["default"] = str(obj.default)
                properties["description"] = obj.description
                if obj.env_var:
                    properties["env_var"] = obj.env_var
            elif hasattr(obj, "__dataclass_fields__"):
                for field_name in obj.__dataclass_fields__:
                    properties[field_name] = {}
                    extract_schema(getattr(obj, field_name), properties[field_name])

        extract_schema(self._config, schema["properties"])
        return schema


_default_manager: Optional[ConfigManager] = None


def get_config_manager() -> ConfigManager:
    """Get the process-default configuration manager."""
    global _default_manager
    if _default_manager is None:
        _default_manager = ConfigManager()
    return _default_manager


def get_config() -> PanguConfig:
    """Get the process-default configuration."""
    return get_config_manager().config
