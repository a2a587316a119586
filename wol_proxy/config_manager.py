"""Configuration management for the Wake-on-LAN proxy."""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Dict, Any, List, Mapping, Optional, Union

from .utils import validate_port, validate_mac_address, normalize_mac_address


logger = logging.getLogger(__name__)


class ConfigurationError(ValueError):
    """Raised when the proxy cannot be configured or started."""


@dataclass(frozen=True)
class SourceEndpoint:
    """Listening side of the proxy."""
    port: int
    interface: str = "0.0.0.0"
    ssl_options: Optional[Mapping[str, Any]] = None


@dataclass(frozen=True)
class TargetEndpoint:
    """Machine being proxied to and woken up."""
    port: int
    mac_address: str
    hostname: str = "localhost"
    ssl_options: Optional[Mapping[str, Any]] = None
    broadcast_address: Optional[str] = None
    network_mask: int = 24
    wol_port: int = 9


@dataclass(frozen=True)
class TimingConfig:
    """All values in seconds."""
    wake_up_timeout: float = 60.0
    grace_period: float = 3.0
    retry_delay: float = 0.0
    connection_timeout: float = 30.0


@dataclass(frozen=True)
class ProxyConfig:
    source: SourceEndpoint
    target: TargetEndpoint
    timing: TimingConfig = field(default_factory=TimingConfig)


def _freeze(options: Optional[Mapping[str, Any]]) -> Optional[Mapping[str, Any]]:
    if options is None:
        return None
    return MappingProxyType(dict(options))


class ProxyConfigBuilder:
    """Collects source, target and timing definitions into a ProxyConfig.

    Every setter returns the builder so calls can be chained::

        config = (ProxyConfigBuilder()
                  .source(9000)
                  .target({"hostname": "10.0.0.5", "port": 22,
                           "mac_address": "AA:BB:CC:DD:EE:FF"})
                  .wake_up_timeout(90)
                  .build())
    """

    def __init__(self):
        self._source: Optional[Dict[str, Any]] = None
        self._source_ssl: Optional[Mapping[str, Any]] = None
        self._target: Optional[Dict[str, Any]] = None
        self._target_ssl: Optional[Mapping[str, Any]] = None
        self._timing: Dict[str, Any] = {}

    def source(self, definition: Union[int, str, Mapping[str, Any], SourceEndpoint, None]) -> "ProxyConfigBuilder":
        """Set the listening endpoint from a port number or a mapping."""
        if definition is None:
            self._source = None
        elif isinstance(definition, SourceEndpoint):
            self._source = {
                "port": definition.port,
                "interface": definition.interface,
                "ssl": definition.ssl_options
            }
        elif isinstance(definition, (int, str)):
            self._source = {"port": definition}
        else:
            self._source = dict(definition)
        return self

    def source_ssl(self, options: Optional[Mapping[str, Any]]) -> "ProxyConfigBuilder":
        self._source_ssl = options
        return self

    def target(self, definition: Union[Mapping[str, Any], TargetEndpoint, None]) -> "ProxyConfigBuilder":
        """Set the target endpoint from a mapping."""
        if definition is None:
            self._target = None
        elif isinstance(definition, TargetEndpoint):
            self._target = {
                "hostname": definition.hostname,
                "port": definition.port,
                "mac_address": definition.mac_address,
                "ssl": definition.ssl_options,
                "broadcast_address": definition.broadcast_address,
                "network_mask": definition.network_mask,
                "wol_port": definition.wol_port
            }
        else:
            self._target = dict(definition)
        return self

    def target_ssl(self, options: Optional[Mapping[str, Any]]) -> "ProxyConfigBuilder":
        self._target_ssl = options
        return self

    def timing(self, values: Union[Mapping[str, Any], TimingConfig, None]) -> "ProxyConfigBuilder":
        if isinstance(values, TimingConfig):
            self._timing = {
                "wake_up_timeout": values.wake_up_timeout,
                "grace_period": values.grace_period,
                "retry_delay": values.retry_delay,
                "connection_timeout": values.connection_timeout
            }
        elif values:
            self._timing.update(values)
        return self

    def wake_up_timeout(self, seconds: float) -> "ProxyConfigBuilder":
        """Minimum time between two wake packets for the target."""
        self._timing["wake_up_timeout"] = seconds
        return self

    def build(self) -> ProxyConfig:
        """Validate everything collected so far and return a frozen ProxyConfig."""
        if not self._source:
            raise ConfigurationError("Missing source configuration")
        if not self._target:
            raise ConfigurationError("Missing target configuration")

        errors: List[str] = []
        source = self._build_source(errors)
        target = self._build_target(errors)
        timing = self._build_timing(errors)

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(errors))

        return ProxyConfig(source=source, target=target, timing=timing)

    def _build_source(self, errors: List[str]) -> Optional[SourceEndpoint]:
        port = self._source.get("port")
        if not validate_port(port):
            errors.append(f"Invalid source port: {port!r}")
            return None

        ssl_options = self._source_ssl if self._source_ssl is not None else self._source.get("ssl")
        if ssl_options and not isinstance(ssl_options, Mapping):
            errors.append(f"Source ssl options must be an object: {ssl_options!r}")
            return None
        if ssl_options and not ssl_options.get("certfile"):
            errors.append("Source ssl options require a certfile")

        return SourceEndpoint(
            port=int(port),
            interface=self._source.get("interface") or "0.0.0.0",
            ssl_options=_freeze(ssl_options or None)
        )

    def _build_target(self, errors: List[str]) -> Optional[TargetEndpoint]:
        target = self._target
        start_errors = len(errors)

        port = target.get("port")
        if not validate_port(port):
            errors.append(f"Invalid target port: {port!r}")

        mac = target.get("mac_address", target.get("MAC"))
        if not validate_mac_address(mac):
            errors.append(f"Invalid MAC address: {mac!r}")

        wol_port = target.get("wol_port", 9)
        if not validate_port(wol_port):
            errors.append(f"Invalid wake-on-LAN port: {wol_port!r}")

        network_mask = target.get("network_mask", 24)
        if not isinstance(network_mask, int) or not 0 <= network_mask <= 32:
            errors.append(f"Invalid network mask: {network_mask!r}")

        ssl_options = self._target_ssl if self._target_ssl is not None else target.get("ssl")
        if ssl_options and not isinstance(ssl_options, Mapping):
            errors.append(f"Target ssl options must be an object: {ssl_options!r}")

        if len(errors) > start_errors:
            return None

        return TargetEndpoint(
            port=int(port),
            mac_address=normalize_mac_address(mac),
            hostname=target.get("hostname") or target.get("host") or "localhost",
            ssl_options=_freeze(ssl_options or None),
            broadcast_address=target.get("broadcast_address"),
            network_mask=network_mask,
            wol_port=int(wol_port)
        )

    def _build_timing(self, errors: List[str]) -> TimingConfig:
        defaults = TimingConfig()
        values = {
            "wake_up_timeout": defaults.wake_up_timeout,
            "grace_period": defaults.grace_period,
            "retry_delay": defaults.retry_delay,
            "connection_timeout": defaults.connection_timeout
        }

        for key, value in self._timing.items():
            if key.startswith('_comment'):
                continue
            if key not in values:
                errors.append(f"Unknown timing value: {key}")
                continue
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                errors.append(f"Invalid timing value for {key}: {value}")
                continue
            if value < 0 or (value == 0 and key != "retry_delay"):
                errors.append(f"Invalid timing value for {key}: {value}")
                continue
            values[key] = float(value)

        return TimingConfig(**values)


class ConfigManager:
    """JSON configuration file for the proxy process.

    Sections the file leaves out are filled from built-in defaults. The
    source, target and timing sections are handed to ProxyConfigBuilder by
    build_proxy_config(); logging and monitoring are read by the entry point.
    """

    def __init__(self, config_path: str = "config.json"):
        self.config_path = Path(config_path)
        self._config: Dict[str, Any] = {}
        self._default_config = self._get_default_config()

    def _get_default_config(self) -> Dict[str, Any]:
        """Values used for anything the configuration file omits."""
        return {
            "source": {
                "interface": "0.0.0.0"
            },
            "target": {
                "hostname": "localhost",
                "network_mask": 24,
                "wol_port": 9
            },
            "timing": {
                "wake_up_timeout": 60,
                "grace_period": 3,
                "retry_delay": 0,
                "connection_timeout": 30
            },
            "logging": {
                "level": "INFO",
                "file": "/var/log/wol-proxy.log",
                "max_size_mb": 10,
                "backup_count": 3,
                "console_output": True
            },
            "monitoring": {
                "health_check_enabled": False,
                "status_endpoint_port": 8080
            }
        }

    def load_config(self) -> Dict[str, Any]:
        """Read the file, overlay it on the defaults and validate the result.

        Raises ConfigurationError on malformed JSON or invalid logging and
        monitoring sections. A missing file yields the defaults alone.
        """
        try:
            if not self.config_path.exists():
                logger.warning(f"Config file {self.config_path} not found, using defaults")
                self._config = self._merge_config(self._default_config, {})
                return self._config

            with open(self.config_path, 'r', encoding='utf-8') as f:
                loaded_config = json.load(f)

            # Defaults fill the gaps
            self._config = self._merge_config(self._default_config, loaded_config)

            self._validate_config()

            logger.info(f"Loaded proxy configuration from {self.config_path}")
            return self._config

        except json.JSONDecodeError as e:
            logger.error(f"Cannot parse {self.config_path}: {e}")
            raise ConfigurationError(f"Configuration file contains invalid JSON: {e}") from e

    def _merge_config(self, default: Dict[str, Any], loaded: Dict[str, Any]) -> Dict[str, Any]:
        """Deep copy of default with loaded overlaid section by section."""
        result = {
            key: self._merge_config(value, {}) if isinstance(value, dict) else value
            for key, value in default.items()
        }

        for key, value in loaded.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._merge_config(result[key], value)
            else:
                result[key] = value

        return result

    def _validate_config(self) -> None:
        """Validate sections that are not covered by ProxyConfigBuilder."""
        errors = []

        log_level = str(self._config["logging"]["level"]).upper()
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if log_level not in valid_levels:
            errors.append(f"Invalid log level: {log_level}. Must be one of {valid_levels}")

        monitoring = self._config["monitoring"]
        if monitoring.get("health_check_enabled") and not validate_port(monitoring.get("status_endpoint_port")):
            errors.append(f"Invalid status endpoint port: {monitoring.get('status_endpoint_port')}")

        if errors:
            error_msg = "Configuration validation failed:\n" + "\n".join(errors)
            logger.error(error_msg)
            raise ConfigurationError(error_msg)

    def build_proxy_config(self) -> ProxyConfig:
        """Turn the loaded configuration into an immutable ProxyConfig."""
        if not self._config:
            self.load_config()

        return (ProxyConfigBuilder()
                .source(self._strip_defaults(self._config.get("source"), {"port"}))
                .target(self._strip_defaults(self._config.get("target"), {"port", "mac_address", "MAC"}))
                .timing(self._config.get("timing"))
                .build())

    @staticmethod
    def _strip_defaults(section: Optional[Dict[str, Any]], required: set) -> Optional[Dict[str, Any]]:
        # A section holding only merged-in defaults counts as missing
        if not section or not required.intersection(section):
            return None
        return section

    def get(self, key_path: str, default: Any = None) -> Any:
        """Look up a value by dotted path, e.g. "timing.grace_period"."""
        keys = key_path.split('.')
        value = self._config

        try:
            for key in keys:
                value = value[key]
            return value
        except (KeyError, TypeError):
            return default

    def reload_config(self) -> bool:
        """Re-read the file; the previous configuration stays on failure."""
        old_config = self._config.copy()
        try:
            self.load_config()
            self.build_proxy_config()
            logger.info(f"Reloaded proxy configuration from {self.config_path}")
            return True
        except (ConfigurationError, OSError) as e:
            logger.error(f"Keeping previous configuration, reload failed: {e}")
            self._config = old_config
            return False

    def save_example_config(self, path: Optional[str] = None) -> None:
        """Write a commented starting point for a new installation."""
        if path is None:
            path = "config.json.example"

        example_config = {
            "_comment_source": "Where clients connect to the proxy",
            "source": {
                "_comment": "Add an ssl object with certfile/keyfile to accept TLS",
                "port": 2222,
                "interface": "0.0.0.0"
            },
            "_comment_target": "Machine to forward to and wake up",
            "target": {
                "_comment": "Add an ssl object (cafile, verify) to connect over TLS",
                "hostname": "192.168.1.100",
                "port": 22,
                "mac_address": "AA:BB:CC:DD:EE:FF",
                "network_mask": 24,
                "wol_port": 9
            },
            "_comment_timing": "Cool-down between wake packets and connection retry timing",
            "timing": {
                "_comment": "Seconds; retry_delay 0 retries immediately while the target wakes",
                "wake_up_timeout": 60,
                "grace_period": 3,
                "retry_delay": 0,
                "connection_timeout": 30
            },
            "_comment_logging": "Console and rotating file log output",
            "logging": {
                "level": "INFO",
                "file": "/var/log/wol-proxy.log",
                "max_size_mb": 10,
                "backup_count": 3,
                "console_output": True
            },
            "_comment_monitoring": "Optional HTTP endpoint serving /status and /health",
            "monitoring": {
                "health_check_enabled": False,
                "status_endpoint_port": 8080
            }
        }

        with open(path, 'w', encoding='utf-8') as f:
            json.dump(example_config, f, indent=2, ensure_ascii=False)

        logger.info(f"Wrote example configuration to {path}")

    @property
    def config(self) -> Dict[str, Any]:
        """Shallow copy of the merged configuration."""
        return self._config.copy()
