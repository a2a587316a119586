"""Wake-on-LAN Proxy

A Python service that acts as a transparent TCP/TLS proxy for a machine that
is normally asleep, waking it via Wake-on-LAN when a client connects.
"""

from .config_manager import (
    ConfigManager,
    ConfigurationError,
    ProxyConfig,
    ProxyConfigBuilder,
    SourceEndpoint,
    TargetEndpoint,
    TimingConfig,
)
from .proxy_server import ProxyServer

__version__ = "1.0.0"
__author__ = "WoL Proxy"

__all__ = [
    "ConfigManager",
    "ConfigurationError",
    "ProxyConfig",
    "ProxyConfigBuilder",
    "ProxyServer",
    "SourceEndpoint",
    "TargetEndpoint",
    "TimingConfig",
]
