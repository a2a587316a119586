"""Shared utilities for the Wake-on-LAN proxy."""

import logging
import re
import ssl
from typing import Any, Mapping, Optional


logger = logging.getLogger(__name__)


def validate_port(port: Any) -> bool:
    """True for a TCP/UDP port in 1-65535, given as int or numeric string."""
    if isinstance(port, bool):
        return False
    try:
        port_int = int(port)
        return 1 <= port_int <= 65535
    except (ValueError, TypeError):
        return False


def validate_mac_address(mac: Any) -> bool:
    """
    Check a hardware address for the Wake-on-LAN target.

    Args:
        mac: Six hex octets joined consistently by ':' or '-'

    Returns:
        True if the address can be turned into a magic packet
    """
    if not isinstance(mac, str):
        return False

    # Colon- or hyphen-separated hex octets
    pattern = r'^[0-9A-Fa-f]{2}([:-])[0-9A-Fa-f]{2}(\1[0-9A-Fa-f]{2}){4}$'
    return bool(re.match(pattern, mac))


def normalize_mac_address(mac: str) -> str:
    """
    Normalize MAC address to standard format (XX:XX:XX:XX:XX:XX).

    Raises:
        ValueError: If MAC address format is invalid
    """
    if not validate_mac_address(mac):
        raise ValueError(f"Invalid MAC address format: {mac}")

    clean_mac = mac.replace(':', '').replace('-', '').upper()
    return ':'.join(clean_mac[i:i+2] for i in range(0, 12, 2))


def create_server_ssl_context(options: Mapping[str, Any]) -> ssl.SSLContext:
    """Build the accept-side TLS context from source ssl options."""
    context = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
    context.load_cert_chain(
        options["certfile"],
        keyfile=options.get("keyfile"),
        password=options.get("password")
    )

    if options.get("cafile"):
        context.load_verify_locations(cafile=options["cafile"])
    if options.get("verify_client"):
        context.verify_mode = ssl.CERT_REQUIRED

    logger.debug(f"Server TLS context created from {options['certfile']}")
    return context


def create_client_ssl_context(options: Mapping[str, Any]) -> ssl.SSLContext:
    """Build the outbound TLS context from target ssl options."""
    context = ssl.create_default_context(cafile=options.get("cafile"))

    if options.get("certfile"):
        context.load_cert_chain(
            options["certfile"],
            keyfile=options.get("keyfile"),
            password=options.get("password")
        )

    # Home servers commonly present self-signed certificates
    if not options.get("verify", True):
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE

    return context


_SIZE_UNITS = ("B", "KB", "MB", "GB", "TB")


def format_bytes(size_bytes: float) -> str:
    """Traffic counter for status output, e.g. "1.5 MB"."""
    if not size_bytes:
        return "0 B"

    unit = 0
    while size_bytes >= 1024.0 and unit < len(_SIZE_UNITS) - 1:
        size_bytes /= 1024.0
        unit += 1
    return f"{size_bytes:.1f} {_SIZE_UNITS[unit]}"


def format_duration(seconds: Optional[float]) -> str:
    """Connection or uptime length, e.g. "1h 2m 5s"."""
    if seconds is None or seconds < 0:
        return "0s"

    total = int(seconds)
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    parts = [f"{value}{unit}" for value, unit in ((hours, "h"), (minutes, "m")) if value]
    if secs or not parts:
        parts.append(f"{secs}s")
    return " ".join(parts)
