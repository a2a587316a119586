"""Wake-on-LAN magic packet transmission."""

import ipaddress
import logging
import socket
from typing import Any, Dict, Optional

from .config_manager import TargetEndpoint


logger = logging.getLogger(__name__)

GLOBAL_BROADCAST = "255.255.255.255"


def parse_mac_address(mac: str) -> bytes:
    """Raw six bytes of a colon or hyphen separated hardware address."""
    hex_digits = mac.replace(':', '').replace('-', '')

    if len(hex_digits) != 12:
        raise ValueError(f"MAC address needs 12 hex digits: {mac}")

    try:
        return bytes.fromhex(hex_digits)
    except ValueError as e:
        raise ValueError(f"MAC address is not hexadecimal: {mac}") from e


def create_magic_packet(mac: str) -> bytes:
    """Create the Wake-on-LAN magic packet.

    6 bytes of 0xFF followed by the MAC address repeated 16 times.
    """
    return b'\xff' * 6 + parse_mac_address(mac) * 16


class WoLSender:
    """Broadcasts magic packets for the configured target."""

    def __init__(self, target: TargetEndpoint):
        self.target = target
        self.wol_port = target.wol_port
        self.broadcast_ip = target.broadcast_address or self._get_broadcast_address(target.hostname)

    def _get_broadcast_address(self, host: str) -> str:
        """Calculate the subnet broadcast address when the target is an IPv4 literal."""
        try:
            interface = ipaddress.IPv4Interface(f"{host}/{self.target.network_mask}")
        except ValueError:
            logger.debug(f"Target {host} is not an IPv4 address, using global broadcast")
            return GLOBAL_BROADCAST

        broadcast_addr = str(interface.network.broadcast_address)
        logger.debug(f"Calculated broadcast address: {broadcast_addr} for {host}/{self.target.network_mask}")
        return broadcast_addr

    async def send(self, hardware_address: str) -> bool:
        """Send one magic packet to every broadcast destination.

        Returns True when at least one destination accepted the packet.
        Errors are logged, never raised.
        """
        try:
            magic_packet = create_magic_packet(hardware_address)
        except ValueError as e:
            logger.error(f"Cannot build Wake-on-LAN packet: {e}")
            return False

        destinations = {
            self.broadcast_ip: "Calculated Broadcast",
            GLOBAL_BROADCAST: "Global Broadcast"
        }
        sent_successfully = False

        try:
            with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)

                for ip_addr, name in destinations.items():
                    try:
                        sock.sendto(magic_packet, (ip_addr, self.wol_port))
                        logger.debug(f"Sent WoL packet via {name} to {ip_addr}:{self.wol_port}")
                        sent_successfully = True
                    except OSError as e:
                        # e.g. "Network is unreachable"
                        logger.warning(f"Could not send WoL packet via {name} to {ip_addr}:{self.wol_port}. Error: {e}")

        except OSError as e:
            logger.error(f"Failed to create socket for sending Wake-on-LAN packet: {e}")
            return False

        if sent_successfully:
            logger.info(f"Wake-on-LAN packet sent for MAC {hardware_address} "
                        f"(broadcast: {self.broadcast_ip}, size: {len(magic_packet)} bytes)")
        else:
            logger.error(f"Failed to send Wake-on-LAN packet for MAC {hardware_address} to any destination.")
        return sent_successfully

    def get_packet_info(self, hardware_address: Optional[str] = None) -> Dict[str, Any]:
        """Where and what the sender would broadcast, for diagnostics."""
        mac = hardware_address or self.target.mac_address
        return {
            "target_host": self.target.hostname,
            "broadcast_ip": self.broadcast_ip,
            "wol_port": self.wol_port,
            "mac_address": mac,
            "packet_size": len(create_magic_packet(mac))
        }
