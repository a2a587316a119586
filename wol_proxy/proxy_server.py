"""Listening side of the proxy: one ConnectionPair per accepted client."""

import asyncio
import logging
import signal
import ssl
import time
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

from .config_manager import (
    ConfigurationError,
    ProxyConfig,
    ProxyConfigBuilder,
    SourceEndpoint,
    TargetEndpoint,
    TimingConfig,
)
from .stream_bridge import StreamBridge
from .target_connector import TargetConnector
from .utils import create_client_ssl_context, create_server_ssl_context, format_bytes, format_duration
from .wake_trigger import WakeTrigger
from .wol_sender import WoLSender


logger = logging.getLogger(__name__)

# Bytes accepted from a client while its target link is still pending
HOLD_LIMIT = 65536


class ConnectionPair:
    """Client stream and target connector sharing one lifetime."""

    def __init__(self, pair_id: int, client_reader: asyncio.StreamReader,
                 client_writer: asyncio.StreamWriter, connector: TargetConnector):
        self.pair_id = pair_id
        self.client_reader = client_reader
        self.client_writer = client_writer
        self.connector = connector
        self.bridge: Optional[StreamBridge] = None
        self.peer = client_writer.get_extra_info('peername')

        self.held: List[bytes] = []
        self.opened_time = time.time()
        self.closed = False

    @property
    def held_bytes(self) -> int:
        return sum(len(chunk) for chunk in self.held)

    def close(self, abort: bool = False) -> None:
        """Tear down both sides. Safe to call more than once.

        With abort, buffered bytes are discarded and both transports are
        destroyed immediately.
        """
        if self.closed:
            return
        self.closed = True

        if self.bridge is not None:
            self.bridge.close(abort=abort)
        self.connector.close()
        if abort:
            self.client_writer.transport.abort()
        else:
            self.client_writer.close()


class ProxyServer:
    """Accepts clients and proxies each one to the target, waking it first if needed."""

    def __init__(self, config: Optional[ProxyConfig] = None, wol_sender=None,
                 clock: Callable[[], float] = time.monotonic):
        self.config = config
        self._wol_sender = wol_sender
        self._clock = clock

        self.wake_trigger: Optional[WakeTrigger] = None
        self.server: Optional[asyncio.AbstractServer] = None
        self._server_ssl_context: Optional[ssl.SSLContext] = None
        self._client_ssl_context: Optional[ssl.SSLContext] = None

        self.pairs: Dict[int, ConnectionPair] = {}
        self._next_pair_id = 1

        # Control
        self.is_running = False
        self.shutdown_event = asyncio.Event()

        # Statistics
        self.stats = {
            "start_time": time.time(),
            "total_connections": 0,
            "connect_attempts": 0,
            "connect_failures": 0,
            "bytes_client_to_target": 0,
            "bytes_target_to_client": 0
        }

    def configure(self, source: Union[int, str, Mapping[str, Any], SourceEndpoint, None],
                  target: Union[Mapping[str, Any], TargetEndpoint, None],
                  timing: Union[Mapping[str, Any], TimingConfig, None] = None) -> "ProxyServer":
        """Validate and store the source and target definitions."""
        if source is None:
            raise ConfigurationError("Missing source configuration")
        if target is None:
            raise ConfigurationError("Missing target configuration")

        self.config = (ProxyConfigBuilder()
                       .source(source)
                       .target(target)
                       .timing(timing)
                       .build())
        return self

    async def run(self) -> None:
        """Start listening on the source endpoint.

        Raises ConfigurationError before any socket is opened when the source
        or target definition is missing.
        """
        if self.config is None or self.config.source is None:
            raise ConfigurationError("Missing source configuration")
        if self.config.target is None:
            raise ConfigurationError("Missing target configuration")

        if self.is_running:
            logger.warning("Proxy is already running")
            return

        source = self.config.source
        target = self.config.target
        timing = self.config.timing

        if source.ssl_options:
            self._server_ssl_context = create_server_ssl_context(source.ssl_options)
        if target.ssl_options:
            self._client_ssl_context = create_client_ssl_context(target.ssl_options)

        sender = self._wol_sender or WoLSender(target)
        self.wake_trigger = WakeTrigger(sender, cool_down=timing.wake_up_timeout, clock=self._clock)

        self.server = await asyncio.start_server(
            self._handle_client,
            source.interface,
            source.port,
            ssl=self._server_ssl_context
        )

        self.is_running = True
        self.stats["start_time"] = time.time()
        logger.info(f"Proxy listening on {source.interface}:{source.port}"
                    f"{' (TLS)' if self._server_ssl_context else ''} -> "
                    f"{target.hostname}:{target.port}{' (TLS)' if self._client_ssl_context else ''}, "
                    f"wake target {target.mac_address}")

    @property
    def sockets(self) -> Tuple:
        return tuple(self.server.sockets) if self.server else ()

    async def _handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        """Pair an accepted client with a new target connection."""
        pair_id = self._next_pair_id
        self._next_pair_id += 1
        self.stats["total_connections"] += 1

        connector = TargetConnector(
            self.config.target,
            self.wake_trigger,
            timing=self.config.timing,
            ssl_context=self._client_ssl_context,
            name=f"conn-{pair_id}"
        )
        pair = ConnectionPair(pair_id, reader, writer, connector)
        self.pairs[pair_id] = pair
        logger.info(f"[conn-{pair_id}] new connection from {pair.peer}")

        try:
            connector.connect()

            link = await self._hold_until_connected(pair)
            if link is None:
                return
            target_reader, target_writer = link

            for chunk in pair.held:
                target_writer.write(chunk)
            await target_writer.drain()
            pair.held.clear()

            pair.bridge = StreamBridge(reader, writer, target_reader, target_writer, name=f"conn-{pair_id}")
            closed_by = await pair.bridge.run()
            if closed_by == "target->client":
                connector.handle_stream_closed()

        except (OSError, ExceptionGroup) as e:
            logger.info(f"[conn-{pair_id}] connection ended with error: {e}")

        finally:
            pair.close()
            self._forget_pair(pair)

    async def _hold_until_connected(self, pair: ConnectionPair) -> Optional[Tuple[asyncio.StreamReader, asyncio.StreamWriter]]:
        """Buffer client bytes until the target link is up.

        Returns None when the client goes away first or fills the hold
        buffer before the target answers. Re-raises the
        connector's error when it gave up on the target.
        """
        connected = pair.connector.connected

        while not connected.done():
            remaining = HOLD_LIMIT - pair.held_bytes
            if remaining <= 0:
                # Reads would stop here and a departed client would go unnoticed
                logger.warning(f"[conn-{pair.pair_id}] client filled the {HOLD_LIMIT} byte hold buffer "
                               f"before target was reachable, dropping connection")
                return None

            read_task = asyncio.ensure_future(pair.client_reader.read(remaining))
            await asyncio.wait({read_task, connected}, return_when=asyncio.FIRST_COMPLETED)

            if not read_task.done():
                read_task.cancel()
                await asyncio.gather(read_task, return_exceptions=True)
                break

            data = read_task.result()
            if not data:
                logger.info(f"[conn-{pair.pair_id}] client closed before target was reachable")
                return None
            pair.held.append(data)

        if connected.cancelled():
            return None
        return connected.result()

    def _forget_pair(self, pair: ConnectionPair) -> None:
        self.pairs.pop(pair.pair_id, None)

        self.stats["connect_attempts"] += pair.connector.attempts
        self.stats["connect_failures"] += pair.connector.failures
        if pair.bridge is not None:
            self.stats["bytes_client_to_target"] += pair.bridge.bytes_transferred["client->target"]
            self.stats["bytes_target_to_client"] += pair.bridge.bytes_transferred["target->client"]

        logger.info(f"[conn-{pair.pair_id}] closed after "
                    f"{format_duration(time.time() - pair.opened_time)}")

    async def run_forever(self) -> None:
        """Run the proxy until a shutdown signal arrives."""
        self._setup_signal_handlers()
        try:
            logger.info("WoL proxy running...")
            await self.shutdown_event.wait()
        finally:
            await self.shutdown()

    async def shutdown(self) -> None:
        """Stop accepting clients and tear down every live connection."""
        if not self.is_running:
            return

        logger.info("Shutting down WoL proxy...")
        self.is_running = False

        self.server.close()
        for pair in list(self.pairs.values()):
            pair.close(abort=True)
        await self.server.wait_closed()

        logger.info(f"WoL proxy shutdown complete, uptime "
                    f"{format_duration(time.time() - self.stats['start_time'])}")

    def _setup_signal_handlers(self) -> None:
        """Set up signal handlers for graceful shutdown."""
        loop = asyncio.get_running_loop()

        def signal_handler(signame):
            logger.info(f"Received {signame}, initiating shutdown...")
            self.shutdown_event.set()

        for signame in ['SIGTERM', 'SIGINT']:
            if hasattr(signal, signame):
                loop.add_signal_handler(getattr(signal, signame), signal_handler, signame)

    def get_status(self) -> Dict[str, Any]:
        """Get current proxy status."""
        return {
            "is_running": self.is_running,
            "uptime": format_duration(time.time() - self.stats["start_time"]) if self.is_running else None,
            "active_connections": len(self.pairs),
            "pending_connections": sum(1 for pair in self.pairs.values() if pair.bridge is None),
            "wake": self.wake_trigger.get_stats() if self.wake_trigger else {},
            "connections": [
                {
                    "id": pair.pair_id,
                    "peer": str(pair.peer),
                    "bridged": pair.bridge is not None,
                    "held_bytes": pair.held_bytes,
                    **pair.connector.get_stats()
                }
                for pair in self.pairs.values()
            ],
            "statistics": {
                **self.stats,
                "active_connections": len(self.pairs),
                "wake_packets_sent": self.wake_trigger.stats["packets_sent"] if self.wake_trigger else 0,
                "traffic": {
                    "client_to_target": format_bytes(self.stats["bytes_client_to_target"]),
                    "target_to_client": format_bytes(self.stats["bytes_target_to_client"])
                }
            }
        }

    def get_config_info(self) -> Dict[str, Any]:
        """Get configuration information."""
        if self.config is None:
            return {}

        source = self.config.source
        target = self.config.target
        return {
            "source": f"{source.interface}:{source.port}",
            "source_tls": bool(source.ssl_options),
            "target": f"{target.hostname}:{target.port}",
            "target_tls": bool(target.ssl_options),
            "mac_address": target.mac_address,
            "wake_up_timeout": self.config.timing.wake_up_timeout,
            "grace_period": self.config.timing.grace_period
        }
