"""Outbound connection lifecycle towards the target machine."""

import asyncio
import errno
import logging
import ssl
import time
from enum import Enum
from typing import Any, Dict, Optional

from .config_manager import TargetEndpoint, TimingConfig
from .wake_trigger import WakeTrigger


logger = logging.getLogger(__name__)


class ConnectorState(Enum):
    """Outbound connection states."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSED = "closed"            # Owning connection pair destroyed, terminal


class FailureKind(Enum):
    """Classification of a failed outbound attempt."""
    HOST_UNREACHABLE = "host_unreachable"
    CONNECTION_REFUSED = "connection_refused"
    TIMED_OUT = "timed_out"
    OTHER = "other"


TRANSIENT_FAILURES = frozenset({
    FailureKind.HOST_UNREACHABLE,
    FailureKind.CONNECTION_REFUSED,
    FailureKind.TIMED_OUT
})

_ERRNO_KINDS = {
    errno.EHOSTDOWN: FailureKind.HOST_UNREACHABLE,
    errno.EHOSTUNREACH: FailureKind.HOST_UNREACHABLE,
    errno.ECONNREFUSED: FailureKind.CONNECTION_REFUSED,
    errno.ETIMEDOUT: FailureKind.TIMED_OUT
}


def classify_failure(exc: BaseException) -> FailureKind:
    """Map an outbound connect error onto a FailureKind.

    Multi-address connects fail with an exception group; the group counts as
    transient when any member does (e.g. refused on IPv4, unavailable on IPv6).
    """
    if isinstance(exc, BaseExceptionGroup):
        kinds = {classify_failure(member) for member in exc.exceptions}
        for kind in (FailureKind.CONNECTION_REFUSED, FailureKind.HOST_UNREACHABLE, FailureKind.TIMED_OUT):
            if kind in kinds:
                return kind
        return FailureKind.OTHER

    if isinstance(exc, OSError) and exc.errno in _ERRNO_KINDS:
        return _ERRNO_KINDS[exc.errno]
    if isinstance(exc, ConnectionRefusedError):
        return FailureKind.CONNECTION_REFUSED

    # asyncio.wait_for expiry carries no errno
    if isinstance(exc, TimeoutError):
        return FailureKind.TIMED_OUT

    return FailureKind.OTHER


class TargetConnector:
    """Drives one outbound connection to the target for one client.

    ``connect()`` is idempotent while an attempt is in flight or the link is
    up. Every attempt arms a grace timer (if none is pending); when it
    expires before the link is up the target is presumed asleep and a wake
    packet is requested through the shared WakeTrigger. Transient failures
    are retried right away while a wake is active, otherwise the connector
    stays idle until the grace timer fires.
    """

    def __init__(self, target: TargetEndpoint, wake_trigger: WakeTrigger,
                 timing: Optional[TimingConfig] = None,
                 ssl_context: Optional[ssl.SSLContext] = None,
                 name: str = "target"):
        self.target = target
        self.wake_trigger = wake_trigger
        self.timing = timing or TimingConfig()
        self.ssl_context = ssl_context
        self.name = name

        self.state = ConnectorState.DISCONNECTED
        self.reader: Optional[asyncio.StreamReader] = None
        self.writer: Optional[asyncio.StreamWriter] = None

        self._loop = asyncio.get_running_loop()
        self.connected: asyncio.Future = self._loop.create_future()

        self._connect_task: Optional[asyncio.Task] = None
        self._wake_task: Optional[asyncio.Task] = None
        self._grace_timer: Optional[asyncio.TimerHandle] = None
        self._retry_handle: Optional[asyncio.Handle] = None

        self.connected_time: Optional[float] = None
        self.attempts = 0
        self.failures = 0
        self.last_failure: Optional[FailureKind] = None

    @property
    def is_closed(self) -> bool:
        return self.state == ConnectorState.CLOSED

    def _transition(self, new_state: ConnectorState) -> None:
        if new_state == self.state:
            return
        logger.debug(f"[{self.name}] connector {self.state.value} -> {new_state.value}")
        self.state = new_state

    def connect(self) -> bool:
        """Start an outbound attempt.

        Returns False without doing anything when an attempt is already in
        flight, the link is established, or the connector has been closed.
        """
        if self.state != ConnectorState.DISCONNECTED:
            return False

        self._transition(ConnectorState.CONNECTING)
        self.attempts += 1
        self._cancel_retry()

        logger.debug(f"[{self.name}] connecting to {self.target.hostname}:{self.target.port} "
                     f"(attempt {self.attempts})")
        self._connect_task = self._loop.create_task(self._open_connection())

        if self._grace_timer is None:
            self._grace_timer = self._loop.call_later(self.timing.grace_period, self._on_grace_elapsed)
        return True

    async def _open_connection(self) -> None:
        kwargs: Dict[str, Any] = {"all_errors": True}
        if self.ssl_context is not None:
            kwargs["ssl"] = self.ssl_context
            server_hostname = (self.target.ssl_options or {}).get("server_hostname")
            if server_hostname:
                kwargs["server_hostname"] = server_hostname

        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(self.target.hostname, self.target.port, **kwargs),
                timeout=self.timing.connection_timeout
            )
        except (OSError, ExceptionGroup) as exc:
            self._on_error(exc)
            return

        self._on_connect(reader, writer)

    def _on_connect(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        if self.is_closed:
            writer.close()
            return

        self._transition(ConnectorState.CONNECTED)
        self._cancel_timers()
        self.reader = reader
        self.writer = writer
        self.connected_time = time.time()

        logger.info(f"[{self.name}] connected to target {self.target.hostname}:{self.target.port} "
                    f"after {self.attempts} attempt(s)")

        if not self.connected.done():
            self.connected.set_result((reader, writer))

    def _on_error(self, exc: BaseException) -> None:
        if self.is_closed:
            return

        self._transition(ConnectorState.DISCONNECTED)
        self.failures += 1
        kind = classify_failure(exc)
        self.last_failure = kind

        if kind not in TRANSIENT_FAILURES:
            logger.warning(f"[{self.name}] unhandled target error, giving up on this attempt: {exc}")
            # Not retried; the owner of the connection pair cleans up
            self._cancel_timers()
            if not self.connected.done():
                self.connected.set_exception(exc)
            return

        if self.wake_trigger.is_active():
            logger.debug(f"[{self.name}] {kind.value} while target is waking, retrying")
            self._schedule_retry()
        else:
            logger.debug(f"[{self.name}] {kind.value}, waiting for grace period before waking target")

    def _schedule_retry(self) -> None:
        self._cancel_retry()
        if self.timing.retry_delay > 0:
            self._retry_handle = self._loop.call_later(self.timing.retry_delay, self.connect)
        else:
            self._retry_handle = self._loop.call_soon(self.connect)

    def _on_grace_elapsed(self) -> None:
        self._grace_timer = None
        if self.state in (ConnectorState.CONNECTED, ConnectorState.CLOSED):
            return
        self._wake_task = self._loop.create_task(self._wake_up_target())

    async def _wake_up_target(self) -> None:
        if not self.wake_trigger.is_active():
            logger.info(f"[{self.name}] target {self.target.hostname} not reachable after "
                        f"{self.timing.grace_period:.0f}s, sending Wake-on-LAN")
            await self.wake_trigger.send_if_needed(self.target.mac_address)

        # An idle connector has nobody else to restart it; a pending retry keeps its pace
        if self.state == ConnectorState.DISCONNECTED and self._retry_handle is None:
            self.connect()

    def handle_stream_closed(self) -> None:
        """Record that the established target stream went away."""
        if self.state == ConnectorState.CONNECTED:
            self._transition(ConnectorState.DISCONNECTED)

    def _cancel_retry(self) -> None:
        if self._retry_handle is not None:
            self._retry_handle.cancel()
            self._retry_handle = None

    def _cancel_timers(self) -> None:
        if self._grace_timer is not None:
            self._grace_timer.cancel()
            self._grace_timer = None
        self._cancel_retry()

    def close(self) -> None:
        """Destroy the target side. Safe to call more than once."""
        if self.is_closed:
            return

        self._transition(ConnectorState.CLOSED)
        self._cancel_timers()

        for task in (self._connect_task, self._wake_task):
            if task is not None and not task.done():
                task.cancel()
        if self.writer is not None:
            self.writer.close()
        if not self.connected.done():
            self.connected.cancel()

    def get_stats(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "attempts": self.attempts,
            "failures": self.failures,
            "last_failure": self.last_failure.value if self.last_failure else None,
            "connected_time": self.connected_time
        }
