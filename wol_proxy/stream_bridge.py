"""Full-duplex relay between the client stream and the target stream."""

import asyncio
import logging
from typing import Dict, Optional


logger = logging.getLogger(__name__)

BUFFER_SIZE = 65536


class StreamBridge:
    """Copies bytes in both directions until either side closes.

    Closure is always symmetric: as soon as one direction sees EOF or an
    error, both writers are closed in the same step. There is no half-open
    state.
    """

    def __init__(self, client_reader: asyncio.StreamReader, client_writer: asyncio.StreamWriter,
                 target_reader: asyncio.StreamReader, target_writer: asyncio.StreamWriter,
                 name: str = "bridge", buffer_size: int = BUFFER_SIZE):
        self.client_reader = client_reader
        self.client_writer = client_writer
        self.target_reader = target_reader
        self.target_writer = target_writer
        self.name = name
        self.buffer_size = buffer_size

        self.bytes_transferred: Dict[str, int] = {
            "client->target": 0,
            "target->client": 0
        }
        self.closed_by: Optional[str] = None
        self._closed = False

    async def run(self) -> Optional[str]:
        """Relay until one side closes. Returns the direction that ended first."""
        tasks = {
            asyncio.create_task(self._forward(self.client_reader, self.target_writer, "client->target")),
            asyncio.create_task(self._forward(self.target_reader, self.client_writer, "target->client")),
            # A reset is only seen by a reader; these catch it while a forward is stuck in drain()
            asyncio.create_task(self._watch_lost(self.client_writer, "client->target")),
            asyncio.create_task(self._watch_lost(self.target_writer, "target->client"))
        }

        try:
            await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            self.close()
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        logger.debug(f"[{self.name}] relay finished, closed by {self.closed_by} "
                     f"(c->t {self.bytes_transferred['client->target']} bytes, "
                     f"t->c {self.bytes_transferred['target->client']} bytes)")
        return self.closed_by

    async def _forward(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter,
                       direction: str) -> None:
        clean_eof = False
        try:
            while True:
                data = await reader.read(self.buffer_size)
                if not data:
                    clean_eof = True
                    break
                writer.write(data)
                self.bytes_transferred[direction] += len(data)
                await writer.drain()
        except (ConnectionError, OSError) as e:
            logger.debug(f"[{self.name}] forwarding {direction} ended: {e}")
        finally:
            if self.closed_by is None:
                self.closed_by = direction
            self.close(abort=not clean_eof)

    async def _watch_lost(self, writer: asyncio.StreamWriter, direction: str) -> None:
        try:
            await writer.wait_closed()
        except (ConnectionError, OSError) as e:
            logger.debug(f"[{self.name}] {direction.split('->')[0]} connection lost: {e}")

        if self.closed_by is None:
            self.closed_by = direction
        self.close(abort=True)

    def close(self, abort: bool = False) -> None:
        """Close both streams. Idempotent.

        A clean EOF closes gracefully so bytes already written still reach
        the peer. Errors, lost connections and external teardown abort both
        transports, discarding anything still buffered.
        """
        if self._closed:
            return
        self._closed = True
        for writer in (self.client_writer, self.target_writer):
            if abort:
                writer.transport.abort()
            else:
                writer.close()
