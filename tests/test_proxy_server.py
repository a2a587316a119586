#!/usr/bin/env python3
"""End-to-end tests for the proxy over loopback sockets."""

import asyncio
import os
import socket
import sys
import unittest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from wol_proxy.config_manager import ConfigurationError, ProxyConfig, SourceEndpoint
from wol_proxy.proxy_server import HOLD_LIMIT, ProxyServer
from wol_proxy.target_connector import ConnectorState, FailureKind


MAC = "AA:BB:CC:DD:EE:FF"
FAST_TIMING = {
    "grace_period": 0.05,
    "retry_delay": 0.01,
    "connection_timeout": 1
}


def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


async def wait_until(predicate, timeout: float = 3.0) -> None:
    async def poll():
        while not predicate():
            await asyncio.sleep(0.01)
    await asyncio.wait_for(poll(), timeout)


class RecordingSender:
    def __init__(self):
        self.sent = []

    async def send(self, hardware_address):
        self.sent.append(hardware_address)
        return True


class TargetMachine:
    """Loopback server standing in for the machine behind the proxy."""

    def __init__(self, port: int, greeting: bytes = b"welcome"):
        self.port = port
        self.greeting = greeting
        self.server = None
        self.received = bytearray()
        self.connections = 0
        self.closed_connections = 0

    async def boot(self) -> None:
        self.server = await asyncio.start_server(self._on_client, "127.0.0.1", self.port)

    async def _on_client(self, reader, writer):
        self.connections += 1
        writer.write(self.greeting)
        await writer.drain()
        while True:
            data = await reader.read(1024)
            if not data:
                break
            self.received.extend(data)
        self.closed_connections += 1
        writer.close()

    async def shutdown(self) -> None:
        if self.server:
            self.server.close()
            await self.server.wait_closed()


class ProxyTestCase(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.source_port = free_port()
        self.target = TargetMachine(free_port())
        self.addAsyncCleanup(self.target.shutdown)

        self.sender = RecordingSender()
        self.proxy = ProxyServer(wol_sender=self.sender)
        self.proxy.configure(
            {"port": self.source_port, "interface": "127.0.0.1"},
            {"hostname": "127.0.0.1", "port": self.target.port, "mac_address": MAC},
            FAST_TIMING
        )
        await self.proxy.run()
        self.addAsyncCleanup(self.proxy.shutdown)

    async def open_client(self):
        reader, writer = await asyncio.open_connection("127.0.0.1", self.source_port)
        self.addCleanup(writer.close)
        return reader, writer


class TestProxyScenarios(ProxyTestCase):

    async def test_target_online_relays_both_directions(self):
        await self.target.boot()
        reader, writer = await self.open_client()

        self.assertEqual(await asyncio.wait_for(reader.readexactly(7), 2), b"welcome")
        writer.write(b"ping")
        await writer.drain()
        await wait_until(lambda: bytes(self.target.received) == b"ping")

        self.assertEqual(self.sender.sent, [])

    async def test_wakes_sleeping_target_and_bridges(self):
        reader, writer = await self.open_client()
        writer.write(b"hello")
        await writer.drain()

        await wait_until(lambda: self.sender.sent)
        self.assertEqual(self.sender.sent, [MAC])

        pair = next(iter(self.proxy.pairs.values()))
        self.assertEqual(pair.connector.last_failure, FailureKind.CONNECTION_REFUSED)
        attempts = pair.connector.attempts
        await wait_until(lambda: pair.connector.attempts > attempts + 2)

        waiting = self.proxy.get_status()["connections"][0]
        self.assertFalse(waiting["bridged"])
        self.assertEqual(waiting["held_bytes"], 5)

        await self.target.boot()

        self.assertEqual(await asyncio.wait_for(reader.readexactly(7), 3), b"welcome")
        writer.write(b"ping")
        await writer.drain()
        await wait_until(lambda: bytes(self.target.received) == b"helloping")

        self.assertEqual(pair.connector.state, ConnectorState.CONNECTED)
        self.assertEqual(self.sender.sent, [MAC])

    async def test_concurrent_clients_share_one_wake(self):
        first_reader, _ = await self.open_client()
        second_reader, _ = await self.open_client()

        await wait_until(lambda: len(self.proxy.pairs) == 2 and self.sender.sent)
        await asyncio.sleep(FAST_TIMING["grace_period"] * 6)

        self.assertEqual(self.sender.sent, [MAC])
        self.assertEqual(self.proxy.wake_trigger.stats["packets_sent"], 1)

        await self.target.boot()
        self.assertEqual(await asyncio.wait_for(first_reader.readexactly(7), 3), b"welcome")
        self.assertEqual(await asyncio.wait_for(second_reader.readexactly(7), 3), b"welcome")
        self.assertEqual(self.target.connections, 2)

    async def test_client_close_destroys_target_stream(self):
        await self.target.boot()
        reader, writer = await self.open_client()
        await asyncio.wait_for(reader.readexactly(7), 2)

        writer.close()
        await wait_until(lambda: self.target.closed_connections == 1)
        await wait_until(lambda: not self.proxy.pairs)

        self.assertEqual(self.proxy.stats["total_connections"], 1)

    async def test_target_close_closes_client(self):
        await self.target.boot()
        reader, writer = await self.open_client()
        await asyncio.wait_for(reader.readexactly(7), 2)

        pair = next(iter(self.proxy.pairs.values()))
        pair.connector.writer.close()

        self.assertEqual(await asyncio.wait_for(reader.read(), 2), b"")
        await wait_until(lambda: not self.proxy.pairs)

    async def test_client_leaving_early_stops_retries(self):
        reader, writer = await self.open_client()
        await wait_until(lambda: self.proxy.pairs)
        pair = next(iter(self.proxy.pairs.values()))

        writer.close()
        await wait_until(lambda: not self.proxy.pairs)
        attempts = pair.connector.attempts
        await asyncio.sleep(FAST_TIMING["grace_period"] * 4)

        self.assertEqual(pair.connector.state, ConnectorState.CLOSED)
        self.assertEqual(pair.connector.attempts, attempts)

    async def test_client_filling_hold_buffer_is_dropped(self):
        forgotten = []
        forget_pair = self.proxy._forget_pair

        def record(pair):
            forgotten.append(pair)
            forget_pair(pair)
        self.proxy._forget_pair = record

        reader, writer = await self.open_client()
        writer.write(b"x" * (HOLD_LIMIT * 3))
        writer.close()

        await wait_until(lambda: forgotten)
        pair = forgotten[0]
        attempts = pair.connector.attempts
        await asyncio.sleep(FAST_TIMING["grace_period"] * 4)

        self.assertFalse(self.proxy.pairs)
        self.assertEqual(pair.connector.state, ConnectorState.CLOSED)
        self.assertEqual(pair.connector.attempts, attempts)
        self.assertLessEqual(len(self.sender.sent), 1)

    async def test_status_reports_counters(self):
        await self.target.boot()
        reader, writer = await self.open_client()
        await asyncio.wait_for(reader.readexactly(7), 2)
        writer.write(b"ping")
        await writer.drain()
        await wait_until(lambda: bytes(self.target.received) == b"ping")
        writer.close()
        await wait_until(lambda: not self.proxy.pairs)

        status = self.proxy.get_status()
        self.assertTrue(status["is_running"])
        self.assertEqual(status["active_connections"], 0)
        self.assertEqual(status["statistics"]["total_connections"], 1)
        self.assertEqual(status["statistics"]["bytes_client_to_target"], 4)
        self.assertEqual(status["statistics"]["bytes_target_to_client"], 7)
        self.assertEqual(status["statistics"]["wake_packets_sent"], 0)

        info = self.proxy.get_config_info()
        self.assertEqual(info["source"], f"127.0.0.1:{self.source_port}")
        self.assertEqual(info["mac_address"], MAC)

    async def test_shutdown_closes_live_connections(self):
        reader, writer = await self.open_client()
        await wait_until(lambda: self.proxy.pairs)

        await self.proxy.shutdown()

        self.assertFalse(self.proxy.is_running)
        self.assertEqual(await asyncio.wait_for(reader.read(), 2), b"")


class TestProxyConfiguration(unittest.IsolatedAsyncioTestCase):

    async def test_run_without_configuration_fails(self):
        proxy = ProxyServer(wol_sender=RecordingSender())

        with self.assertRaises(ConfigurationError):
            await proxy.run()
        self.assertIsNone(proxy.server)
        self.assertFalse(proxy.is_running)

    async def test_run_without_target_opens_no_socket(self):
        port = free_port()
        proxy = ProxyServer(ProxyConfig(source=SourceEndpoint(port=port, interface="127.0.0.1"), target=None))

        with self.assertRaisesRegex(ConfigurationError, "target"):
            await proxy.run()
        self.assertIsNone(proxy.server)

        # Port is still free
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind(("127.0.0.1", port))

    async def test_configure_requires_both_sides(self):
        proxy = ProxyServer()

        with self.assertRaisesRegex(ConfigurationError, "source"):
            proxy.configure(None, {"port": 22, "mac_address": MAC})
        with self.assertRaisesRegex(ConfigurationError, "target"):
            proxy.configure(9000, None)
        self.assertIsNone(proxy.config)

    async def test_configure_returns_server(self):
        proxy = ProxyServer().configure(9000, {"port": 22, "mac_address": MAC}, {"wake_up_timeout": 30})

        self.assertEqual(proxy.config.source.port, 9000)
        self.assertEqual(proxy.config.target.hostname, "localhost")
        self.assertEqual(proxy.config.timing.wake_up_timeout, 30.0)


if __name__ == '__main__':
    unittest.main()
