#!/usr/bin/env python3
"""Tests for the command line entry point and the status endpoint."""

import io
import json
import os
import sys
import tempfile
import unittest
from contextlib import redirect_stdout
from unittest import mock

from aiohttp import test_utils

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

import main
from wol_proxy.proxy_server import ProxyServer


MAC = "AA:BB:CC:DD:EE:FF"


class TestStatusApp(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.proxy = ProxyServer().configure(
            {"port": 9000, "interface": "127.0.0.1"},
            {"hostname": "10.0.0.5", "port": 22, "mac_address": MAC}
        )
        self.client = test_utils.TestClient(test_utils.TestServer(main.create_status_app(self.proxy)))
        await self.client.start_server()
        self.addAsyncCleanup(self.client.close)

    async def test_health(self):
        response = await self.client.get('/health')

        self.assertEqual(response.status, 200)
        self.assertEqual(await response.json(), {"status": "healthy"})

    async def test_status_while_stopped(self):
        response = await self.client.get('/status')

        self.assertEqual(response.status, 503)
        self.assertEqual((await response.json())["status"], "stopped")

    async def test_status_while_running(self):
        # Report as running without binding the source port
        self.proxy.is_running = True

        response = await self.client.get('/')
        data = await response.json()

        self.assertEqual(response.status, 200)
        self.assertEqual(data["status"], "running")
        self.assertEqual(data["config"]["target"], "10.0.0.5:22")
        self.assertEqual(data["proxy"]["active_connections"], 0)


class TestCommandLine(unittest.TestCase):

    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.addCleanup(self.temp_dir.cleanup)
        self.config_path = os.path.join(self.temp_dir.name, 'config.json')

    def _write(self, data):
        with open(self.config_path, 'w', encoding='utf-8') as f:
            json.dump(data, f)

    def test_validate_config_prints_summary(self):
        self._write({
            "source": {"port": 2222},
            "target": {"hostname": "192.168.1.100", "port": 22, "mac_address": MAC}
        })

        output = io.StringIO()
        with redirect_stdout(output):
            self.assertEqual(main.validate_config(self.config_path), 0)

        self.assertIn("192.168.1.100:22", output.getvalue())
        self.assertIn("102 bytes to 192.168.1.255:9", output.getvalue())

    def test_validate_config_rejects_missing_target(self):
        self._write({"source": {"port": 2222}})

        with mock.patch('sys.stderr', new_callable=io.StringIO) as stderr:
            self.assertEqual(main.validate_config(self.config_path), 1)
        self.assertIn("target", stderr.getvalue())

    def test_status_disabled(self):
        self._write({"monitoring": {"health_check_enabled": False}})

        with redirect_stdout(io.StringIO()):
            self.assertEqual(main.show_status(self.config_path), 1)

    def test_create_config(self):
        with mock.patch.object(sys, 'argv', ['wol-proxy', '--config', self.config_path, '--create-config']):
            with redirect_stdout(io.StringIO()):
                self.assertEqual(main.main(), 0)

        self.assertEqual(main.validate_config(self.config_path + '.example'), 0)


if __name__ == '__main__':
    unittest.main()
