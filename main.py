#!/usr/bin/env python3
"""Wake-on-LAN Proxy - Main Entry Point

Listens for clients on the source port and forwards them to the target
machine, sending it a Wake-on-LAN packet first when it is asleep.
"""

import asyncio
import argparse
import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Optional

import requests
import sdnotify
from aiohttp import web

from wol_proxy import __version__
from wol_proxy.config_manager import ConfigManager, ConfigurationError
from wol_proxy.proxy_server import ProxyServer
from wol_proxy.wol_sender import WoLSender


LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def setup_logging(log_config: dict) -> None:
    """Route the root logger to stdout and/or a rotating log file."""
    formatter = logging.Formatter(LOG_FORMAT, datefmt='%Y-%m-%d %H:%M:%S')
    handlers = []

    if log_config.get("console_output", True):
        handlers.append(logging.StreamHandler(sys.stdout))

    log_file = log_config.get("file")
    if log_file:
        try:
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)
            handlers.append(logging.handlers.RotatingFileHandler(
                log_file,
                maxBytes=log_config.get("max_size_mb", 10) * 1024 * 1024,
                backupCount=log_config.get("backup_count", 3),
                encoding='utf-8'
            ))
        except OSError as e:
            print(f"Warning: Could not set up file logging for {log_file}: {e}", file=sys.stderr)
            print("Continuing with console logging only", file=sys.stderr)

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    for handler in handlers:
        handler.setFormatter(formatter)
        root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, log_config.get("level", "INFO").upper()))

    logging.info(f"Logging configured - Level: {log_config.get('level', 'INFO')}, File: {log_file or 'none'}")


def create_status_app(proxy_server: ProxyServer) -> web.Application:
    """HTTP endpoints exposing proxy state as JSON."""

    async def get_status(request):
        if not proxy_server.is_running:
            return web.json_response({"status": "stopped", "message": "Proxy is not running"}, status=503)
        return web.json_response({
            "status": "running",
            "proxy": proxy_server.get_status(),
            "config": proxy_server.get_config_info()
        })

    async def health_check(request):
        return web.json_response({"status": "healthy"})

    app = web.Application()
    app.router.add_get('/', get_status)
    app.router.add_get('/status', get_status)
    app.router.add_get('/health', health_check)
    return app


async def start_status_server(proxy_server: ProxyServer, port: int) -> web.AppRunner:
    runner = web.AppRunner(create_status_app(proxy_server))
    await runner.setup()
    await web.TCPSite(runner, '0.0.0.0', port).start()

    logging.info(f"Status server started on port {port}")
    return runner


async def main_service(config_path: str) -> int:
    """Run the proxy until SIGINT/SIGTERM."""
    config_manager = ConfigManager(config_path)
    try:
        config = config_manager.load_config()
        setup_logging(config["logging"])
        proxy_server = ProxyServer(config_manager.build_proxy_config())

        logging.info(f"Starting WoL Proxy {__version__} with {config_path}")
        await proxy_server.run()
    except ConfigurationError as e:
        logging.error(f"Invalid configuration: {e}")
        return 1
    except OSError as e:
        logging.error(f"Failed to start proxy service: {e}")
        return 1

    status_runner: Optional[web.AppRunner] = None
    monitoring = config["monitoring"]
    if monitoring["health_check_enabled"]:
        try:
            status_runner = await start_status_server(proxy_server, monitoring["status_endpoint_port"])
        except OSError as e:
            logging.warning(f"Failed to start status server: {e}")

    notifier = sdnotify.SystemdNotifier()
    notifier.notify("READY=1")
    try:
        await proxy_server.run_forever()
    finally:
        notifier.notify("STOPPING=1")
        if status_runner is not None:
            await status_runner.cleanup()

    logging.info("WoL Proxy stopped")
    return 0


def validate_config(path: str) -> int:
    """Check a configuration file and print what it resolves to."""
    config_manager = ConfigManager(path)
    try:
        config = config_manager.load_config()
        proxy_config = config_manager.build_proxy_config()
    except ConfigurationError as e:
        print(f"Configuration validation failed: {e}", file=sys.stderr)
        return 1

    source, target, timing = proxy_config.source, proxy_config.target, proxy_config.timing
    packet = WoLSender(target).get_packet_info()

    print(f"Configuration file {path} is valid\n")
    print(f"  Listen:          {source.interface}:{source.port}{' (TLS)' if source.ssl_options else ''}")
    print(f"  Target:          {target.hostname}:{target.port}{' (TLS)' if target.ssl_options else ''}")
    print(f"  MAC Address:     {target.mac_address}")
    print(f"  Wake Packet:     {packet['packet_size']} bytes to {packet['broadcast_ip']}:{packet['wol_port']}")
    print(f"  Wake-up Timeout: {timing.wake_up_timeout:g}s")
    print(f"  Grace Period:    {timing.grace_period:g}s")
    print(f"  Status Endpoint: {'port %s' % config['monitoring']['status_endpoint_port'] if config['monitoring']['health_check_enabled'] else 'disabled'}")
    return 0


def show_status(config_path: str) -> int:
    """Query a running proxy through its status endpoint."""
    try:
        monitoring = ConfigManager(config_path).load_config()["monitoring"]
    except ConfigurationError as e:
        print(f"Failed to read configuration: {e}", file=sys.stderr)
        return 1

    if not monitoring["health_check_enabled"]:
        print("Status endpoint is disabled in configuration")
        return 1

    try:
        response = requests.get(f"http://localhost:{monitoring['status_endpoint_port']}/status", timeout=5)
        status_data = response.json()
    except (requests.RequestException, ValueError) as e:
        print(f"Failed to get status: {e}", file=sys.stderr)
        return 1

    print("WoL Proxy Status:")
    print(f"  Status: {status_data['status']}")

    proxy = status_data.get('proxy')
    if proxy:
        stats = proxy['statistics']
        print(f"  Uptime: {proxy['uptime']}")
        print(f"  Active Connections: {proxy['active_connections']} "
              f"({proxy['pending_connections']} waiting for target)")
        print(f"  Wake Active: {proxy['wake'].get('active', False)}")
        print(f"  Total Connections: {stats['total_connections']}")
        print(f"  Wake Packets Sent: {stats['wake_packets_sent']}")
        print(f"  Traffic: {stats['traffic']['client_to_target']} up, "
              f"{stats['traffic']['target_to_client']} down")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Wake-on-LAN Proxy",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s                              # Run with default config.json
  %(prog)s --config /etc/wol-proxy.json # Run with custom config
  %(prog)s --create-config               # Write config.json.example
  %(prog)s --validate-config             # Validate current config
  %(prog)s --status                      # Show status of a running proxy
        """
    )
    parser.add_argument('--config', '-c', default='config.json',
                        help='Configuration file path (default: config.json)')
    parser.add_argument('--version', '-v', action='version', version=f'WoL Proxy {__version__}')

    commands = parser.add_mutually_exclusive_group()
    commands.add_argument('--create-config', action='store_true', help='Create an example configuration file')
    commands.add_argument('--validate-config', action='store_true', help='Validate the configuration file')
    commands.add_argument('--status', action='store_true', help='Show current proxy status')
    return parser


def main() -> int:
    args = build_parser().parse_args()

    if args.create_config:
        path = args.config + '.example'
        ConfigManager().save_example_config(path)
        print(f"Example configuration saved to: {path}")
        return 0
    if args.validate_config:
        return validate_config(args.config)
    if args.status:
        return show_status(args.config)

    try:
        return asyncio.run(main_service(args.config))
    except KeyboardInterrupt:
        print("\nInterrupted")
        return 0


if __name__ == '__main__':
    sys.exit(main())
