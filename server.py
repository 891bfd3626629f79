#!/usr/bin/env python3
# filename: server.py
# -----------------------------------------------------------------------------
# Project: Mediating DNS Server
# Version: 6.0.0 (Single Startup Path)
# -----------------------------------------------------------------------------
"""
Main Server Module.

Loads configuration, builds the mediation components, binds the UDP/TCP
listeners and runs until SIGINT/SIGTERM. SIGHUP reloads the block lists.
"""

import asyncio
import argparse
import os
import signal
import sys
from typing import Any, List

import yaml

from config_validator import validate_config
from defaults import merge_with_defaults
from ledger import ClientLedger
from list_manager import BlocklistStore
from notifier import WebhookNotifier
from overrides import OverrideTable
from resolver import DNSHandler
from risk import build_risk_evaluator
from status_server import StatusServer
from upstream_manager import UpstreamManager
from utils import setup_logger, get_server_ips, get_logger

logger = get_logger("Server")

VERSION = "6.0.0"


class UDPServer(asyncio.DatagramProtocol):
    """One task per datagram, bounded by a semaphore; excess packets are dropped."""

    def __init__(self, handler, host, port, max_concurrent=1000):
        self.handler = handler
        self.host = host
        self.port = port
        self.meta = {'proto': 'udp', 'server_ip': host, 'server_port': port}
        self.transport = None
        self.slots = asyncio.Semaphore(max_concurrent)
        self.pending = set()

    def connection_made(self, transport):
        self.transport = transport
        logger.debug(f"UDP socket ready on {self.host}:{self.port}")

    def datagram_received(self, data, addr):
        if self.slots.locked():
            logger.warning(f"UDP concurrency limit reached, dropping query from {addr}")
            return
        task = asyncio.create_task(self._answer(data, addr))
        self.pending.add(task)
        task.add_done_callback(self.pending.discard)

    def error_received(self, exc):
        logger.debug(f"UDP socket error on {self.host}:{self.port}: {exc}")

    async def _answer(self, data, addr):
        async with self.slots:
            try:
                reply = await self.handler.process_query(data, addr, self.meta)
            except Exception as e:
                logger.exception(f"Unhandled error answering UDP query from {addr}: {e}")
                return
            if reply and self.transport is not None and not self.transport.is_closing():
                self.transport.sendto(reply, addr)


class TCPServer:
    """Length-prefixed DNS over TCP; a connection may carry several queries."""

    def __init__(self, handler, host, port):
        self.handler = handler
        self.host = host
        self.port = port
        self.meta = {'proto': 'tcp', 'server_ip': host, 'server_port': port}

    @staticmethod
    async def _read_frame(reader):
        try:
            header = await reader.readexactly(2)
        except asyncio.IncompleteReadError as e:
            if e.partial:
                raise
            return None
        return await reader.readexactly(int.from_bytes(header, 'big'))

    async def handle_client(self, reader, writer):
        peer = writer.get_extra_info('peername')
        logger.debug(f"TCP client {peer} connected to {self.host}:{self.port}")
        try:
            while True:
                data = await self._read_frame(reader)
                if data is None:
                    break
                reply = await self.handler.process_query(data, peer, self.meta)
                if reply:
                    writer.write(len(reply).to_bytes(2, 'big') + reply)
                    await writer.drain()
        except (asyncio.IncompleteReadError, ConnectionError) as e:
            logger.debug(f"TCP client {peer} went away mid-message: {e!r}")
        except Exception as e:
            logger.exception(f"Unhandled error on TCP connection from {peer}: {e}")
        finally:
            writer.close()


class Listeners:
    """Owns every bound UDP transport and TCP server."""

    def __init__(self, handler, config: dict):
        self.handler = handler
        server_cfg = config.get('server', {})
        self.ips = get_server_ips(config)
        self.udp_ports = self._as_list(server_cfg.get('port_udp', [53]))
        self.tcp_ports = self._as_list(server_cfg.get('port_tcp', [53]))
        self.udp_concurrency = server_cfg.get('udp_concurrency', 1000)
        self.transports = []
        self.servers = []

    @staticmethod
    def _as_list(value) -> List[int]:
        return list(value) if isinstance(value, list) else [value]

    async def start(self) -> int:
        """Bind everything that can be bound. Returns the number of live listeners."""
        loop = asyncio.get_running_loop()
        for ip in self.ips:
            for port in self.udp_ports:
                try:
                    transport, _ = await loop.create_datagram_endpoint(
                        lambda h=ip, p=port: UDPServer(self.handler, h, p, self.udp_concurrency),
                        local_addr=(ip, port),
                    )
                except OSError as e:
                    logger.error(f"✗ UDP bind failed on {ip}:{port}: {e}")
                    continue
                self.transports.append(transport)
                logger.info(f"✓ UDP listening on {ip}:{port}")

            for port in self.tcp_ports:
                try:
                    srv = await asyncio.start_server(TCPServer(self.handler, ip, port).handle_client, ip, port)
                except OSError as e:
                    logger.error(f"✗ TCP bind failed on {ip}:{port}: {e}")
                    continue
                self.servers.append(srv)
                logger.info(f"✓ TCP listening on {ip}:{port}")

        return len(self.transports) + len(self.servers)

    async def close(self):
        for transport in self.transports:
            transport.close()
        for srv in self.servers:
            srv.close()
            await srv.wait_closed()


def parse_arguments(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Mediating DNS Server")
    parser.add_argument("-c", "--config", default="config.yaml", help="YAML configuration file")
    parser.add_argument("--validate-only", action="store_true", help="Check the configuration and exit")
    parser.add_argument("--skip-validation", action="store_true", help="Start without checking the configuration")
    return parser.parse_args(argv)


def load_config(path: str) -> dict:
    """Read a YAML config file and fill in defaults. Raises on unreadable files."""
    with open(path, 'r') as f:
        raw = yaml.safe_load(f) or {}
    if not isinstance(raw, dict):
        raise ValueError(f"Top level of {path} must be a mapping")
    return merge_with_defaults(raw)


def prepare_config(args: argparse.Namespace) -> dict:
    """Phase 1: load and validate. Exits the process on fatal problems."""
    logger.info(">>> Phase 1: Configuration Loading")
    if os.path.exists(args.config):
        try:
            config = load_config(args.config)
        except Exception as e:
            print(f"FATAL: Cannot load {args.config}: {e}")
            sys.exit(1)
        logger.info(f"Configuration read from {args.config}")
    elif args.validate_only:
        print(f"Config not found at {args.config}")
        sys.exit(1)
    else:
        print(f"Config not found at {args.config}, running on built-in defaults")
        config = merge_with_defaults({})

    if args.skip_validation and not args.validate_only:
        logger.warning("Configuration validation SKIPPED (--skip-validation)")
        return config

    logger.info(">>> Phase 1.5: Configuration Validation")
    is_valid, _, _ = validate_config(config)
    if not is_valid:
        logger.error("Refusing to start with an invalid configuration")
        sys.exit(1)
    if args.validate_only:
        print("\n✅ Configuration validation PASSED")
        sys.exit(0)
    return config


def build_handler(config: dict) -> DNSHandler:
    """Build every mediation component from config and wire them into a DNSHandler."""
    return DNSHandler(
        config=config,
        store=BlocklistStore(config.get('blocklists', {})),
        overrides=OverrideTable.from_config(config.get('overrides', {})),
        upstream=UpstreamManager(config.get('upstream', {})),
        ledger=ClientLedger(
            max_entries=config.get('ledger', {}).get('max_entries', 1000),
            names=config.get('clients', {}).get('names'),
        ),
        risk=build_risk_evaluator(config.get('risk', {})),
        notifier=WebhookNotifier(config.get('notifications', {})),
    )


async def reload_lists(store: BlocklistStore) -> None:
    logger.info("SIGHUP received, reloading block lists")
    if await store.reload():
        logger.info("Block lists reloaded")
    else:
        logger.warning("Block list reload incomplete, failed lists keep their previous entries")


def spawn(coro, tasks: set) -> asyncio.Task:
    """Start coro as a task held in tasks until it finishes."""
    task = asyncio.create_task(coro)
    tasks.add(task)
    task.add_done_callback(tasks.discard)
    return task


async def close_components(handler: DNSHandler) -> None:
    await handler.notifier.close()
    await handler.risk.close()
    await handler.upstream.close()


async def main() -> None:
    config: dict[str, Any] = prepare_config(parse_arguments())

    setup_logger(config)
    logger.info(f"Starting Mediating DNS Server v{VERSION}")

    logger.info(">>> Phase 2: Component Initialization")
    handler = build_handler(config)
    await handler.store.reload()

    logger.info(">>> Phase 3: Starting Listeners")
    listeners = Listeners(handler, config)
    if not await listeners.start():
        logger.error("No DNS listener could be bound, exiting")
        await close_components(handler)
        sys.exit(1)

    logger.info(">>> Phase 4: Background Services")
    refresh_task = asyncio.create_task(handler.store.refresh_loop())

    status = None
    if config.get('dashboard', {}).get('enabled', False):
        status = StatusServer(handler, config['dashboard'])
        try:
            await status.start()
        except OSError as e:
            logger.error(f"✗ Status API bind failed: {e}")
            status = None
    else:
        logger.info("Status API disabled (set dashboard.enabled: true to enable)")

    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()

    def request_stop(sig: signal.Signals):
        logger.info(f"Received exit signal {sig.name}...")
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, request_stop, sig)
    background: set = set()
    loop.add_signal_handler(signal.SIGHUP, lambda: spawn(reload_lists(handler.store), background))

    logger.info("Server Ready. Press Ctrl+C to stop.")
    await stop_event.wait()

    logger.info("Shutting down...")
    refresh_task.cancel()
    for task in list(background):
        task.cancel()
    await listeners.close()
    if status is not None:
        await status.close()
    await close_components(handler)
    logger.info(f"Server stopped. Final stats: {handler.get_stats()}")


def run() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
