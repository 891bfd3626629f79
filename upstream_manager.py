#!/usr/bin/env python3
# filename: upstream_manager.py
# -----------------------------------------------------------------------------
# Project: Mediating DNS Server
# Version: 8.0.0 (Sequential Failover)
# -----------------------------------------------------------------------------
"""
Upstream DNS forwarding with strict, priority ordered failover.

Upstreams are tried one at a time in configured order. Each attempt gets its
own timeout; a timeout, transport error or mismatched reply moves on to the
next server. The first valid reply wins and is returned untouched. Worst case
latency is therefore timeout * number of upstreams.
"""

import asyncio
import ipaddress
import socket
import time
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional
from urllib.parse import urlparse

import dns.exception
import dns.flags
import dns.message

from utils import get_logger

logger = get_logger("Upstream")

DEFAULT_SERVERS = ['8.8.8.8', '1.1.1.1']
VALID_PROTOS = {'udp': 53, 'tcp': 53}


class UpstreamError(Exception):
    """Transport level failure talking to one upstream"""
    pass


@dataclass
class ForwardResult:
    response: Optional[dns.message.Message] = None
    server: Optional[str] = None
    attempts: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.response is not None


class UpstreamManager:
    def __init__(self, config: Optional[dict] = None):
        self.config = config if isinstance(config, dict) else {}
        self.servers: List[dict] = []

        try:
            self.timeout = float(self.config.get('timeout', 2.0))
            if self.timeout <= 0:
                self.timeout = 2.0
        except (ValueError, TypeError):
            self.timeout = 2.0

        self.tcp_fallback = self.config.get('tcp_fallback', True)
        self.stats: Dict[str, dict] = {}

        self.parse_config(self.config)

        if not self.servers:
            logger.warning("No valid upstream servers configured. Injecting defaults.")
            self.parse_config({'servers': DEFAULT_SERVERS})

        order = ", ".join(s['id'] for s in self.servers)
        logger.info(f"Initializing UpstreamManager. Failover order: [{order}], Timeout: {self.timeout}s")

    # =========================================================================
    # CONFIG
    # =========================================================================

    @staticmethod
    def _is_valid_ip(ip_str: str) -> bool:
        try:
            ipaddress.ip_address(ip_str)
            return True
        except ValueError:
            return False

    def parse_config(self, config):
        raw_servers = config.get('servers') or []
        if not isinstance(raw_servers, list):
            logger.warning("upstream.servers must be a list, ignoring")
            return

        self.servers = []
        for s_str in raw_servers:
            if not isinstance(s_str, str) or not s_str.strip():
                logger.warning(f"Empty or invalid upstream entry {s_str!r}, skipping")
                continue
            s_str = s_str.strip()

            to_parse = s_str
            if '://' not in s_str:
                # Bare IPv6 needs brackets before urlparse can split a port off
                if s_str.count(':') > 1 and not s_str.startswith('['):
                    to_parse = f"udp://[{s_str}]"
                else:
                    to_parse = f"udp://{s_str}"

            try:
                parsed = urlparse(to_parse)
                proto = parsed.scheme.lower()
                host = parsed.hostname
                port = parsed.port
            except ValueError as e:
                logger.warning(f"Failed to parse upstream '{s_str}': {e}")
                continue

            if proto not in VALID_PROTOS:
                logger.warning(f"Unsupported protocol '{proto}' in '{s_str}', skipping")
                continue
            if not host or not self._is_valid_ip(host):
                logger.warning(f"Upstream must be an IP address, not a hostname: '{s_str}', skipping")
                continue
            if port is None:
                port = VALID_PROTOS[proto]

            server_id = f"{proto}://{host}:{port}" if ':' not in host else f"{proto}://[{host}]:{port}"
            self.servers.append({'id': server_id, 'proto': proto, 'ip': host, 'port': port})
            self.stats.setdefault(server_id, {
                'success': 0, 'failure': 0, 'timeouts': 0, 'last_latency_ms': None
            })
            logger.debug(f"Upstream #{len(self.servers)}: {server_id}")

        logger.info(f"Parsed {len(self.servers)} upstream servers from configuration")

    # =========================================================================
    # FORWARDING
    # =========================================================================

    async def forward(self, request: dns.message.Message, req_logger=None) -> ForwardResult:
        """
        Send request to each upstream in order until one gives a valid reply.

        Never raises for transport problems; an exhausted list is reported as a
        ForwardResult without response.
        """
        log = req_logger or logger
        wire = request.to_wire()
        result = ForwardResult()

        for server in self.servers:
            server_id = server['id']
            stats = self.stats[server_id]
            result.attempts.append(server_id)
            start_t = time.time()

            try:
                data = await asyncio.wait_for(self._query_server(server, wire), self.timeout)
                response = dns.message.from_wire(data)
                if not request.is_response(response):
                    raise UpstreamError("reply does not match query")
            except asyncio.TimeoutError:
                stats['timeouts'] += 1
                stats['failure'] += 1
                log.warning(f"Upstream {server_id} timed out after {self.timeout}s")
                continue
            except Exception as e:
                stats['failure'] += 1
                log.warning(f"Upstream forward error {server_id}: {e}")
                continue

            dur_ms = (time.time() - start_t) * 1000
            stats['success'] += 1
            stats['last_latency_ms'] = round(dur_ms, 2)
            result.response = response
            result.server = server_id
            if log.isEnabledFor(logging.DEBUG):
                log.debug(f"Forwarded -> {server_id} ({dur_ms:.2f}ms, {len(response.answer)} answer RRsets)")
            return result

        log.error(f"All {len(self.servers)} upstream servers failed to respond")
        return result

    async def _query_server(self, server: dict, wire: bytes) -> bytes:
        if server['proto'] == 'tcp':
            return await self._tcp_query(server['ip'], server['port'], wire)

        data = await self._udp_query(server['ip'], server['port'], wire)
        if self.tcp_fallback and self._is_truncated(data):
            logger.debug(f"Truncated UDP reply from {server['id']}, retrying over TCP")
            return await self._tcp_query(server['ip'], server['port'], wire)
        return data

    @staticmethod
    def _is_truncated(data: bytes) -> bool:
        # TC bit lives in the flags word at bytes 2-3
        if len(data) < 4:
            return False
        flags = int.from_bytes(data[2:4], 'big')
        return bool(flags & dns.flags.TC)

    # =========================================================================
    # TRANSPORT: UDP & TCP
    # =========================================================================

    async def _udp_query(self, ip, port, data) -> bytes:
        loop = asyncio.get_running_loop()
        family = socket.AF_INET6 if ipaddress.ip_address(ip).version == 6 else socket.AF_INET
        sock = socket.socket(family, socket.SOCK_DGRAM)
        try:
            sock.setblocking(False)
            await loop.sock_connect(sock, (ip, port))
            await loop.sock_sendall(sock, data)
            return await loop.sock_recv(sock, 65535)
        finally:
            sock.close()

    async def _tcp_query(self, ip, port, data) -> bytes:
        reader, writer = await asyncio.open_connection(ip, port)
        try:
            writer.write(len(data).to_bytes(2, 'big') + data)
            await writer.drain()
            len_bytes = await reader.readexactly(2)
            length = int.from_bytes(len_bytes, 'big')
            return await reader.readexactly(length)
        except asyncio.IncompleteReadError as e:
            raise UpstreamError(f"TCP connection closed early ({len(e.partial)} bytes read)") from e
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except Exception:
                pass

    def get_stats(self) -> List[dict]:
        return [dict(self.stats[s['id']], id=s['id'], priority=i + 1) for i, s in enumerate(self.servers)]

    async def close(self):
        logger.debug("Upstream manager closed")
