#!/usr/bin/env python3
# filename: status_server.py
# -----------------------------------------------------------------------------
# Project: Mediating DNS Server
# Version: 2.0.0 (FastAPI)
# -----------------------------------------------------------------------------
"""
Read-only status API (FastAPI app, served by uvicorn on the DNS event loop).

Routes:
    GET /api/status              counters, upstreams, list sizes, system info
    GET /api/blocklists          list sources and sizes
    GET /api/clients[?ip=...]    per-client counters and recent queries
    GET /api/risk?domain=...     on-demand risk verdict

Lists, overrides, the ledger and the DNS counters are never touched. The
risk route may warm the HTTP provider's verdict cache, but does not count
provider failures. There is no authentication, so bind it to localhost
unless the network is trusted.
"""

import asyncio
import contextlib
import os
import socket
import time
from typing import Any, Dict, Optional

import uvicorn
from fastapi import FastAPI, HTTPException

from domain_utils import normalize_domain
from utils import get_logger
from validation import is_valid_domain

logger = get_logger("StatusAPI")

STARTUP_TIMEOUT = 5.0


def read_meminfo(path: str = '/proc/meminfo') -> Optional[dict]:
    """Return total/available/used memory in kB, or None where /proc is unavailable."""
    try:
        with open(path, 'r') as f:
            fields = {}
            for line in f:
                key, _, rest = line.partition(':')
                parts = rest.split()
                if parts and parts[0].isdigit():
                    fields[key] = int(parts[0])
    except OSError:
        return None

    total = fields.get('MemTotal')
    available = fields.get('MemAvailable', fields.get('MemFree'))
    if total is None or available is None:
        return None
    return {
        'total_kb': total,
        'available_kb': available,
        'used_kb': total - available,
        'used_percent': round((total - available) * 100.0 / total, 1) if total else 0.0,
    }


def system_info(started_at: float) -> dict:
    try:
        load = [round(v, 2) for v in os.getloadavg()]
    except (OSError, AttributeError):
        load = None
    return {
        'uptime_seconds': round(time.time() - started_at, 1),
        'load_average': load,
        'cpu_count': os.cpu_count(),
        'memory': read_meminfo(),
        'pid': os.getpid(),
    }


def _status_body(handler, started_at: float) -> Dict[str, Any]:
    notifier = handler.notifier
    return {
        'stats': handler.get_stats(),
        'upstreams': handler.upstream.get_stats(),
        'blocklists': {name: info['size'] for name, info in handler.store.get_stats().items()},
        'overrides': len(handler.overrides),
        'clients': len(handler.ledger),
        'risk': {
            'provider': type(handler.risk.provider).__name__,
            'threshold': handler.risk.threshold,
            'fail_mode': handler.risk.fail_mode,
            'failures': handler.risk.failures,
        },
        'notifications': {
            'enabled': notifier.enabled if notifier else False,
            'sent': notifier.sent if notifier else 0,
            'failed': notifier.failed if notifier else 0,
        },
        'system': system_info(started_at),
    }


def _clients_body(ledger, ip_filter: Optional[str], recent_queries: int) -> Dict[str, Any]:
    clients = []
    for ip, record in ledger.snapshot():
        if ip_filter and ip != ip_filter:
            continue
        recent = record.entries[-recent_queries:] if recent_queries else ()
        clients.append({
            'ip': ip,
            'name': record.name,
            'count': record.count,
            'recent': [{'domain': e.domain, 'timestamp': e.timestamp} for e in reversed(recent)],
        })
    clients.sort(key=lambda c: c['count'], reverse=True)
    return {'clients': clients}


def create_app(handler, config: Optional[dict] = None) -> FastAPI:
    """Build the status app around a DNSHandler."""
    cfg = config or {}
    recent_queries = int(cfg.get('recent_queries', 50))

    app = FastAPI(title="Mediating DNS Status API", docs_url=None, redoc_url=None, openapi_url=None)
    app.state.handler = handler
    app.state.started_at = time.time()

    @app.get("/api/status")
    async def status() -> Dict[str, Any]:
        return _status_body(handler, app.state.started_at)

    @app.get("/api/blocklists")
    async def blocklists() -> Dict[str, Any]:
        return handler.store.get_stats()

    @app.get("/api/clients")
    async def clients(ip: Optional[str] = None) -> Dict[str, Any]:
        return _clients_body(handler.ledger, ip, recent_queries)

    @app.get("/api/risk")
    async def risk(domain: str = "") -> Dict[str, Any]:
        name = normalize_domain(domain)
        if not name or not is_valid_domain(name):
            raise HTTPException(status_code=400, detail="query parameter 'domain' must be a valid domain name")
        verdict = await handler.risk.evaluate(name, record_failure=False)
        body = verdict.to_dict()
        body['domain'] = name
        body['blocked'] = handler.risk.is_risky(verdict)
        return body

    return app


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the DNS server's loop."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield


class StatusServer:
    def __init__(self, handler, config: Optional[dict] = None):
        self.handler = handler
        self.config = config or {}
        self.host = self.config.get('bind_ip', '127.0.0.1')
        self.port = int(self.config.get('port', 3000))
        self.app = create_app(handler, self.config)
        self._server: Optional[_EmbeddedServer] = None
        self._task: Optional[asyncio.Task] = None

    def _bind(self) -> socket.socket:
        """Bind the listening socket up front so bind errors surface as OSError."""
        family = socket.AF_INET6 if ':' in self.host else socket.AF_INET
        sock = socket.socket(family, socket.SOCK_STREAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((self.host, self.port))
        except OSError:
            sock.close()
            raise
        self.port = sock.getsockname()[1]
        return sock

    async def start(self):
        sock = self._bind()
        config = uvicorn.Config(self.app, log_config=None, access_log=False, lifespan="off")
        self._server = _EmbeddedServer(config)
        self._task = asyncio.create_task(self._server.serve(sockets=[sock]))

        deadline = time.monotonic() + STARTUP_TIMEOUT
        while not self._server.started:
            if self._task.done():
                self._task.result()
                raise OSError(f"Status API on {self.host}:{self.port} stopped during startup")
            if time.monotonic() > deadline:
                raise OSError(f"Status API on {self.host}:{self.port} did not start in {STARTUP_TIMEOUT}s")
            await asyncio.sleep(0.01)
        logger.info(f"✓ Status API Listening on http://{self.host}:{self.port}/api/status")

    async def close(self):
        if self._server is None:
            return
        self._server.should_exit = True
        try:
            await self._task
        except Exception as e:
            logger.warning(f"Status API shut down with error: {e}")
        self._server = None
        self._task = None
