#!/usr/bin/env python3
# filename: ledger.py
# -----------------------------------------------------------------------------
# Project: Mediating DNS Server
# Version: 1.2.0 (Bounded Client Logs)
# -----------------------------------------------------------------------------
"""
Per-client activity ledger.

Every query is recorded against the client address: a running counter plus a
ring buffer of (domain, timestamp) entries. The counter never decreases; the
log keeps only the most recent `max_entries` items per client.
"""

import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Deque, Dict, List, Optional, Tuple

from utils import get_logger

logger = get_logger("Ledger")


@dataclass(frozen=True)
class QueryLogEntry:
    domain: str
    timestamp: float


@dataclass(frozen=True)
class ClientRecord:
    """Read-only view of one client, produced by ClientLedger.snapshot()."""
    count: int
    entries: Tuple[QueryLogEntry, ...]
    name: Optional[str] = None


class _MutableRecord:
    __slots__ = ('count', 'entries')

    def __init__(self, max_entries: int):
        self.count = 0
        self.entries: Deque[QueryLogEntry] = deque(maxlen=max_entries)


class ClientLedger:
    def __init__(self, max_entries: int = 1000, names: Optional[Dict[str, str]] = None):
        self.max_entries = max(1, int(max_entries))
        self.names = dict(names or {})
        self._clients: Dict[str, _MutableRecord] = {}
        # threading.Lock so readers outside the event loop get a consistent view
        self._lock = threading.Lock()
        logger.debug(f"ClientLedger initialized (max_entries per client: {self.max_entries})")

    def record(self, client_ip: str, domain: str, now: Optional[float] = None) -> int:
        """Append a query for client_ip and return the client's new count."""
        entry = QueryLogEntry(domain, now if now is not None else time.time())
        with self._lock:
            rec = self._clients.get(client_ip)
            if rec is None:
                rec = self._clients[client_ip] = _MutableRecord(self.max_entries)
                logger.debug(f"New client seen: {client_ip}")
            rec.count += 1
            rec.entries.append(entry)
            return rec.count

    def get(self, client_ip: str) -> Optional[ClientRecord]:
        with self._lock:
            rec = self._clients.get(client_ip)
            if rec is None:
                return None
            return ClientRecord(rec.count, tuple(rec.entries), self.names.get(client_ip))

    def snapshot(self) -> List[Tuple[str, ClientRecord]]:
        with self._lock:
            return [
                (ip, ClientRecord(rec.count, tuple(rec.entries), self.names.get(ip)))
                for ip, rec in self._clients.items()
            ]

    def __len__(self):
        with self._lock:
            return len(self._clients)
