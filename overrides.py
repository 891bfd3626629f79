#!/usr/bin/env python3
# filename: overrides.py
# -----------------------------------------------------------------------------
# Project: Mediating DNS Server
# Version: 1.0.0
# -----------------------------------------------------------------------------
"""
Operator defined domain -> IPv4 overrides (e.g. test.local -> 127.0.0.1).
Lookups use the same ancestor-suffix semantics as the block lists.
"""

from types import MappingProxyType
from typing import Dict, Mapping, Optional

from domain_utils import match_domain, normalize_domain
from utils import get_logger
from validation import is_valid_ipv4

logger = get_logger("Overrides")

HOST_ALIASES = {
    'localhost': '127.0.0.1',
}


class OverrideTable:
    def __init__(self, entries: Optional[Mapping[str, str]] = None):
        self._entries: Mapping[str, str] = MappingProxyType(dict(entries or {}))

    @classmethod
    def from_config(cls, mapping: Optional[Mapping[str, str]]) -> 'OverrideTable':
        table = cls()
        table.replace(mapping or {})
        return table

    @staticmethod
    def _build(mapping: Mapping[str, str]) -> Dict[str, str]:
        entries = {}
        for raw_domain, raw_target in mapping.items():
            if not isinstance(raw_domain, str) or not isinstance(raw_target, str):
                logger.warning(f"Ignoring override {raw_domain!r} -> {raw_target!r}: must be strings")
                continue
            domain = normalize_domain(raw_domain)
            target = raw_target.strip().lower()
            target = HOST_ALIASES.get(target, target)
            if not is_valid_ipv4(target):
                logger.warning(f"Ignoring override {domain} -> {raw_target}: not an IPv4 literal")
                continue
            entries[domain] = target
        return entries

    def replace(self, mapping: Mapping[str, str]):
        self._entries = MappingProxyType(self._build(mapping))
        logger.info(f"Loaded {len(self._entries)} override entries")

    def resolve(self, domain: str) -> Optional[str]:
        entries = self._entries
        key = match_domain(domain, entries)
        return entries[key] if key is not None else None

    def entries(self) -> Dict[str, str]:
        return dict(self._entries)

    def __len__(self):
        return len(self._entries)
