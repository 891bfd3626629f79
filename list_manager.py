#!/usr/bin/env python3
# filename: list_manager.py
# -----------------------------------------------------------------------------
# Project: Mediating DNS Server
# Version: 6.0.0 (Atomic Block Sets)
# -----------------------------------------------------------------------------
"""
Block list management.
Owns the ad-block and phishing-block sets, loads them from local files or
URLs, and swaps fully built replacements in on reload so lookups never see a
half populated set. A failed load keeps whatever was loaded before.
"""

import asyncio
import hashlib
import ipaddress
import os
import time
import urllib.request
from typing import Iterable, List, Optional

import orjson as json

from domain_utils import match_domain, normalize_domain
from utils import get_logger
from validation import is_valid_domain

logger = get_logger("ListManager")

HOSTS_PREFIXES = ('127.0.0.1', '0.0.0.0', '::1', '::')


class ListLoadError(Exception):
    """Raised when a block list source cannot be read or parsed"""
    pass


class BlockSet:
    __slots__ = ('name', 'source', 'loaded_at', '_domains')

    def __init__(self, name: str, domains: Iterable[str] = ()):
        self.name = name
        self.source: Optional[str] = None
        self.loaded_at: float = 0.0
        self._domains = frozenset(domains)

    def __len__(self):
        return len(self._domains)

    def __contains__(self, domain):
        return domain in self._domains

    @property
    def domains(self) -> List[str]:
        return sorted(self._domains)

    def replace(self, domains: Iterable[str], source: Optional[str] = None):
        """Swap in a new set. Readers holding the old frozenset keep using it."""
        self._domains = frozenset(domains)
        self.source = source
        self.loaded_at = time.time()

    def is_matched(self, domain: str) -> bool:
        # Single snapshot per lookup so a concurrent replace() cannot mix versions
        snapshot = self._domains
        return match_domain(domain, snapshot) is not None

    def match(self, domain: str) -> Optional[str]:
        """Return the list entry that matched domain, if any."""
        return match_domain(domain, self._domains)


def parse_domain_list(text: str) -> set:
    """Parse newline-delimited domains (plain or hosts-file style)."""
    domains = set()
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith('#'):
            continue

        if '#' in line:
            line = line.split('#')[0].strip()
            if not line:
                continue

        parts = line.split()
        entry = parts[1] if (len(parts) >= 2 and parts[0] in HOSTS_PREFIXES) else parts[0]
        domain = normalize_domain(entry)

        try:
            ipaddress.ip_address(domain)
            continue
        except ValueError:
            pass

        if is_valid_domain(domain):
            domains.add(domain)
        else:
            logger.debug(f"Skipping invalid list entry: '{entry}'")
    return domains


def parse_phishing_document(raw: bytes, field: str = 'blockedDomains') -> set:
    """Parse a JSON document carrying a list of domains under `field`."""
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ListLoadError(f"Invalid JSON: {e}") from e

    if not isinstance(data, dict):
        raise ListLoadError("Phishing document must be a JSON object")

    entries = data.get(field) or []
    if not isinstance(entries, list):
        raise ListLoadError(f"Field '{field}' must be a list")

    domains = set()
    for entry in entries:
        if isinstance(entry, str) and entry.strip():
            domains.add(normalize_domain(entry))
    return domains


class BlocklistStore:
    """
    Injected owner of both block sets.

    Config keys (section `blocklists`):
        ads.source, phishing.source, phishing.field, cache_dir, refresh_interval
    """

    def __init__(self, config: Optional[dict] = None):
        self.config = config or {}
        self.ads = BlockSet('ads')
        self.phishing = BlockSet('phishing')

        ads_cfg = self.config.get('ads') or {}
        phishing_cfg = self.config.get('phishing') or {}
        self.ads_source = ads_cfg.get('source')
        self.phishing_source = phishing_cfg.get('source')
        self.phishing_field = phishing_cfg.get('field', 'blockedDomains')

        self.cache_dir = self.config.get('cache_dir', './list_cache')
        self.refresh_interval = self.config.get('refresh_interval', 3600) or 0
        self._reload_lock = asyncio.Lock()

    # =========================================================================
    # SOURCE IO
    # =========================================================================

    def _get_cache_path(self, source_url):
        hash_name = hashlib.md5(source_url.encode('utf-8')).hexdigest()
        return os.path.join(self.cache_dir, hash_name + '.raw')

    def _fetch_sync(self, url) -> bytes:
        with urllib.request.urlopen(url, timeout=10) as response:
            if response.status != 200:
                raise ListLoadError(f"HTTP {response.status} from {url}")
            return response.read()

    def _read_source(self, source: str) -> bytes:
        """Blocking read of a local path or URL (runs in an executor)."""
        if source.startswith(('http://', 'https://')):
            cache_path = self._get_cache_path(source)
            try:
                logger.info(f"Downloading: {source}")
                content = self._fetch_sync(source)
            except Exception as e:
                if os.path.exists(cache_path):
                    logger.warning(f"Download failed for {source} ({e}), using stale cache")
                    with open(cache_path, 'rb') as f:
                        return f.read()
                raise ListLoadError(f"Download failed for {source}: {e}") from e

            try:
                os.makedirs(self.cache_dir, exist_ok=True)
                with open(cache_path, 'wb') as f:
                    f.write(content)
            except OSError as e:
                logger.warning(f"Failed to write list cache for {source}: {e}")
            return content

        if not os.path.exists(source):
            raise ListLoadError(f"Local file not found: {source}")
        with open(source, 'rb') as f:
            return f.read()

    def _build_ads(self, source: str) -> set:
        raw = self._read_source(source)
        return parse_domain_list(raw.decode('utf-8', errors='replace'))

    def _build_phishing(self, source: str) -> set:
        raw = self._read_source(source)
        return parse_phishing_document(raw, self.phishing_field)

    # =========================================================================
    # LOADING
    # =========================================================================

    async def _load(self, target: BlockSet, source: Optional[str], builder) -> bool:
        if not source:
            logger.info(f"No source configured for '{target.name}' list, keeping {len(target)} entries")
            return False

        loop = asyncio.get_running_loop()
        try:
            domains = await loop.run_in_executor(None, builder, source)
        except Exception as e:
            logger.error(f"Failed to load '{target.name}' list from {source}: {e} "
                         f"(keeping previous {len(target)} entries)")
            return False

        target.replace(domains, source)
        logger.info(f"Loaded {len(target)} {target.name} domains from {source}")
        return True

    async def load_ads(self, source: Optional[str] = None) -> bool:
        if source:
            self.ads_source = source
        return await self._load(self.ads, self.ads_source, self._build_ads)

    async def load_phishing(self, source: Optional[str] = None) -> bool:
        if source:
            self.phishing_source = source
        return await self._load(self.phishing, self.phishing_source, self._build_phishing)

    async def reload(self) -> bool:
        """Reload both lists. Concurrent reload requests are serialized."""
        async with self._reload_lock:
            start = time.time()
            ads_ok = await self.load_ads()
            phishing_ok = await self.load_phishing()
            logger.debug(f"Block list reload finished in {time.time() - start:.3f}s "
                         f"(ads: {ads_ok}, phishing: {phishing_ok})")
            return ads_ok and phishing_ok

    async def refresh_loop(self):
        """Background task to periodically reload the lists."""
        if self.refresh_interval <= 0:
            logger.info("Block list auto-refresh disabled")
            return
        logger.info(f"Block list auto-refresh enabled (interval: {self.refresh_interval}s)")
        while True:
            await asyncio.sleep(self.refresh_interval)
            await self.reload()

    def get_stats(self) -> dict:
        return {
            name: {'size': len(bs), 'source': bs.source, 'loaded_at': bs.loaded_at}
            for name, bs in (('ads', self.ads), ('phishing', self.phishing))
        }
