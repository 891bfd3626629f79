#!/usr/bin/env python3
# filename: config_validator.py
# -----------------------------------------------------------------------------
# Project: Mediating DNS Server
# Version: 5.0.0 (Mediation Sections)
# -----------------------------------------------------------------------------
"""
Configuration Validation Module.

Collects every problem in one pass so the operator sees all of them at once.
Errors abort startup, warnings are only reported.
"""

import os
from typing import Dict, List, Tuple, Any, Optional
from urllib.parse import urlparse

from utils import get_logger
from validation import is_valid_ip, is_valid_ipv4, is_valid_domain

logger = get_logger("ConfigValidator")

VALID_LOG_LEVELS = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
VALID_FAIL_MODES = ['open', 'closed']
VALID_RISK_PROVIDERS = ['heuristic', 'http', 'none']
VALID_UPSTREAM_PROTOS = ['udp', 'tcp']
MAX_TTL = 2147483647


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_url(value) -> bool:
    return isinstance(value, str) and value.startswith(('http://', 'https://'))


class ConfigValidator:
    """Checks a merged configuration and gathers errors and warnings."""

    SECTIONS = (
        'logging', 'server', 'upstream', 'blocklists', 'overrides', 'risk',
        'response', 'notifications', 'ledger', 'clients', 'dashboard',
    )

    def __init__(self):
        self.errors: List[str] = []
        self.warnings: List[str] = []

    def validate(self, config: Dict[str, Any]) -> Tuple[bool, List[str], List[str]]:
        """Run every section check. Returns (is_valid, errors, warnings)."""
        self.errors, self.warnings = [], []

        if not isinstance(config, dict):
            self.errors.append("Configuration must be a dictionary")
            return False, self.errors, self.warnings

        for name in self.SECTIONS:
            cfg = config.get(name, {})
            if self._section(name, cfg):
                getattr(self, f"_validate_{name}")(cfg)

        self._report()
        return not self.errors, self.errors, self.warnings

    def _report(self):
        for title, items in (("❌ CONFIGURATION ERRORS", self.errors), ("⚠️  CONFIGURATION WARNINGS", self.warnings)):
            if items:
                print(f"\n{title}:")
                print('\n'.join(f"  {n}. {item}" for n, item in enumerate(items, 1)))

        if self.errors:
            logger.error(f"Configuration validation FAILED with {len(self.errors)} error(s)")
        else:
            logger.info("Configuration validation PASSED")
        if self.warnings:
            logger.warning(f"Configuration has {len(self.warnings)} warning(s)")

    # =========================================================================
    # SHARED CHECKS
    # =========================================================================
    def _section(self, name: str, cfg: Any) -> bool:
        """True when cfg is a usable dict; records an error for other non-None values."""
        if isinstance(cfg, dict):
            return True
        if cfg is not None:
            self.errors.append(f"{name}: Must be a dictionary")
        return False

    def _check_bools(self, section: str, cfg: Dict[str, Any], keys: List[str]):
        for key in keys:
            val = cfg.get(key)
            if val is not None and not isinstance(val, bool):
                self.errors.append(f"{section}.{key}: Must be boolean, got {type(val).__name__}")

    def _check_int(self, section: str, cfg: Dict[str, Any], key: str,
                   minimum: int = 0, maximum: Optional[int] = None, message: str = "") -> Optional[int]:
        """Record an error unless cfg[key] is absent or an int within bounds; returns the valid value."""
        val = cfg.get(key)
        if val is None:
            return None
        if _is_int(val) and val >= minimum and (maximum is None or val <= maximum):
            return val
        if not message:
            bounds = f"{minimum}-{maximum}" if maximum is not None else f">= {minimum}"
            message = f"Must be integer {bounds}"
        self.errors.append(f"{section}.{key}: {message}")
        return None

    def _check_choice(self, section: str, cfg: Dict[str, Any], key: str,
                      default: str, choices: List[str]) -> Optional[str]:
        val = cfg.get(key, default)
        if isinstance(val, str) and val.lower() in choices:
            return val.lower()
        self.errors.append(f"{section}.{key}: Must be one of {choices}, got '{val}'")
        return None

    def _check_ports(self, section: str, key: str, ports: Any):
        if ports is None:
            return
        if not isinstance(ports, list):
            if not _is_int(ports):
                self.errors.append(f"{section}.{key}: Must be integer or list")
                return
            ports = [ports]
        bad = [p for p in ports if not _is_int(p) or not 1 <= p <= 65535]
        for port in bad:
            self.errors.append(f"{section}.{key}: Invalid port {port} (must be 1-65535)")

    def _check_path(self, section: str, cfg: Dict[str, Any], key: str):
        path = cfg.get(key)
        if path is None:
            return
        if not isinstance(path, str):
            self.errors.append(f"{section}.{key}: Must be string path")
        elif path and not os.path.exists(path):
            self.warnings.append(f"{section}.{key}: File not found '{path}'")

    # =========================================================================
    # LOGGING SECTION
    # =========================================================================
    def _validate_logging(self, log_cfg: Dict[str, Any]):
        level = log_cfg.get('level', 'INFO')
        if not isinstance(level, str):
            self.errors.append(f"logging.level: Must be a string, got {type(level).__name__}")
        elif level.upper() not in VALID_LOG_LEVELS:
            self.errors.append(f"logging.level: Invalid level '{level}', must be one of {VALID_LOG_LEVELS}")

        self._check_bools('logging', log_cfg, ['enable_console', 'console_timestamp', 'enable_file', 'enable_syslog'])

        for key in ('file_path', 'syslog_address'):
            if key in log_cfg and not isinstance(log_cfg[key], (str, type(None))):
                self.errors.append(f"logging.{key}: Must be string")

        file_path = log_cfg.get('file_path')
        if log_cfg.get('enable_file') and isinstance(file_path, str):
            log_dir = os.path.dirname(file_path) or '.'
            if not os.path.isdir(log_dir):
                self.warnings.append(f"logging.file_path: Directory '{log_dir}' does not exist")

        proto = log_cfg.get('syslog_protocol', 'UDP')
        if str(proto).upper() not in ('UDP', 'TCP'):
            self.errors.append(f"logging.syslog_protocol: Must be 'UDP' or 'TCP', got '{proto}'")

    # =========================================================================
    # SERVER SECTION
    # =========================================================================
    def _validate_server(self, server_cfg: Dict[str, Any]):
        """Listener addresses, ports and UDP concurrency."""
        bind_ips = server_cfg.get('bind_ip') or []
        if isinstance(bind_ips, str):
            bind_ips = [bind_ips]
        if isinstance(bind_ips, list):
            self.errors.extend(f"server.bind_ip: Invalid IP address '{ip}'"
                               for ip in bind_ips if not isinstance(ip, str) or not is_valid_ip(ip))
        else:
            self.errors.append("server.bind_ip: Must be a string or list")

        self._check_ports('server', 'port_udp', server_cfg.get('port_udp'))
        self._check_ports('server', 'port_tcp', server_cfg.get('port_tcp'))
        self._check_int('server', server_cfg, 'udp_concurrency', 1, message="Must be positive integer")

    # =========================================================================
    # UPSTREAM SECTION
    # =========================================================================
    def _validate_upstream(self, upstream_cfg: Dict[str, Any]):
        servers = upstream_cfg.get('servers')
        if servers is not None:
            if not isinstance(servers, list):
                self.errors.append("upstream.servers: Must be a list")
            elif not servers:
                self.warnings.append("upstream.servers: Empty list, built-in defaults will be used")
            else:
                for entry in servers:
                    self._validate_upstream_entry(entry)

        timeout = upstream_cfg.get('timeout')
        if timeout is not None and (not _is_number(timeout) or timeout <= 0):
            self.errors.append("upstream.timeout: Must be a positive number of seconds")
        elif _is_number(timeout) and timeout > 10:
            self.warnings.append(f"upstream.timeout: {timeout}s per upstream makes failover very slow")

        self._check_bools('upstream', upstream_cfg, ['tcp_fallback'])

    def _validate_upstream_entry(self, entry: Any):
        if not isinstance(entry, str) or not entry.strip():
            self.errors.append(f"upstream.servers: Invalid entry {entry!r}")
            return
        entry = entry.strip()
        to_parse = entry
        if '://' not in entry:
            bare_v6 = entry.count(':') > 1 and not entry.startswith('[')
            to_parse = f"udp://[{entry}]" if bare_v6 else f"udp://{entry}"
        try:
            parsed = urlparse(to_parse)
            host = parsed.hostname
            parsed.port  # raises ValueError on a bad port
        except ValueError as e:
            self.errors.append(f"upstream.servers: Cannot parse '{entry}': {e}")
            return

        if parsed.scheme.lower() not in VALID_UPSTREAM_PROTOS:
            self.errors.append(f"upstream.servers: Unsupported protocol in '{entry}' "
                               f"(must be one of {VALID_UPSTREAM_PROTOS})")
        elif not host or not is_valid_ip(host):
            self.errors.append(f"upstream.servers: '{entry}' must use an IP address, not a hostname")

    # =========================================================================
    # BLOCKLISTS SECTION
    # =========================================================================
    def _validate_blocklists(self, lists_cfg: Dict[str, Any]):
        """Block list sources and refresh schedule"""
        for name in ['ads', 'phishing']:
            list_cfg = lists_cfg.get(name)
            if not self._section(f"blocklists.{name}", list_cfg):
                continue
            source = list_cfg.get('source')
            if source is None:
                self.warnings.append(f"blocklists.{name}.source: Not set, list stays empty")
            elif not isinstance(source, str) or not source:
                self.errors.append(f"blocklists.{name}.source: Must be a file path or URL")
            elif not _is_url(source) and not os.path.exists(source):
                self.warnings.append(f"blocklists.{name}.source: File '{source}' not found")

        phishing_cfg = lists_cfg.get('phishing')
        if isinstance(phishing_cfg, dict):
            field = phishing_cfg.get('field')
            if field is not None and (not isinstance(field, str) or not field):
                self.errors.append("blocklists.phishing.field: Must be a non-empty string")

        cache_dir = lists_cfg.get('cache_dir')
        if cache_dir is not None and not isinstance(cache_dir, str):
            self.errors.append("blocklists.cache_dir: Must be string path")

        interval = self._check_int('blocklists', lists_cfg, 'refresh_interval',
                                   message="Must be non-negative integer (0 disables)")
        if interval and interval < 60:
            self.warnings.append(f"blocklists.refresh_interval: {interval}s is very aggressive")

    # =========================================================================
    # OVERRIDES SECTION
    # =========================================================================
    def _validate_overrides(self, overrides_cfg: Dict[str, Any]):
        """Domain -> IPv4 (or 'localhost') overrides"""
        for domain, target in overrides_cfg.items():
            if not isinstance(domain, str) or not is_valid_domain(domain.strip().rstrip('.').lower()):
                self.errors.append(f"overrides: Invalid domain {domain!r}")
                continue
            if not isinstance(target, str):
                self.errors.append(f"overrides.{domain}: Target must be a string, got {type(target).__name__}")
            elif target.strip().lower() != 'localhost' and not is_valid_ipv4(target.strip()):
                self.errors.append(f"overrides.{domain}: Target '{target}' must be an IPv4 address or 'localhost'")

    # =========================================================================
    # RISK SECTION
    # =========================================================================
    def _validate_risk(self, risk_cfg: Dict[str, Any]):
        self._check_bools('risk', risk_cfg, ['enabled'])
        provider = self._check_choice('risk', risk_cfg, 'provider', 'heuristic', VALID_RISK_PROVIDERS)
        self._check_choice('risk', risk_cfg, 'fail_mode', 'open', VALID_FAIL_MODES)

        threshold = risk_cfg.get('threshold')
        if threshold is not None and (not _is_number(threshold) or not 0 <= threshold <= 100):
            self.errors.append("risk.threshold: Must be a number 0-100")

        timeout = risk_cfg.get('timeout')
        if timeout is not None and (not _is_number(timeout) or timeout <= 0):
            self.errors.append("risk.timeout: Must be a positive number of seconds")

        if provider == 'http' and risk_cfg.get('enabled', True):
            self._validate_risk_http(risk_cfg.get('http'))

        heuristics = risk_cfg.get('heuristics', {})
        if self._section('risk.heuristics', heuristics):
            self._validate_heuristics(heuristics)

    def _validate_risk_http(self, http_cfg: Any):
        if not isinstance(http_cfg, dict) or not _is_url(http_cfg.get('url')):
            self.errors.append("risk.http.url: Required http(s) URL when provider is 'http'")
            return
        self._check_int('risk.http', http_cfg, 'cache_size', message="Must be non-negative integer")
        self._check_int('risk.http', http_cfg, 'cache_ttl', message="Must be non-negative integer")
        headers = http_cfg.get('headers')
        if headers is not None and not isinstance(headers, dict):
            self.errors.append("risk.http.headers: Must be a dictionary")

    def _validate_heuristics(self, heur_cfg: Dict[str, Any]):
        points = heur_cfg.get('points_per_hit')
        if points is not None and (not _is_number(points) or not 0 < points <= 100):
            self.errors.append("risk.heuristics.points_per_hit: Must be a number 1-100")

        for key in ('entropy_threshold_high', 'entropy_threshold_suspicious'):
            val = heur_cfg.get(key)
            if val is not None and (not _is_number(val) or not 0 <= val <= 6):
                self.errors.append(f"risk.heuristics.{key}: Must be float 0.0-6.0")

        self._check_path('risk.heuristics', heur_cfg, 'typosquat_file')
        self._check_path('risk.heuristics', heur_cfg, 'topn_file')
        self._check_int('risk.heuristics', heur_cfg, 'topn_reduction', 0, 5)
        self._check_int('risk.heuristics', heur_cfg, 'typosquat_points', 0, 10)

    # =========================================================================
    # RESPONSE SECTION
    # =========================================================================
    def _validate_response(self, resp_cfg: Dict[str, Any]):
        """Sinkhole address and TTL of synthesized answers"""
        sinkhole = resp_cfg.get('sinkhole_ip')
        if sinkhole is not None and (not isinstance(sinkhole, str) or not is_valid_ipv4(sinkhole)):
            self.errors.append(f"response.sinkhole_ip: Must be an IPv4 address, got '{sinkhole}'")
        self._check_int('response', resp_cfg, 'ttl', 0, MAX_TTL)

    # =========================================================================
    # NOTIFICATIONS SECTION
    # =========================================================================
    def _validate_notifications(self, notify_cfg: Dict[str, Any]):
        """Webhook notification settings"""
        url = notify_cfg.get('webhook_url')
        if url and not _is_url(url):
            self.errors.append("notifications.webhook_url: Must be an http(s) URL")

        for key in ('username', 'avatar_url'):
            if not isinstance(notify_cfg.get(key, ''), (str, type(None))):
                self.errors.append(f"notifications.{key}: Must be string")

        self._check_int('notifications', notify_cfg, 'max_retries', 1, message="Must be positive integer")

        for key in ('backoff', 'timeout'):
            val = notify_cfg.get(key)
            if val is not None and (not _is_number(val) or val < 0):
                self.errors.append(f"notifications.{key}: Must be a non-negative number")

    # =========================================================================
    # LEDGER / CLIENTS SECTIONS
    # =========================================================================
    def _validate_ledger(self, ledger_cfg: Dict[str, Any]):
        self._check_int('ledger', ledger_cfg, 'max_entries', 1, message="Must be positive integer")

    def _validate_clients(self, clients_cfg: Dict[str, Any]):
        names = clients_cfg.get('names')
        if not self._section('clients.names', names):
            return
        for ip, name in names.items():
            if not isinstance(ip, str) or not is_valid_ip(ip):
                self.errors.append(f"clients.names: Invalid IP address {ip!r}")
            elif not isinstance(name, str):
                self.errors.append(f"clients.names.{ip}: Name must be a string")

    # =========================================================================
    # DASHBOARD SECTION
    # =========================================================================
    def _validate_dashboard(self, dash_cfg: Dict[str, Any]):
        """Status API settings"""
        self._check_bools('dashboard', dash_cfg, ['enabled'])

        bind_ip = dash_cfg.get('bind_ip')
        if bind_ip is not None and (not isinstance(bind_ip, str) or not is_valid_ip(bind_ip)):
            self.errors.append(f"dashboard.bind_ip: Invalid IP address '{bind_ip}'")
        elif dash_cfg.get('enabled') and bind_ip not in (None, '127.0.0.1', '::1'):
            self.warnings.append("dashboard.bind_ip: Status API has no authentication and is exposed beyond localhost")

        port = dash_cfg.get('port')
        if isinstance(port, list):
            self.errors.append("dashboard.port: Must be a single integer")
        else:
            self._check_ports('dashboard', 'port', port)

        self._check_int('dashboard', dash_cfg, 'recent_queries', message="Must be non-negative integer")


def validate_config(config: Dict[str, Any]) -> Tuple[bool, List[str], List[str]]:
    """Validate config with a fresh ConfigValidator; returns (is_valid, errors, warnings)."""
    return ConfigValidator().validate(config)
