#!/usr/bin/env python3
# filename: defaults.py
# -----------------------------------------------------------------------------
# Project: Mediating DNS Server
# Version: 3.0.0
# -----------------------------------------------------------------------------
"""
Default configuration values - single source of truth.
"""

import copy

DEFAULT_CONFIG = {
    'server': {
        'bind_ip': ['0.0.0.0'],
        'port_udp': [53],
        'port_tcp': [53],
        'udp_concurrency': 1000,
    },
    'upstream': {
        'servers': ['8.8.8.8', '1.1.1.1'],
        'timeout': 2.0,
        'tcp_fallback': True,
    },
    'blocklists': {
        'ads': {
            'source': 'ads.txt',
        },
        'phishing': {
            'source': 'phishing.json',
            'field': 'blockedDomains',
        },
        'cache_dir': './list_cache',
        'refresh_interval': 3600,
    },
    'overrides': {
        'test.local': 'localhost',
    },
    'risk': {
        'enabled': True,
        'provider': 'heuristic',
        'threshold': 60,
        'timeout': 3.0,
        'fail_mode': 'open',
        'heuristics': {
            'points_per_hit': 15,
            'typosquat_file': None,
            'typosquat_points': 3,
            'entropy_threshold_high': 3.8,
            'entropy_threshold_suspicious': 3.2,
            'topn_file': None,
            'topn_reduction': 2,
        },
        'http': {
            'url': None,
            'cache_size': 10000,
            'cache_ttl': 600,
            'headers': {},
        },
    },
    'response': {
        'sinkhole_ip': '0.0.0.0',
        'ttl': 300,
    },
    'notifications': {
        'webhook_url': None,
        'username': 'DNS Guard Bot',
        'avatar_url': None,
        'max_retries': 3,
        'backoff': 1.0,
        'timeout': 10.0,
    },
    'ledger': {
        'max_entries': 1000,
    },
    'clients': {
        'names': {},
    },
    'dashboard': {
        'enabled': False,
        'bind_ip': '127.0.0.1',
        'port': 3000,
        'recent_queries': 50,
    },
    'logging': {
        'level': 'INFO',
        'enable_console': True,
        'console_timestamp': True,
        'enable_file': False,
        'file_path': './dns_server.log',
        'enable_syslog': False,
        'syslog_address': '/dev/log',
        'syslog_protocol': 'UDP'
    },
}


def merge_with_defaults(config: dict) -> dict:
    """
    Merge user configuration with defaults.

    Args:
        config: User configuration dictionary

    Returns:
        Merged configuration with defaults filled in
    """
    merged = copy.deepcopy(DEFAULT_CONFIG)

    for key, value in (config or {}).items():
        if isinstance(value, dict) and key in merged and isinstance(merged[key], dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value

    return merged


def _deep_merge(base: dict, overlay: dict) -> dict:
    """Recursively merge overlay into base"""
    result = base.copy()
    for key, value in overlay.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result
