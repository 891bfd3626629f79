#!/usr/bin/env python3
# filename: validation.py
# -----------------------------------------------------------------------------
# Project: Mediating DNS Server
# Version: 2.1.0
# -----------------------------------------------------------------------------
"""
Validation utilities shared by list loading, overrides and config checks.
"""

import ipaddress
import re

# Labels are 1-63 chars, no leading or trailing hyphen
_LABEL = re.compile(r'^(?!-)[A-Za-z0-9-]{1,63}(?<!-)$')
_LABEL_UNDERSCORE = re.compile(r'^(?!-)[A-Za-z0-9_-]{1,63}(?<!-)$')


def _parse_ip(text: str):
    try:
        return ipaddress.ip_address(text.strip('[]'))
    except ValueError:
        return None


def is_valid_ip(ip_str: str) -> bool:
    """True for IPv4 or IPv6 literals; [IPv6] brackets are accepted."""
    return _parse_ip(ip_str) is not None


def is_valid_ipv4(ip_str: str) -> bool:
    addr = _parse_ip(ip_str)
    return addr is not None and addr.version == 4


def is_valid_domain(domain: str, allow_underscores: bool = True) -> bool:
    """
    Check a domain name for syntactic validity.

    Block lists routinely carry underscore labels (tracking subdomains),
    so underscores are accepted unless allow_underscores is False.
    Single-label names (localhost, router) pass.
    """
    if not domain or len(domain) > 253:
        return False
    pattern = _LABEL_UNDERSCORE if allow_underscores else _LABEL
    return all(pattern.match(label) for label in domain.split('.'))
