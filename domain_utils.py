#!/usr/bin/env python3
# filename: domain_utils.py
# -----------------------------------------------------------------------------
# Project: Mediating DNS Server
# Version: 1.1.0 (Ancestor Suffix Matching)
# -----------------------------------------------------------------------------
"""
Domain name normalization and suffix matching utilities.
Centralizes domain processing so block lists and overrides share one algorithm.
"""

from typing import Iterator, Mapping, Optional, Union, AbstractSet


def normalize_domain(domain: str) -> str:
    """
    Normalize domain name to canonical form.

    - Strips whitespace
    - Converts to lowercase
    - Strips exactly one trailing dot (root label)

    Never raises: on any error the raw input is returned unchanged.

    Examples:
        >>> normalize_domain("Example.COM.")
        'example.com'
        >>> normalize_domain("  GOOGLE.com  ")
        'google.com'
    """
    try:
        clean = domain.strip().lower()
        if clean.endswith('.'):
            clean = clean[:-1]
        return clean
    except Exception:
        return domain


def iter_ancestors(domain: str) -> Iterator[str]:
    """
    Yield proper ancestor suffixes, closest parent first.

    a.b.example.com -> b.example.com, example.com
    The domain itself and the bare TLD are never yielded.
    """
    parts = domain.split('.')
    for i in range(1, len(parts) - 1):
        yield '.'.join(parts[i:])


def match_domain(domain: str, table: Union[AbstractSet[str], Mapping[str, object]]) -> Optional[str]:
    """Return the key of table matching domain (exact, then ancestors) or None."""
    if domain in table:
        return domain
    for parent in iter_ancestors(domain):
        if parent in table:
            return parent
    return None
