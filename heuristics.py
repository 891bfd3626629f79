#!/usr/bin/env python3
# filename: heuristics.py
# -----------------------------------------------------------------------------
# Project: Mediating DNS Server
# Version: 3.0.0 (Risk Verdict Provider)
# -----------------------------------------------------------------------------
"""
Local risk provider built on lexical heuristics:
- Shannon Entropy (randomness)
- DGA patterns (linguistic anomalies)
- Typosquatting (Levenshtein distance against well known brands)
- High-risk TLDs, label count and length
- TOP-N popular domains (point reduction for known-good domains)

Each heuristic hit is worth a number of points; points are scaled to a
0-100 risk score (15 per point by default, so 4 points reach the default
block threshold of 60). A typosquat alone scores 3 points and needs a
second signal to block.
"""

import math
import os
import logging
import re
from collections import Counter
from typing import Iterator, List, Optional, Set, Tuple

from domain_utils import match_domain
from risk import DEFAULT_THRESHOLD, RiskVerdict, label_for_score
from utils import get_logger

logger = get_logger("Heuristics")

Hit = Tuple[int, str]

# =============================================================================
# CONSTANTS
# =============================================================================

DEFAULT_TARGETS = (
    "google", "facebook", "amazon", "apple", "microsoft", "netflix",
    "instagram", "whatsapp", "twitter", "linkedin", "paypal", "dropbox",
    "github", "gitlab", "salesforce",
)

HIGH_RISK_TLDS = frozenset((
    'xyz', 'top', 'club', 'work', 'loan', 'win', 'click', 'country', 'kim',
    'men', 'mom', 'party', 'review', 'science', 'stream', 'trade', 'gdn',
    'racing', 'jetzt', 'download', 'accountant', 'bid', 'date', 'faith',
    'pro', 'site', 'space', 'website', 'online', 'zip', 'mov',
    'tk', 'ml', 'ga', 'cf', 'gq', 'pw', 'sur', 'ci', 'sz',
))

# Local and special-use names are never scored
EXEMPT_SUFFIXES = frozenset((
    'in-addr.arpa', 'ip6.arpa', 'home.arpa', 'local', 'localhost', 'internal',
    'private', 'corp', 'lan', 'home', 'onion', 'test', 'example', 'invalid',
))

CONSONANTS = frozenset("bcdfghjklmnpqrstvwxz")
VOWELS = frozenset("aeiouy")
REPEAT_RUN = re.compile(r'(.)\1{3}')


def shannon_entropy(text: str) -> float:
    if not text:
        return 0.0
    n = len(text)
    return -sum((c / n) * math.log2(c / n) for c in Counter(text).values())


def edit_distance(a: str, b: str) -> int:
    """Levenshtein distance, two rows of memory."""
    if len(a) < len(b):
        a, b = b, a
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, 1):
        current = [i]
        for j, cb in enumerate(b, 1):
            current.append(min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + (ca != cb)))
        previous = current
    return previous[-1]


def longest_consonant_run(label: str) -> int:
    best = run = 0
    for ch in label:
        run = run + 1 if ch in CONSONANTS else 0
        best = max(best, run)
    return best


class DomainHeuristics:
    def __init__(self, config: Optional[dict] = None, threshold: float = DEFAULT_THRESHOLD):
        self.config = config or {}
        self.threshold = threshold
        self.points_per_hit = self.config.get('points_per_hit', 15)
        self.entropy_high = self.config.get('entropy_threshold_high', 3.8)
        self.entropy_suspicious = self.config.get('entropy_threshold_suspicious', 3.2)
        self.topn_reduction = self.config.get('topn_reduction', 2)
        self.typosquat_points = self.config.get('typosquat_points', 3)

        self.targets: Set[str] = set(DEFAULT_TARGETS)
        self.targets.update(self._read_list(self.config.get('typosquat_file'), 'typosquat targets'))
        self.topn_domains: Set[str] = set(self._read_list(self.config.get('topn_file'), 'TOP-N domains'))

        logger.info(f"Heuristic risk provider: {self.points_per_hit} points per hit, "
                    f"entropy {self.entropy_suspicious}/{self.entropy_high}, "
                    f"{len(self.targets)} typosquat targets, {len(self.topn_domains)} TOP-N domains")

    @staticmethod
    def _read_list(path: Optional[str], what: str) -> List[str]:
        """One name per line, # comments. Missing or unreadable files yield nothing."""
        if not path:
            return []
        if not os.path.exists(path):
            logger.warning(f"{what} file '{path}' not found, skipping")
            return []
        try:
            with open(path, 'r') as f:
                entries = [line.strip().lower().rstrip('.') for line in f]
        except OSError as e:
            logger.error(f"Cannot read {what} file '{path}': {e}")
            return []
        entries = [e for e in entries if e and not e.startswith('#')]
        logger.info(f"Loaded {len(entries)} {what} from '{path}'")
        return entries

    # =========================================================================
    # CHECKS
    # =========================================================================

    @staticmethod
    def exemption(domain: str) -> Optional[str]:
        """Reason the domain is never scored, or None."""
        labels = domain.split('.')
        for depth in (1, 2):
            suffix = '.'.join(labels[-depth:])
            if len(labels) >= depth and suffix in EXEMPT_SUFFIXES:
                return f"exempt suffix .{suffix}"
        if any(label.startswith('_') for label in labels):
            return "service label"
        return None

    def _typosquat_target(self, label: str) -> Optional[str]:
        """
        Return the brand label is a near miss of, if any.

        Labels that merely extend a brand (apples, myapple) are ordinary
        words, not misspellings, and are ignored.
        """
        for target in self.targets:
            if target in label:
                continue
            if 0 < edit_distance(label, target) <= max(1, len(target) // 4):
                return target
        return None

    @staticmethod
    def _dga_hits(label: str) -> Optional[Hit]:
        if len(label) < 5 or label.isdigit():
            return None
        points, notes = 0, []
        streak = longest_consonant_run(label)
        if streak >= 5:
            points += 2
            notes.append(f"consonant streak ({streak})")
        vowel_ratio = sum(ch in VOWELS for ch in label) / len(label)
        if vowel_ratio < 0.15:
            points += 1
            notes.append(f"low vowel ratio ({vowel_ratio:.0%})")
        if REPEAT_RUN.search(label):
            points += 1
            notes.append("repeated chars")
        if not points:
            return None
        return points, f"DGA: {label} ({', '.join(notes)})"

    def _label_hits(self, label: str) -> Iterator[Hit]:
        if len(label) > 30:
            yield 1, f"Very long label: {label[:10]}..."
        if len(label) > 3:
            target = self._typosquat_target(label)
            if target:
                yield self.typosquat_points, f"Possible typosquatting of '{target}': {label}"
        if label.isdigit():
            yield 1, f"Numeric label '{label}'"
        dga = self._dga_hits(label)
        if dga:
            yield dga

    def _domain_hits(self, domain: str, labels: List[str]) -> Iterator[Hit]:
        if labels[-1] in HIGH_RISK_TLDS:
            yield 2, f"High-risk TLD (.{labels[-1]})"
        if len(labels) > 4:
            yield 1, f"High label count ({len(labels)})"
        if len(domain) > 80:
            yield 1, f"Excessive total length ({len(domain)})"

        entropy = max(shannon_entropy(label) for label in labels)
        if entropy > self.entropy_high:
            yield 3, f"High entropy ({entropy:.2f})"
        elif entropy > self.entropy_suspicious:
            yield 1, f"Suspicious entropy ({entropy:.2f})"

        hyphens = max(label.count('-') for label in labels)
        if hyphens > 1:
            yield 1, f"Excessive hyphens ({hyphens})"

        digits = sum(ch.isdigit() for ch in domain)
        if digits / len(domain) > 0.30:
            yield 1, f"High numeric volume ({digits}/{len(domain)})"

    # =========================================================================
    # SCORING
    # =========================================================================

    def analyze(self, domain: str) -> Tuple[int, List[str]]:
        """Return (heuristic points, reasons) for a normalized domain."""
        if not domain:
            return 0, []

        exempt = self.exemption(domain)
        if exempt:
            logger.debug(f"Heuristics skipped for {domain} ({exempt})")
            return 0, []

        labels = [label for label in domain.split('.') if label]
        hits = list(self._domain_hits(domain, labels))
        for label in labels:
            hits.extend(self._label_hits(label))

        points = sum(p for p, _ in hits)
        reasons = [r for _, r in hits]

        topn = match_domain(domain, self.topn_domains) if points and self.topn_domains else None
        if topn:
            points = max(0, points - self.topn_reduction)
            reasons.append(f"TOP-N domain ({topn}) -{self.topn_reduction}")

        if points and logger.isEnabledFor(logging.DEBUG):
            logger.debug(f"Heuristics for {domain}: {points} points | {reasons}")
        return points, reasons

    async def calculate_risk(self, domain: str) -> RiskVerdict:
        points, reasons = self.analyze(domain)
        score = min(100, points * self.points_per_hit)
        if score >= self.threshold:
            message = f"{domain} shows strong signs of phishing or malware"
        elif score:
            message = f"{domain} has some suspicious characteristics"
        else:
            message = f"No suspicious characteristics found for {domain}"
        return RiskVerdict(score, label_for_score(score, self.threshold), message, tuple(reasons))
