#!/usr/bin/env python3
# filename: risk.py
# -----------------------------------------------------------------------------
# Project: Mediating DNS Server
# Version: 1.3.0 (Fail Mode Policy)
# -----------------------------------------------------------------------------
"""
Domain risk verdicts.

A risk provider is any object with `async calculate_risk(domain) -> RiskVerdict`.
RiskEvaluator wraps a provider for the query path: it bounds the call with a
timeout and turns every failure into a policy verdict instead of an exception.

Fail modes:
    open   - failure scores 0, the query resolves normally (default)
    closed - failure scores 100, the threshold check blocks the query
"""

import asyncio
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, List, Optional, Tuple

import httpx

from utils import get_logger

logger = get_logger("Risk")

DEFAULT_THRESHOLD = 60
FAIL_OPEN = 'open'
FAIL_CLOSED = 'closed'


@dataclass(frozen=True)
class RiskVerdict:
    score: float
    label: str
    message: str = ""
    reasons: Tuple[str, ...] = field(default_factory=tuple)
    failed: bool = False

    def to_dict(self) -> dict:
        return {
            'score': self.score,
            'label': self.label,
            'message': self.message,
            'reasons': list(self.reasons),
            'failed': self.failed,
        }


def label_for_score(score: float, threshold: float = DEFAULT_THRESHOLD) -> str:
    if score >= threshold:
        return 'HIGH'
    if score >= 30:
        return 'MEDIUM'
    return 'LOW'


class NullRiskProvider:
    """Provider used when risk scoring is disabled."""

    async def calculate_risk(self, domain: str) -> RiskVerdict:
        return RiskVerdict(0, 'LOW', 'Risk scoring disabled')


class VerdictCache:
    """Small LRU cache with per-entry expiry for remote verdicts."""

    def __init__(self, max_size: int = 10000, ttl: int = 600):
        self.cache: 'OrderedDict[str, Tuple[RiskVerdict, float]]' = OrderedDict()
        self.max_size = max_size or 0
        self.ttl = ttl

    def get(self, key: str) -> Optional[RiskVerdict]:
        if self.max_size == 0 or key not in self.cache:
            return None
        verdict, expires = self.cache[key]
        if time.time() >= expires:
            del self.cache[key]
            return None
        self.cache.move_to_end(key)
        return verdict

    def put(self, key: str, verdict: RiskVerdict):
        if self.max_size == 0:
            return
        if key not in self.cache and len(self.cache) >= self.max_size:
            self.cache.popitem(last=False)
        self.cache[key] = (verdict, time.time() + self.ttl)
        self.cache.move_to_end(key)

    def __len__(self):
        return len(self.cache)


class HttpRiskProvider:
    """
    Remote risk-scoring service.

    Expects `GET <url>?domain=<domain>` to return JSON with
    score|riskScore, label|risk, message|safetyMessage and reasons.
    """

    def __init__(self, url: str, timeout: float = 3.0, threshold: float = DEFAULT_THRESHOLD,
                 cache_size: int = 10000, cache_ttl: int = 600, headers: Optional[dict] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.url = url
        self.timeout = timeout
        self.threshold = threshold
        self.headers = dict(headers or {})
        self.cache = VerdictCache(cache_size, cache_ttl)
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        logger.info(f"HTTP risk provider: {url} (cache: {cache_size} entries, ttl {cache_ttl}s)")

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                headers=self.headers,
                transport=self._transport,
            )
        return self._client

    def _parse(self, data: Any) -> RiskVerdict:
        if not isinstance(data, dict):
            raise ValueError("risk service returned a non-object document")
        score = data.get('score', data.get('riskScore'))
        if isinstance(score, bool) or not isinstance(score, (int, float)):
            raise ValueError(f"risk service returned invalid score {score!r}")
        label = data.get('label', data.get('risk'))
        if not isinstance(label, str) or not label:
            label = label_for_score(score, self.threshold)
        message = data.get('message', data.get('safetyMessage')) or ""
        reasons = data.get('reasons') or []
        if not isinstance(reasons, list):
            reasons = [reasons]
        return RiskVerdict(score, label, str(message), tuple(str(r) for r in reasons))

    async def calculate_risk(self, domain: str) -> RiskVerdict:
        cached = self.cache.get(domain)
        if cached is not None:
            return cached

        response = await self._get_client().get(self.url, params={'domain': domain})
        response.raise_for_status()
        verdict = self._parse(response.json())
        self.cache.put(domain, verdict)
        return verdict

    async def close(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class RiskEvaluator:
    def __init__(self, provider, timeout: float = 3.0, fail_mode: str = FAIL_OPEN,
                 threshold: float = DEFAULT_THRESHOLD):
        self.provider = provider or NullRiskProvider()
        self.timeout = timeout
        self.fail_mode = fail_mode if fail_mode in (FAIL_OPEN, FAIL_CLOSED) else FAIL_OPEN
        self.threshold = threshold
        self.failures = 0
        logger.info(f"Risk evaluation: provider={type(self.provider).__name__}, "
                    f"threshold={self.threshold}, timeout={self.timeout}s, fail_mode={self.fail_mode}")

    def _failure_verdict(self, reason: str, record: bool = True) -> RiskVerdict:
        if record:
            self.failures += 1
        if self.fail_mode == FAIL_CLOSED:
            return RiskVerdict(100, 'UNAVAILABLE', 'Risk service unavailable, failing closed',
                               (reason,), failed=True)
        return RiskVerdict(0, 'UNKNOWN', 'Risk service unavailable, failing open',
                           (reason,), failed=True)

    async def evaluate(self, domain: str, req_logger=None, record_failure: bool = True) -> RiskVerdict:
        """
        Never raises; failures become a fail-open or fail-closed verdict.

        record_failure=False leaves the failure counter alone (on-demand lookups).
        """
        log = req_logger or logger
        try:
            verdict = await asyncio.wait_for(self.provider.calculate_risk(domain), self.timeout)
        except asyncio.TimeoutError:
            log.warning(f"Risk evaluation for {domain} timed out after {self.timeout}s (fail {self.fail_mode})")
            return self._failure_verdict('timeout', record_failure)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.warning(f"Risk evaluation for {domain} failed: {e} (fail {self.fail_mode})")
            return self._failure_verdict(f"error: {e}", record_failure)

        if not isinstance(verdict, RiskVerdict):
            log.warning(f"Risk provider returned {type(verdict).__name__}, expected RiskVerdict")
            return self._failure_verdict('invalid verdict', record_failure)
        return verdict

    def is_risky(self, verdict: RiskVerdict) -> bool:
        return verdict.score >= self.threshold

    async def close(self):
        close = getattr(self.provider, 'close', None)
        if close is not None:
            await close()


def build_risk_evaluator(config: dict) -> RiskEvaluator:
    """Create the evaluator described by the `risk` config section."""
    risk_cfg = config or {}
    threshold = risk_cfg.get('threshold', DEFAULT_THRESHOLD)
    provider_name = str(risk_cfg.get('provider', 'heuristic')).lower()

    if not risk_cfg.get('enabled', True) or provider_name == 'none':
        provider = NullRiskProvider()
    elif provider_name == 'http':
        http_cfg = risk_cfg.get('http') or {}
        provider = HttpRiskProvider(
            url=http_cfg.get('url'),
            timeout=risk_cfg.get('timeout', 3.0),
            threshold=threshold,
            cache_size=http_cfg.get('cache_size', 10000),
            cache_ttl=http_cfg.get('cache_ttl', 600),
            headers=http_cfg.get('headers'),
        )
    else:
        from heuristics import DomainHeuristics
        provider = DomainHeuristics(risk_cfg.get('heuristics') or {}, threshold=threshold)

    return RiskEvaluator(
        provider,
        timeout=risk_cfg.get('timeout', 3.0),
        fail_mode=str(risk_cfg.get('fail_mode', FAIL_OPEN)).lower(),
        threshold=threshold,
    )
