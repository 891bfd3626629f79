#!/usr/bin/env python3
# filename: resolver.py
# -----------------------------------------------------------------------------
# Project: Mediating DNS Server
# Version: 10.0.0 (Mediation Pipeline)
# -----------------------------------------------------------------------------
"""
Query mediation pipeline.

Every query runs the same ordered steps and stops at the first decision:
Ledger -> Type Gate -> Ad List -> Risk Evaluation -> Phishing List
-> Overrides -> Risk Threshold -> Upstream.

Blocked names resolve to the sinkhole address with a short TTL. Every block
decision emits one notification. Any unexpected error becomes SERVFAIL.
"""

import socket
import logging
from typing import Optional

import dns.exception
import dns.flags
import dns.message
import dns.name
import dns.rcode
import dns.rdataclass
import dns.rdatatype
import dns.rrset

from domain_utils import normalize_domain
from ledger import ClientLedger
from list_manager import BlocklistStore
from notifier import WebhookNotifier
from overrides import OverrideTable
from risk import RiskEvaluator, RiskVerdict
from upstream_manager import UpstreamManager
from utils import get_logger, ContextAdapter

logger = get_logger("Resolver")

REASON_AD = 'ad'
REASON_PHISHING = 'phishing'
REASON_RISK = 'risk'

CLASSIC_UDP_SIZE = 512


class DNSHandler:
    def __init__(self, config: dict, store: BlocklistStore, overrides: OverrideTable,
                 upstream: UpstreamManager, ledger: ClientLedger, risk: RiskEvaluator,
                 notifier: Optional[WebhookNotifier] = None):
        self.config = config or {}
        self.store = store
        self.overrides = overrides
        self.upstream = upstream
        self.ledger = ledger
        self.risk = risk
        self.notifier = notifier

        response_cfg = self.config.get('response') or {}
        self.sinkhole_ip = response_cfg.get('sinkhole_ip', '0.0.0.0')
        self.answer_ttl = int(response_cfg.get('ttl', 300))
        self.hostname = socket.gethostname()

        self.stats = {
            'queries': 0,
            'forwarded': 0,
            'blocked_ads': 0,
            'blocked_phishing': 0,
            'blocked_risk': 0,
            'overridden': 0,
            'servfail': 0,
        }

        logger.info(f"DNSHandler Ready. Sinkhole: {self.sinkhole_ip} (TTL {self.answer_ttl}s), "
                    f"Risk threshold: {self.risk.threshold}, Fail mode: {self.risk.fail_mode}")

    # =========================================================================
    # RESPONSES
    # =========================================================================

    def _a_response(self, request: dns.message.Message, qname: dns.name.Name, ip: str) -> dns.message.Message:
        reply = dns.message.make_response(request)
        reply.set_rcode(dns.rcode.NOERROR)
        reply.answer.append(
            dns.rrset.from_text(qname, self.answer_ttl, dns.rdataclass.IN, dns.rdatatype.A, ip)
        )
        return reply

    def _rcode_response(self, request: dns.message.Message, rcode) -> dns.message.Message:
        reply = dns.message.make_response(request)
        reply.set_rcode(rcode)
        return reply

    def _block(self, request, qname_norm, client_ip, reason, detail, req_logger,
               verdict: Optional[RiskVerdict] = None) -> dns.message.Message:
        self.stats[f"blocked_{'ads' if reason == REASON_AD else reason}"] += 1
        req_logger.warning(f"⛔ BLOCKED | Reason: {reason} | Domain: {qname_norm} | {detail}")
        self._notify_block(qname_norm, client_ip, reason, verdict)
        return self._a_response(request, request.question[0].name, self.sinkhole_ip)

    def _notify_block(self, qname_norm, client_ip, reason, verdict: Optional[RiskVerdict]):
        if self.notifier is None:
            return
        where = f"📡 IP: `{client_ip}`\n🔎 Host: `{self.hostname}`"
        if reason == REASON_AD:
            text = f"⛔ **Ad Domain BLOCKED**: `{qname_norm}`\n{where}"
        elif reason == REASON_PHISHING:
            text = f"⛔ **Phishing Attempt BLOCKED**: `{qname_norm}`\n{where}"
        else:
            score = verdict.score if verdict else 'n/a'
            reasons = ', '.join(verdict.reasons) if verdict and verdict.reasons else 'none given'
            text = (f"🛑 **Phishing risk detected and BLOCKED**: `{qname_norm}` (score: {score})\n"
                    f"{where}\nReasons: {reasons}")
        try:
            self.notifier.notify(text)
        except Exception as e:
            logger.error(f"Failed to schedule block notification: {e}")

    # =========================================================================
    # PIPELINE
    # =========================================================================

    async def _forward(self, request: dns.message.Message, req_logger) -> dns.message.Message:
        result = await self.upstream.forward(request, req_logger)
        if not result.ok:
            req_logger.warning(f"Upstream Resolution Failed after {len(result.attempts)} attempt(s) (SERVFAIL)")
            self.stats['servfail'] += 1
            return self._rcode_response(request, dns.rcode.SERVFAIL)
        self.stats['forwarded'] += 1
        return result.response

    async def mediate(self, request: dns.message.Message, client_ip: str, req_logger=None) -> dns.message.Message:
        log = req_logger or logger
        q = request.question[0]
        qname_norm = normalize_domain(q.name.to_text())

        self.ledger.record(client_ip, qname_norm)
        self.stats['queries'] += 1
        log.info(f"QUERY: {qname_norm} [{dns.rdatatype.to_text(q.rdtype)}]")

        if q.rdtype != dns.rdatatype.A:
            log.debug(f"Non-A query, forwarding unconditionally: {qname_norm}")
            return await self._forward(request, log)

        matched = self.store.ads.match(qname_norm)
        if matched is not None:
            return self._block(request, qname_norm, client_ip, REASON_AD,
                               f"List: ads | Rule: '{matched}'", log)

        verdict = await self.risk.evaluate(qname_norm, log)
        if log.isEnabledFor(logging.DEBUG):
            log.debug(f"Risk verdict for {qname_norm}: {verdict.score} ({verdict.label}) {list(verdict.reasons)}")

        matched = self.store.phishing.match(qname_norm)
        if matched is not None:
            return self._block(request, qname_norm, client_ip, REASON_PHISHING,
                               f"List: phishing | Rule: '{matched}'", log, verdict)

        override_ip = self.overrides.resolve(qname_norm)
        if override_ip:
            log.info(f"🔧 OVERRIDE | {qname_norm} -> {override_ip}")
            self.stats['overridden'] += 1
            return self._a_response(request, q.name, override_ip)

        if self.risk.is_risky(verdict):
            return self._block(request, qname_norm, client_ip, REASON_RISK,
                               f"Score: {verdict.score} ({verdict.label}) | {verdict.message}", log, verdict)

        log.info(f"✓ ALLOWED | {qname_norm} (risk: {verdict.score} {verdict.label}), forwarding upstream")
        return await self._forward(request, log)

    # =========================================================================
    # WIRE ENTRY POINT
    # =========================================================================

    def _to_wire(self, request, response, proto) -> bytes:
        if proto != 'udp':
            return response.to_wire()
        max_size = request.payload if request.edns >= 0 else CLASSIC_UDP_SIZE
        try:
            return response.to_wire(max_size=max(max_size, CLASSIC_UDP_SIZE))
        except dns.exception.TooBig:
            reply = dns.message.make_response(request)
            reply.set_rcode(response.rcode())
            reply.flags |= dns.flags.TC
            return reply.to_wire()

    async def process_query(self, data, client_addr, meta=None) -> Optional[bytes]:
        try:
            request = dns.message.from_wire(data)
        except Exception as e:
            logger.warning(f"Failed to parse DNS packet from {client_addr}: {e}")
            return None

        meta = meta or {}
        client_ip = client_addr[0] if client_addr else 'unknown'
        proto = meta.get('proto', 'udp')
        req_logger = ContextAdapter(logger, {'id': request.id, 'ip': client_ip, 'proto': proto.upper()})

        if not request.question:
            req_logger.warning("Query without question section (FORMERR)")
            return self._rcode_response(request, dns.rcode.FORMERR).to_wire()

        try:
            response = await self.mediate(request, client_ip, req_logger)
            return self._to_wire(request, response, proto)
        except Exception as e:
            req_logger.exception(f"DNS request handler error: {e}")
            self.stats['servfail'] += 1
            return self._rcode_response(request, dns.rcode.SERVFAIL).to_wire()

    def get_stats(self) -> dict:
        return dict(self.stats)
