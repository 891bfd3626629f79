"""Shared fakes and factories for the mediation tests."""

import dns.message
import dns.rdatatype
import dns.rrset
import pytest

from ledger import ClientLedger
from list_manager import BlocklistStore
from overrides import OverrideTable
from resolver import DNSHandler
from risk import RiskEvaluator, RiskVerdict
from upstream_manager import ForwardResult

UPSTREAM_IP = '93.184.216.34'
UPSTREAM_ID = 'udp://192.0.2.53:53'


def make_query(name='example.com', rdtype='A', **kwargs) -> dns.message.Message:
    return dns.message.make_query(name, rdtype, **kwargs)


def make_reply(request: dns.message.Message, ip=UPSTREAM_IP, count=1, ttl=60) -> dns.message.Message:
    reply = dns.message.make_response(request)
    q = request.question[0]
    if q.rdtype == dns.rdatatype.A:
        base = ip.rsplit('.', 1)[0]
        addrs = [ip] if count == 1 else [f"{base}.{i}" for i in range(1, count + 1)]
        reply.answer.append(dns.rrset.from_text(q.name, ttl, 'IN', 'A', *addrs))
    return reply


class FakeUpstream:
    """Stands in for UpstreamManager; answers every forward from memory."""

    def __init__(self, fail=False, count=1):
        self.fail = fail
        self.count = count
        self.calls = []

    async def forward(self, request, req_logger=None):
        self.calls.append(request.question[0].name.to_text())
        if self.fail:
            return ForwardResult(attempts=[UPSTREAM_ID])
        return ForwardResult(make_reply(request, count=self.count), UPSTREAM_ID, [UPSTREAM_ID])

    def get_stats(self):
        return [{'id': UPSTREAM_ID, 'priority': 1, 'success': len(self.calls), 'failure': 0,
                 'timeouts': 0, 'last_latency_ms': 1.0}]

    async def close(self):
        pass


class FakeNotifier:
    enabled = True

    def __init__(self):
        self.messages = []
        self.sent = 0
        self.failed = 0

    def notify(self, text):
        self.messages.append(text)

    async def close(self):
        pass


class StaticProvider:
    """Risk provider returning a fixed score, or raising exc."""

    def __init__(self, score=0, label='LOW', exc=None, reasons=()):
        self.score = score
        self.label = label
        self.exc = exc
        self.reasons = tuple(reasons)
        self.calls = []

    async def calculate_risk(self, domain):
        self.calls.append(domain)
        if self.exc is not None:
            raise self.exc
        return RiskVerdict(self.score, self.label, f"static verdict for {domain}", self.reasons)


@pytest.fixture
def make_handler():
    """Factory building a DNSHandler around in-memory collaborators."""

    def _make(ads=(), phishing=(), overrides=None, provider=None, fail_mode='open',
              upstream=None, notifier=None, config=None, threshold=60):
        store = BlocklistStore({})
        store.ads.replace(ads, 'memory')
        store.phishing.replace(phishing, 'memory')
        risk = RiskEvaluator(provider or StaticProvider(), timeout=0.5,
                             fail_mode=fail_mode, threshold=threshold)
        return DNSHandler(
            config=config or {},
            store=store,
            overrides=OverrideTable.from_config(overrides or {}),
            upstream=upstream or FakeUpstream(),
            ledger=ClientLedger(max_entries=100),
            risk=risk,
            notifier=notifier if notifier is not None else FakeNotifier(),
        )

    return _make
