import asyncio

import httpx
import orjson

from notifier import WebhookNotifier

WEBHOOK = "https://chat.example.net/api/webhooks/1/token"


def _notifier(handler, **cfg):
    config = {"webhook_url": WEBHOOK, "backoff": 0, "avatar_url": "https://chat.example.net/bot.png"}
    config.update(cfg)
    return WebhookNotifier(config, transport=httpx.MockTransport(handler))


def _scripted(*statuses):
    """Handler answering with the given status codes in order, recording each payload."""
    payloads = []
    queue = list(statuses)

    def handler(request):
        payloads.append(orjson.loads(request.content))
        status = queue.pop(0) if queue else statuses[-1]
        if isinstance(status, Exception):
            raise status
        return httpx.Response(status)

    return handler, payloads


def _send(notifier, text="⛔ blocked"):
    async def scenario():
        try:
            return await notifier.send(text)
        finally:
            await notifier.close()

    return asyncio.run(scenario())


def test_disabled_without_url():
    notifier = WebhookNotifier({})
    assert not notifier.enabled
    assert notifier.notify("ignored") is None


def test_successful_delivery_payload():
    handler, payloads = _scripted(204)
    notifier = _notifier(handler)
    assert _send(notifier, "hello") is True
    assert payloads == [{
        "content": "hello",
        "username": "DNS Guard Bot",
        "avatar_url": "https://chat.example.net/bot.png",
    }]
    assert notifier.sent == 1


def test_retries_server_errors_then_succeeds():
    handler, payloads = _scripted(500, 502, 200)
    notifier = _notifier(handler)
    assert _send(notifier) is True
    assert len(payloads) == 3


def test_retries_transport_errors():
    handler, payloads = _scripted(httpx.ConnectError("refused"), 200)
    notifier = _notifier(handler)
    assert _send(notifier) is True
    assert len(payloads) == 2


def test_gives_up_after_max_retries():
    handler, payloads = _scripted(503)
    notifier = _notifier(handler, max_retries=3)
    assert _send(notifier) is False
    assert len(payloads) == 3
    assert notifier.failed == 1


def test_client_error_is_not_retried():
    handler, payloads = _scripted(400, 200)
    notifier = _notifier(handler)
    assert _send(notifier) is False
    assert len(payloads) == 1


def test_notify_schedules_background_delivery():
    handler, payloads = _scripted(204)
    notifier = _notifier(handler)

    async def scenario():
        task = notifier.notify("scheduled")
        assert task is not None
        assert not task.done()
        await notifier.close()
        return task.result()

    assert asyncio.run(scenario()) is True
    assert payloads[0]["content"] == "scheduled"


def test_notify_outside_event_loop_does_not_raise():
    handler, _ = _scripted(204)
    assert _notifier(handler).notify("no loop") is None
