import asyncio

import httpx
from fastapi.testclient import TestClient

from conftest import StaticProvider, make_query
from status_server import StatusServer, create_app, read_meminfo


def _seeded(make_handler):
    handler = make_handler(ads={"ads.example"}, provider=StaticProvider(score=70, label="HIGH"))

    async def traffic():
        for name in ("ads.example", "www.example.com"):
            await handler.process_query(make_query(name).to_wire(), ("10.0.0.5", 5000), {"proto": "udp"})

    asyncio.run(traffic())
    return handler


def test_status_route(make_handler):
    client = TestClient(create_app(_seeded(make_handler)))
    response = client.get("/api/status")
    assert response.status_code == 200
    body = response.json()
    assert body["stats"]["queries"] == 2
    assert body["stats"]["blocked_ads"] == 1
    assert body["stats"]["blocked_risk"] == 1
    assert body["blocklists"] == {"ads": 1, "phishing": 0}
    assert body["risk"]["threshold"] == 60
    assert body["upstreams"][0]["priority"] == 1
    assert body["system"]["cpu_count"] >= 1


def test_clients_route_lists_recent_queries(make_handler):
    client = TestClient(create_app(_seeded(make_handler), {"recent_queries": 1}))
    body = client.get("/api/clients").json()
    (entry,) = body["clients"]
    assert entry["ip"] == "10.0.0.5"
    assert entry["count"] == 2
    assert [q["domain"] for q in entry["recent"]] == ["www.example.com"]

    assert client.get("/api/clients", params={"ip": "192.0.2.1"}).json()["clients"] == []


def test_blocklists_route(make_handler):
    client = TestClient(create_app(make_handler(ads={"a.test", "b.test"})))
    response = client.get("/api/blocklists")
    assert response.status_code == 200
    assert response.json()["ads"]["size"] == 2


def test_risk_route(make_handler):
    client = TestClient(create_app(make_handler(provider=StaticProvider(score=70, label="HIGH"))))
    response = client.get("/api/risk", params={"domain": "Login.Example.TEST"})
    assert response.status_code == 200
    body = response.json()
    assert body["domain"] == "login.example.test"
    assert body["score"] == 70
    assert body["blocked"] is True

    assert client.get("/api/risk").status_code == 400
    assert client.get("/api/risk", params={"domain": "bad!name"}).status_code == 400


def test_risk_route_does_not_count_provider_failures(make_handler):
    handler = make_handler(provider=StaticProvider(exc=RuntimeError("scorer down")))
    client = TestClient(create_app(handler))
    body = client.get("/api/risk", params={"domain": "example.com"}).json()
    assert body["label"] == "UNKNOWN"
    assert body["blocked"] is False
    assert handler.risk.failures == 0


def test_unknown_route_and_method(make_handler):
    client = TestClient(create_app(make_handler()))
    assert client.get("/admin").status_code == 404
    assert client.post("/api/status").status_code == 405


def test_status_route_does_not_touch_engine_state(make_handler):
    handler = _seeded(make_handler)
    before = handler.get_stats()
    TestClient(create_app(handler)).get("/api/status")
    assert handler.get_stats() == before


def test_served_over_http(make_handler):
    status = StatusServer(make_handler(), {"bind_ip": "127.0.0.1", "port": 0})

    async def scenario():
        await status.start()
        try:
            async with httpx.AsyncClient(base_url=f"http://127.0.0.1:{status.port}", trust_env=False) as client:
                return await client.get("/api/blocklists")
        finally:
            await status.close()

    response = asyncio.run(scenario())
    assert response.status_code == 200
    assert response.headers["content-type"] == "application/json"
    assert set(response.json()) == {"ads", "phishing"}


def test_read_meminfo(tmp_path):
    path = tmp_path / "meminfo"
    path.write_text("MemTotal:       8000000 kB\nMemFree:         1000000 kB\nMemAvailable:    2000000 kB\n")
    mem = read_meminfo(str(path))
    assert mem["total_kb"] == 8000000
    assert mem["used_kb"] == 6000000
    assert mem["used_percent"] == 75.0
    assert read_meminfo(str(tmp_path / "missing")) is None
