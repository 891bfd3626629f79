import asyncio

import orjson
import pytest

from list_manager import (
    BlockSet,
    BlocklistStore,
    ListLoadError,
    parse_domain_list,
    parse_phishing_document,
)


def test_parse_domain_list_formats():
    text = "\n".join([
        "# comment",
        "",
        "Ads.Example.com.",
        "0.0.0.0 tracker.net",
        "127.0.0.1 pixel.example.org  # inline",
        "metrics.example.io # trailing comment",
        "10.0.0.1",
        "bad!domain.test",
        "_dmarc.example.com",
    ])
    assert parse_domain_list(text) == {
        "ads.example.com",
        "tracker.net",
        "pixel.example.org",
        "metrics.example.io",
        "_dmarc.example.com",
    }


def test_parse_phishing_document():
    raw = orjson.dumps({"blockedDomains": ["Evil.Example.", "", 42, "phish.test"], "other": 1})
    assert parse_phishing_document(raw) == {"evil.example", "phish.test"}


def test_parse_phishing_document_custom_field():
    raw = orjson.dumps({"domains": ["phish.test"]})
    assert parse_phishing_document(raw, field="domains") == {"phish.test"}
    assert parse_phishing_document(raw) == set()


@pytest.mark.parametrize("raw", [b"{not json", b"[1, 2]", b'{"blockedDomains": "x.test"}'])
def test_parse_phishing_document_rejects_bad_documents(raw):
    with pytest.raises(ListLoadError):
        parse_phishing_document(raw)


def test_blockset_matching():
    bs = BlockSet("ads", ["ads.example", "example.com"])
    assert bs.match("x.ads.example") == "ads.example"
    assert bs.is_matched("deep.sub.example.com")
    assert not bs.is_matched("example")
    assert not bs.is_matched("com")
    assert len(bs) == 2
    assert "ads.example" in bs
    assert bs.domains == ["ads.example", "example.com"]


def test_blockset_replace_is_a_single_swap():
    bs = BlockSet("ads", ["old.test"])
    before = bs._domains
    bs.replace({"new.test"}, "file.txt")
    assert before == frozenset({"old.test"})
    assert bs.is_matched("a.new.test")
    assert not bs.is_matched("old.test")
    assert bs.source == "file.txt"
    assert bs.loaded_at > 0


def _store(tmp_path, **overrides):
    cfg = {
        "ads": {"source": str(tmp_path / "ads.txt")},
        "phishing": {"source": str(tmp_path / "phishing.json")},
        "cache_dir": str(tmp_path / "cache"),
    }
    cfg.update(overrides)
    return BlocklistStore(cfg)


def test_store_loads_local_files(tmp_path):
    (tmp_path / "ads.txt").write_text("ads.example\n# c\ntracker.net\n")
    (tmp_path / "phishing.json").write_bytes(orjson.dumps({"blockedDomains": ["evil.test"]}))
    store = _store(tmp_path)

    assert asyncio.run(store.reload()) is True
    assert len(store.ads) == 2
    assert store.phishing.is_matched("login.evil.test")
    stats = store.get_stats()
    assert stats["ads"]["size"] == 2
    assert stats["phishing"]["source"].endswith("phishing.json")


def test_failed_reload_keeps_previous_entries(tmp_path):
    (tmp_path / "ads.txt").write_text("ads.example\n")
    (tmp_path / "phishing.json").write_bytes(orjson.dumps({"blockedDomains": ["evil.test"]}))
    store = _store(tmp_path)
    asyncio.run(store.reload())

    (tmp_path / "ads.txt").unlink()
    (tmp_path / "phishing.json").write_bytes(b"{broken")

    assert asyncio.run(store.reload()) is False
    assert store.ads.is_matched("ads.example")
    assert store.phishing.is_matched("evil.test")


def test_missing_source_is_not_an_error(tmp_path):
    store = BlocklistStore({})
    assert asyncio.run(store.load_ads()) is False
    assert len(store.ads) == 0


def test_load_with_explicit_source(tmp_path):
    path = tmp_path / "other.txt"
    path.write_text("one.test\ntwo.test\n")
    store = BlocklistStore({})
    assert asyncio.run(store.load_ads(str(path))) is True
    assert store.ads_source == str(path)
    assert len(store.ads) == 2


def test_url_source_falls_back_to_stale_cache(tmp_path, monkeypatch):
    url = "https://lists.example.net/ads.txt"
    store = _store(tmp_path, ads={"source": url})
    responses = [b"ads.example\n"]

    def fake_fetch(source):
        if responses:
            return responses.pop()
        raise OSError("network unreachable")

    monkeypatch.setattr(store, "_fetch_sync", fake_fetch)

    assert asyncio.run(store.load_ads()) is True
    store.ads.replace(set())
    assert asyncio.run(store.load_ads()) is True
    assert store.ads.is_matched("ads.example")


def test_url_source_without_cache_keeps_previous(tmp_path, monkeypatch):
    store = _store(tmp_path, ads={"source": "https://lists.example.net/ads.txt"})
    store.ads.replace({"kept.test"})

    def fail(source):
        raise OSError("network unreachable")

    monkeypatch.setattr(store, "_fetch_sync", fail)
    assert asyncio.run(store.load_ads()) is False
    assert store.ads.is_matched("kept.test")


def test_lookups_during_reload_see_old_or_new_set(tmp_path):
    (tmp_path / "ads.txt").write_text("\n".join(f"host{i}.test" for i in range(5000)) + "\n")
    store = _store(tmp_path)
    store.ads.replace({"host1.test"})

    async def scenario():
        seen = []

        async def reader():
            for _ in range(200):
                seen.append(store.ads.is_matched("host1.test"))
                await asyncio.sleep(0)

        await asyncio.gather(store.load_ads(), reader())
        return seen

    seen = asyncio.run(scenario())
    assert all(seen)
    assert len(store.ads) == 5000


def test_refresh_loop_disabled_returns_immediately():
    store = BlocklistStore({"refresh_interval": 0})
    asyncio.run(asyncio.wait_for(store.refresh_loop(), 1))
