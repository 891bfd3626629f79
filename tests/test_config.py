import copy

import pytest

import server
from config_validator import ConfigValidator, validate_config
from defaults import DEFAULT_CONFIG, merge_with_defaults
from heuristics import DomainHeuristics
from resolver import DNSHandler


def test_merge_with_defaults_is_deep_and_pure():
    pristine = copy.deepcopy(DEFAULT_CONFIG)
    user = {"risk": {"fail_mode": "closed", "heuristics": {"points_per_hit": 20}}, "extra": 1}
    merged = merge_with_defaults(user)

    assert merged["risk"]["fail_mode"] == "closed"
    assert merged["risk"]["threshold"] == 60
    assert merged["risk"]["heuristics"]["points_per_hit"] == 20
    assert merged["risk"]["heuristics"]["entropy_threshold_high"] == 3.8
    assert merged["upstream"]["servers"] == ["8.8.8.8", "1.1.1.1"]
    assert merged["extra"] == 1
    assert DEFAULT_CONFIG == pristine
    assert user == {"risk": {"fail_mode": "closed", "heuristics": {"points_per_hit": 20}}, "extra": 1}


def test_defaults_validate_cleanly():
    is_valid, errors, _ = validate_config(merge_with_defaults({}))
    assert is_valid
    assert errors == []


@pytest.mark.parametrize("section,value,fragment", [
    ("risk", {"fail_mode": "maybe"}, "risk.fail_mode"),
    ("risk", {"provider": "http", "http": {}}, "risk.http.url"),
    ("risk", {"threshold": 150}, "risk.threshold"),
    ("upstream", {"servers": ["dns.google"]}, "not a hostname"),
    ("upstream", {"servers": ["tls://1.1.1.1"]}, "Unsupported protocol"),
    ("upstream", {"timeout": 0}, "upstream.timeout"),
    ("response", {"sinkhole_ip": "::"}, "response.sinkhole_ip"),
    ("response", {"ttl": -5}, "response.ttl"),
    ("overrides", {"v6.test": "2001:db8::1"}, "overrides.v6.test"),
    ("server", {"port_udp": [70000]}, "server.port_udp"),
    ("notifications", {"webhook_url": "ftp://example.net"}, "notifications.webhook_url"),
    ("ledger", {"max_entries": 0}, "ledger.max_entries"),
    ("clients", {"names": {"not-an-ip": "x"}}, "clients.names"),
    ("dashboard", {"port": "3000"}, "dashboard.port"),
    ("logging", {"level": "LOUD"}, "logging.level"),
    ("blocklists", "nope", "blocklists: Must be a dictionary"),
])
def test_validator_reports_errors(section, value, fragment):
    config = merge_with_defaults({})
    if isinstance(value, dict):
        config[section].update(value)
    else:
        config[section] = value
    is_valid, errors, _ = ConfigValidator().validate(config)
    assert not is_valid
    assert any(fragment in e for e in errors), errors


def test_validator_warnings_do_not_fail():
    config = merge_with_defaults({"upstream": {"servers": []}, "blocklists": {"refresh_interval": 10}})
    is_valid, errors, warnings = validate_config(config)
    assert is_valid
    assert any("upstream.servers" in w for w in warnings)
    assert any("refresh_interval" in w for w in warnings)


def test_non_dict_config_is_rejected():
    assert validate_config(["not", "a", "dict"])[0] is False


def test_load_config_reads_yaml(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("risk:\n  fail_mode: closed\nupstream:\n  servers: ['9.9.9.9']\n")
    config = server.load_config(str(path))
    assert config["risk"]["fail_mode"] == "closed"
    assert config["upstream"]["servers"] == ["9.9.9.9"]
    assert config["response"]["sinkhole_ip"] == "0.0.0.0"


def test_load_config_rejects_non_mapping(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("- just\n- a list\n")
    with pytest.raises(ValueError):
        server.load_config(str(path))


def test_parse_arguments():
    args = server.parse_arguments(["-c", "/etc/dns.yaml", "--validate-only"])
    assert args.config == "/etc/dns.yaml"
    assert args.validate_only
    assert not args.skip_validation


def test_build_handler_wires_components():
    handler = server.build_handler(merge_with_defaults({"clients": {"names": {"10.0.0.2": "laptop"}}}))
    assert isinstance(handler, DNSHandler)
    assert isinstance(handler.risk.provider, DomainHeuristics)
    assert handler.risk.threshold == 60
    assert handler.risk.fail_mode == "open"
    assert handler.overrides.resolve("test.local") == "127.0.0.1"
    assert [s["id"] for s in handler.upstream.servers] == ["udp://8.8.8.8:53", "udp://1.1.1.1:53"]
    assert handler.ledger.names == {"10.0.0.2": "laptop"}
    assert not handler.notifier.enabled
    assert handler.sinkhole_ip == "0.0.0.0"
