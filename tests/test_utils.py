import logging

from utils import ContextAdapter, ROOT_LOGGER, get_logger, get_server_ips, setup_logger
from validation import is_valid_domain, is_valid_ip, is_valid_ipv4


def test_get_logger_is_namespaced_and_cached():
    log = get_logger("Unit")
    assert log.name == f"{ROOT_LOGGER}.Unit"
    assert get_logger("Unit") is log


def test_context_adapter_prefix():
    adapter = ContextAdapter(get_logger("Unit"), {"id": 7, "ip": "10.0.0.1", "proto": "UDP"})
    msg, _ = adapter.process("hello", {})
    assert msg == "[ID:7] [IP:10.0.0.1] [PROTO:UDP] hello"
    assert ContextAdapter(get_logger("Unit"), {}).process("bare", {})[0] == "bare"


def test_setup_logger_level_and_file(tmp_path):
    log_file = tmp_path / "dns.log"
    setup_logger({"logging": {"level": "debug", "enable_console": False,
                              "enable_file": True, "file_path": str(log_file)}})
    root = logging.getLogger(ROOT_LOGGER)
    try:
        assert root.level == logging.DEBUG
        assert len(root.handlers) == 1
        get_logger("Unit").debug("written to file")
        root.handlers[0].flush()
        assert "written to file" in log_file.read_text()
    finally:
        for handler in root.handlers:
            handler.close()
        root.handlers.clear()


def test_get_server_ips_deduplicates():
    assert get_server_ips({}) == ["0.0.0.0"]
    assert get_server_ips({"server": {"bind_ip": "127.0.0.1"}}) == ["127.0.0.1"]
    assert get_server_ips({"server": {"bind_ip": ["::1", "127.0.0.1", "::1"]}}) == ["::1", "127.0.0.1"]


def test_validation_helpers():
    assert is_valid_ip("[2001:db8::1]")
    assert not is_valid_ip("300.1.1.1")
    assert is_valid_ipv4("192.0.2.1")
    assert not is_valid_ipv4("::1")
    assert is_valid_domain("_dmarc.example.com")
    assert not is_valid_domain("_dmarc.example.com", allow_underscores=False)
    assert not is_valid_domain("-bad.example.com")
    assert not is_valid_domain("a" * 64 + ".com")
