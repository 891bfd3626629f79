#!/usr/bin/env python3
# filename: utils.py
# -----------------------------------------------------------------------------
# Project: Mediating DNS Server
# Version: 6.0.0
# -----------------------------------------------------------------------------
"""
Logging setup and small helpers shared by all modules.
"""

import logging
import logging.handlers
import socket

ROOT_LOGGER = 'DNSFilter'
TIMESTAMP_FORMAT = '%Y-%m-%d %H:%M:%S'
STAMPED_FORMAT = '%(asctime)s [%(levelname)s] [%(name)s] %(message)s'
PLAIN_FORMAT = '[%(levelname)s] [%(name)s] %(message)s'

_loggers = {}


def _syslog_handler(log_config) -> logging.Handler:
    address = log_config.get('syslog_address', '/dev/log')
    if address.startswith('/'):
        return logging.handlers.SysLogHandler(address=address)
    host, port = address.rsplit(':', 1)
    socktype = socket.SOCK_STREAM if str(log_config.get('syslog_protocol', 'UDP')).upper() == 'TCP' \
        else socket.SOCK_DGRAM
    return logging.handlers.SysLogHandler(address=(host, int(port)), socktype=socktype)


def setup_logger(config):
    """Configure the DNSFilter logger tree from the `logging` config section."""
    log_config = config.get('logging', {})
    level = getattr(logging, str(log_config.get('level', 'INFO')).upper(), logging.INFO)

    root = logging.getLogger(ROOT_LOGGER)
    root.setLevel(level)
    root.handlers.clear()

    wanted = []
    if log_config.get('enable_console', True):
        fmt = STAMPED_FORMAT if log_config.get('console_timestamp', True) else PLAIN_FORMAT
        wanted.append(('console', lambda: logging.StreamHandler(), fmt))
    if log_config.get('enable_file', False):
        path = log_config.get('file_path', './dns_server.log')
        wanted.append(('file', lambda: logging.FileHandler(path), STAMPED_FORMAT))
    if log_config.get('enable_syslog', False):
        wanted.append(('syslog', lambda: _syslog_handler(log_config), '[%(name)s] %(message)s'))

    for kind, factory, fmt in wanted:
        try:
            handler = factory()
        except Exception as e:
            # Logging is not up yet, so report on stderr
            print(f"Failed to setup {kind} logging: {e}")
            continue
        handler.setLevel(level)
        handler.setFormatter(logging.Formatter(fmt, datefmt=TIMESTAMP_FORMAT))
        root.addHandler(handler)


def get_logger(name):
    """Get or create a logger with the given name."""
    full_name = f"{ROOT_LOGGER}.{name}"
    log = _loggers.get(full_name)
    if log is None:
        log = _loggers[full_name] = logging.getLogger(full_name)
    return log


class ContextAdapter(logging.LoggerAdapter):
    """Prefixes request context ([ID:..] [IP:..] [PROTO:..]) to log messages."""
    FIELDS = (('id', 'ID'), ('ip', 'IP'), ('proto', 'PROTO'))

    def process(self, msg, kwargs):
        tags = [f"[{tag}:{self.extra[key]}]" for key, tag in self.FIELDS if key in self.extra]
        if not tags:
            return msg, kwargs
        return f"{' '.join(tags)} {msg}", kwargs


def get_server_ips(config):
    """Return the de-duplicated list of addresses to bind listeners on."""
    bind_ips = config.get('server', {}).get('bind_ip') or ['0.0.0.0']
    if isinstance(bind_ips, str):
        bind_ips = [bind_ips]
    unique = list(dict.fromkeys(bind_ips))
    get_logger("Utils").info(f"Binding listeners on {len(unique)} address(es): {unique}")
    return unique
