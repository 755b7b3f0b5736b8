"""
Helpers for finding host references inside service environment values.
"""
import ipaddress
import re
from typing import List, Optional, Tuple
from urllib.parse import urlsplit

LOOPBACK_NAMES = {"localhost", "localhost.localdomain", "ip6-localhost", "ip6-loopback"}

# KEY names whose value is a bare host (no scheme), e.g. DB_HOST=mongo
HOST_KEY_PATTERN = re.compile(r'(^|_)(HOST|HOSTNAME|ADDR|ADDRESS)$')


def is_loopback(host: str) -> bool:
    """
    True when ``host`` can only ever reach the caller's own network namespace.
    """
    host = host.strip().strip('[]').lower()
    if host in LOOPBACK_NAMES:
        return True
    try:
        address = ipaddress.ip_address(host)
    except ValueError:
        return False
    return address.is_loopback or address.is_unspecified


def split_host_port(value: str) -> Tuple[str, Optional[int]]:
    """Splits ``host[:port]`` into its parts, tolerating bracketed IPv6."""
    value = value.strip()
    if value.startswith('['):
        end = value.find(']')
        host = value[1:end]
        rest = value[end + 1:]
        port = int(rest[1:]) if rest.startswith(':') and rest[1:].isdigit() else None
        return host, port
    if value.count(':') == 1:
        host, port = value.split(':', 1)
        return host, int(port) if port.isdigit() else None
    return value, None


def extract_hosts(key: str, value: str) -> List[Tuple[str, Optional[int]]]:
    """
    Returns the (host, port) pairs referenced by an environment entry.

    URLs (``scheme://...``) contribute every host of their netloc, which
    covers multi-host connection strings such as
    ``mongodb://a:27017,b:27017/db``. Keys named like ``*_HOST`` contribute
    their bare value.
    """
    hosts = []
    if '://' in value:
        netloc = urlsplit(value).netloc
        netloc = netloc.rsplit('@', 1)[-1]
        for part in netloc.split(','):
            if part:
                hosts.append(split_host_port(part))
    elif HOST_KEY_PATTERN.search(key.upper()) and value:
        hosts.append(split_host_port(value))
    return hosts
