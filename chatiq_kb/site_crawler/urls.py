import ipaddress
from typing import Optional
from urllib.parse import SplitResult, urlsplit

DEFAULT_PORTS = {"http": 80, "https": 443}

PRIVATE_NETWORKS = [
    ipaddress.ip_network("127.0.0.0/8"),
    ipaddress.ip_network("10.0.0.0/8"),
    ipaddress.ip_network("172.16.0.0/12"),
    ipaddress.ip_network("192.168.0.0/16"),
]


def is_http_url(value: str) -> bool:
    return value.startswith("http://") or value.startswith("https://")


def parse_http_url(value: str) -> Optional[SplitResult]:
    """Split an absolute http(s) URL, or return None if it is not one."""
    try:
        parsed = urlsplit(value.strip())
        # touching .port validates it
        parsed.port
    except ValueError:
        return None
    if parsed.scheme.lower() not in DEFAULT_PORTS or not parsed.hostname:
        return None
    return parsed


def url_origin(parsed: SplitResult) -> str:
    """scheme://host[:port] with the default port for the scheme dropped."""
    scheme = parsed.scheme.lower()
    host = parsed.hostname or ""
    if ":" in host:
        host = f"[{host}]"
    port = parsed.port
    if port is None or port == DEFAULT_PORTS.get(scheme):
        return f"{scheme}://{host}"
    return f"{scheme}://{host}:{port}"


def url_path(parsed: SplitResult) -> str:
    return parsed.path or "/"


def normalize_url(parsed: SplitResult) -> str:
    """Drop query and fragment, and the trailing slash of any non-root path."""
    path = url_path(parsed)
    if len(path) > 1 and path.endswith("/"):
        path = path[:-1]
    return url_origin(parsed) + path


def is_blocked_host(hostname: str) -> bool:
    lower = hostname.lower().strip("[]")
    if lower == "localhost" or lower.endswith(".local"):
        return True
    try:
        address = ipaddress.IPv4Address(lower)
    except ValueError:
        return False
    return any(address in network for network in PRIVATE_NETWORKS)


def is_allowed_by_prefix(path: str, prefix: str) -> bool:
    if prefix == "/":
        return True
    if path == prefix:
        return True
    return path.startswith(prefix if prefix.endswith("/") else f"{prefix}/")
