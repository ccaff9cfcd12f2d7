"""Push-channel endpoint resolution.

Pure functions of their arguments so they can be tested without any
ambient location state.
"""
from __future__ import annotations

LOOPBACK_HOSTS = frozenset({"localhost", "127.0.0.1", "::1", "[::1]"})


def _normalize_protocol(protocol: str) -> str:
    protocol = (protocol or "http").strip().lower()
    return protocol if protocol.endswith(":") else f"{protocol}:"


def resolve_endpoint(
    override: str | None,
    hostname: str | None,
    protocol: str,
    local_port: int,
) -> str:
    """Resolve the base URL of a push channel.

    An explicit override wins (a trailing ``/api`` is dropped). A
    loopback hostname maps to ``http://localhost:<local_port>``; any
    other hostname maps to its ``api.`` sibling on the same protocol.
    Without a hostname the local endpoint is used.
    """
    if override:
        url = override.strip().rstrip("/")
        if url.endswith("/api"):
            url = url[: -len("/api")]
        return url

    local = f"http://localhost:{local_port}"
    if not hostname:
        return local

    hostname = hostname.strip().lower()
    if hostname in LOOPBACK_HOSTS:
        return local

    api_host = hostname if hostname.startswith("api.") else f"api.{hostname}"
    return f"{_normalize_protocol(protocol)}//{api_host}"


def websocket_url(base_url: str, path: str = "/") -> str:
    """Turn an http(s) base URL plus channel path into a ws(s) URL."""
    if base_url.startswith("https://"):
        url = "wss://" + base_url[len("https://"):]
    elif base_url.startswith("http://"):
        url = "ws://" + base_url[len("http://"):]
    else:
        url = base_url
    url = url.rstrip("/")
    path = (path or "/").strip()
    if path in ("", "/"):
        return url + "/"
    return url + "/" + path.lstrip("/")
