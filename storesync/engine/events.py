"""Parsing of raw push-channel frames into typed PushEvents.

Each frame carries an event name and a JSON object. Only names in
EventKind are application events; everything else is either a
lifecycle signal handled by the connection or noise.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from .errors import MalformedEventError
from .models import EventKind, PreviewInfo, PushEvent

EVENT_KINDS: dict[str, EventKind] = {kind.value: kind for kind in EventKind}

_RESOURCE_KEYS = ("resourceId", "appId")


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO-8601 string or epoch milliseconds into an aware datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


def _resource_id(name: str, data: dict[str, Any]) -> int:
    for key in _RESOURCE_KEYS:
        if key in data and data[key] is not None:
            value = data[key]
            break
    else:
        raise MalformedEventError(name, "missing resourceId")
    if isinstance(value, bool):
        raise MalformedEventError(name, f"resourceId has wrong type: {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    raise MalformedEventError(name, f"resourceId is not an integer: {value!r}")


def parse_push_event(name: str, data: Any) -> PushEvent:
    """Validate a raw frame. Raises MalformedEventError on bad input."""
    kind = EVENT_KINDS.get(name)
    if kind is None:
        raise MalformedEventError(name, "unknown event kind")
    if not isinstance(data, dict):
        raise MalformedEventError(name, "payload is not an object")
    resource_id = _resource_id(name, data)
    server_ts = parse_timestamp(data.get("timestamp"))
    if server_ts is None:
        server_ts = datetime.now(timezone.utc)
    return PushEvent(
        kind=kind,
        resource_id=resource_id,
        payload=dict(data),
        server_timestamp=server_ts,
    )


def preview_from_payload(payload: dict[str, Any]) -> PreviewInfo | None:
    """Extract preview coordinates from an event or status payload."""
    qr_code = payload.get("expoQrCode") or payload.get("qrCode")
    web_url = payload.get("expoWebUrl") or payload.get("webUrl")
    port = payload.get("expoPort") or payload.get("port")
    if not (qr_code and web_url and port):
        return None
    try:
        return PreviewInfo(qr_code=str(qr_code), web_url=str(web_url), port=int(port))
    except (TypeError, ValueError):
        return None
