import json
import uuid
from datetime import datetime, timezone


def build_event(event_type: str, data: dict, occurred_at: datetime | None = None) -> dict:
    occurred_at = occurred_at or datetime.now(timezone.utc)
    return {
        "event_id": str(uuid.uuid4()),
        "event_type": event_type,
        "occurred_at": occurred_at.isoformat(),
        "data": data,
    }


def to_json(event: dict) -> str:
    return json.dumps(event, separators=(",", ":"), ensure_ascii=False, default=str)


def from_json(body: bytes | str) -> dict | None:
    """
    Decode an event envelope. Returns None when the body is not a JSON object
    carrying both event_id and event_type.
    """
    try:
        if isinstance(body, bytes):
            body = body.decode("utf-8")
        payload = json.loads(body)
    except (ValueError, UnicodeDecodeError):
        return None
    if not isinstance(payload, dict):
        return None
    if not payload.get("event_id") or not payload.get("event_type"):
        return None
    if not isinstance(payload.get("data") or {}, dict):
        return None
    return payload
