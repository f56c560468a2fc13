from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from chamber_cache.errors import ProtocolViolation
from chamber_cache.models import MessageEntry, StreamState


class EventKind(str, Enum):
    MESSAGE = "message"
    DELTA = "delta"
    TOOL_UPDATE = "tool_update"
    COMPLETE = "complete"
    SYNCED = "synced"


MESSAGE_KINDS = frozenset({EventKind.MESSAGE, EventKind.DELTA, EventKind.TOOL_UPDATE, EventKind.COMPLETE})


@dataclass(frozen=True)
class StreamEvent:
    kind: EventKind
    message_id: str = ""
    sequence_number: int = 0
    revision: int = 0
    data: Dict[str, Any] = field(default_factory=dict)
    session_id: Optional[str] = None
    resume_token: Optional[str] = None


def create_event(event: StreamEvent) -> dict:
    payload: Dict[str, Any] = {
        "messageId": event.message_id,
        "sequenceNumber": event.sequence_number,
        "revision": event.revision,
        "data": event.data,
    }
    if event.session_id is not None:
        payload["sessionId"] = event.session_id
    if event.resume_token is not None:
        payload["resumeToken"] = event.resume_token
    return {"type": "event", "event": event.kind.value, "payload": payload}


def parse_event(msg: Dict[str, Any]) -> StreamEvent:
    """
    Parse a wire event ({"type": "event", "event": kind, "payload": {...}}).
    Raises ProtocolViolation for anything that is not a well-formed event.
    """
    if not isinstance(msg, dict) or msg.get("type") != "event":
        raise ProtocolViolation(f"not an event: {msg!r:.200}")
    try:
        kind = EventKind(msg.get("event"))
    except ValueError:
        raise ProtocolViolation(f"unknown event kind: {msg.get('event')!r}") from None
    payload = msg.get("payload") or {}
    if not isinstance(payload, dict):
        raise ProtocolViolation("event payload must be an object")
    data = payload.get("data") or {}
    if not isinstance(data, dict):
        raise ProtocolViolation("event data must be an object")
    try:
        seq = int(payload.get("sequenceNumber", 0) or 0)
        revision = int(payload.get("revision", 0) or 0)
    except (TypeError, ValueError):
        raise ProtocolViolation("sequenceNumber and revision must be integers") from None
    session_id = payload.get("sessionId")
    token = payload.get("resumeToken")
    return StreamEvent(
        kind=kind,
        message_id=str(payload.get("messageId") or ""),
        sequence_number=seq,
        revision=revision,
        data=data,
        session_id=str(session_id) if session_id else None,
        resume_token=str(token) if token else None,
    )


def validate_event(event: StreamEvent) -> None:
    if event.kind not in MESSAGE_KINDS:
        return
    if not event.message_id:
        raise ProtocolViolation(f"{event.kind.value} event without messageId")
    if event.sequence_number < 1:
        raise ProtocolViolation(f"{event.message_id}: sequenceNumber must be >= 1, got {event.sequence_number}")
    if event.revision < 1:
        raise ProtocolViolation(f"{event.message_id}: revision must be >= 1, got {event.revision}")


def new_message(session_id: str, event: StreamEvent) -> MessageEntry:
    return MessageEntry(
        message_id=event.message_id,
        session_id=session_id,
        sequence_number=event.sequence_number,
        content={"info": {}, "parts": []},
    )


def _find_part(parts: List[Dict[str, Any]], part_id: str) -> int:
    for i, p in enumerate(parts):
        if str(p.get("id")) == part_id:
            return i
    return -1


def _upsert_part(parts: List[Dict[str, Any]], part: Dict[str, Any]) -> None:
    i = _find_part(parts, str(part["id"]))
    if i < 0:
        parts.append(part)
    else:
        parts[i] = part


def _mark_streaming(entry: MessageEntry) -> None:
    if entry.stream_state is not StreamState.COMPLETE:
        entry.stream_state = StreamState.STREAMING


def apply_event(entry: MessageEntry, event: StreamEvent) -> MessageEntry:
    """
    Return a copy of entry with event applied and revision advanced.

    Part payloads are snapshots keyed by part id, so the newest revision always
    carries the full part. A bare "delta" string is appended to the part text.
    """
    out = entry.copy()
    content = out.content
    info = content.setdefault("info", {})
    parts = content.setdefault("parts", [])
    data = event.data

    if event.kind is EventKind.MESSAGE:
        src = data.get("info") if isinstance(data.get("info"), dict) else data
        info.update({k: v for k, v in src.items() if k != "parts"})
        role = data.get("role") or src.get("role")
        if role:
            out.role = str(role)
        if isinstance(data.get("parts"), list):
            content["parts"] = [dict(p) for p in data["parts"] if isinstance(p, dict)]
        if data.get("completed") or src.get("finish"):
            out.stream_state = StreamState.COMPLETE

    elif event.kind is EventKind.DELTA:
        part = data.get("part") if isinstance(data.get("part"), dict) else {}
        part_id = str(part.get("id") or data.get("partId") or "text")
        i = _find_part(parts, part_id)
        merged = dict(parts[i]) if i >= 0 else {"type": "text"}
        merged.update(part)
        merged["id"] = part_id
        delta = data.get("delta")
        if isinstance(delta, str) and "text" not in part:
            merged["text"] = str(merged.get("text") or "") + delta
        _upsert_part(parts, merged)
        _mark_streaming(out)

    elif event.kind is EventKind.TOOL_UPDATE:
        call_id = str(data.get("callId") or data.get("id") or "")
        if not call_id:
            raise ProtocolViolation(f"{event.message_id}: tool_update without callId")
        i = _find_part(parts, call_id)
        merged = dict(parts[i]) if i >= 0 else {}
        merged.update(data)
        merged["id"] = call_id
        merged["type"] = "tool"
        _upsert_part(parts, merged)
        _mark_streaming(out)

    elif event.kind is EventKind.COMPLETE:
        if isinstance(data.get("parts"), list):
            content["parts"] = [dict(p) for p in data["parts"] if isinstance(p, dict)]
        if isinstance(data.get("info"), dict):
            info.update(data["info"])
        out.stream_state = StreamState.COMPLETE

    elif event.kind is EventKind.SYNCED:
        raise ProtocolViolation("synced marker does not apply to a message")

    else:
        raise ProtocolViolation(f"unhandled event kind: {event.kind!r}")

    out.revision = event.revision
    return out
