from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Callable, Dict, Iterable, List, Literal, Optional

from src.schemas.models import ConversationSummary, Message

ItemKind = Literal["message", "attachment", "event", "generic"]

_EPOCH_FLOOR = datetime.min.replace(tzinfo=UTC)
# values above this are epoch milliseconds rather than seconds
_EPOCH_MS_THRESHOLD = 10_000_000_000


def _now_iso(now: datetime | None = None) -> str:
    return (now or datetime.now(UTC)).isoformat()


def _first(*values: Any) -> Any:
    for value in values:
        if value not in (None, ""):
            return value
    return None


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an upstream timestamp (ISO string or epoch number) into an aware datetime."""

    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        seconds = value / 1000 if value > _EPOCH_MS_THRESHOLD else value
        try:
            return datetime.fromtimestamp(seconds, UTC)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        raw = value.strip()
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(raw)
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
    return None


def _iso_timestamp(value: Any, now: datetime | None = None) -> str:
    if isinstance(value, str) and value.strip():
        return value
    parsed = parse_timestamp(value)
    return parsed.isoformat() if parsed else _now_iso(now)


def timestamp_sort_key(value: str) -> datetime:
    return parse_timestamp(value) or _EPOCH_FLOOR


# -- conversations -----------------------------------------------------------


def conversation_activity(raw: Dict[str, Any]) -> datetime | None:
    """Timestamp used by the incremental poll to decide whether a record changed."""

    return parse_timestamp(_first(raw.get("lastActivity"), raw.get("updatedAt")))


def normalize_conversation(raw: Dict[str, Any], *, now: datetime | None = None) -> ConversationSummary:
    participants = raw.get("externalParticipants") or []
    first_participant = _as_dict(participants[0]) if isinstance(participants, list) and participants else {}
    last_message = _as_dict(raw.get("lastMessage"))

    updated_at = _first(
        raw.get("lastMessageAt"),
        raw.get("lastActivity"),
        last_message.get("sentAt"),
        raw.get("updatedAt"),
        raw.get("createdAt"),
    )
    unread = raw.get("unreadCount", raw.get("unread_count"))
    try:
        unread_count = max(int(unread or 0), 0)
    except (TypeError, ValueError):
        unread_count = 0

    return ConversationSummary(
        id=str(raw["id"]),
        patient_name=str(_first(first_participant.get("displayName"), raw.get("title")) or "Unknown"),
        last_message=str(_first(last_message.get("content"), raw.get("subtitle")) or "No messages"),
        updated_at=_iso_timestamp(updated_at, now),
        unread_count=unread_count,
        archived=bool(raw.get("archived") or False),
    )


# -- conversation items ------------------------------------------------------


def _is_image(attachment: Dict[str, Any]) -> bool:
    content_type = attachment.get("contentType") or attachment.get("mimeType") or ""
    return isinstance(content_type, str) and content_type.startswith("image/")


def _image_urls(attachments: Any) -> Optional[List[str]]:
    if not isinstance(attachments, list):
        return None
    urls = [str(item["url"]) for item in attachments if isinstance(item, dict) and _is_image(item) and item.get("url")]
    return urls or None


def _direction_flags(raw: Dict[str, Any], direction: Any = None) -> bool:
    direction = direction if direction is not None else raw.get("direction")
    return direction == "inbound" or bool(raw.get("is_from_patient") or raw.get("isFromPatient"))


def _direction_sender(is_from_patient: bool) -> str:
    return "Patient" if is_from_patient else "Doctor"


def classify_item(raw: Dict[str, Any]) -> ItemKind:
    kind = raw.get("type")
    if kind == "message" and isinstance(raw.get("message"), dict):
        return "message"
    if kind == "attachment" and isinstance(raw.get("attachment"), dict):
        return "attachment"
    if isinstance(raw.get("event"), dict):
        return "event"
    return "generic"


def _normalize_message(raw: Dict[str, Any], now: datetime | None) -> Message:
    body = _as_dict(raw.get("message"))
    direction = _first(body.get("direction"), raw.get("direction"))
    is_from_patient = _direction_flags(raw, direction) or bool(body.get("isFromPatient"))
    media = _image_urls(body.get("attachments"))
    author = _as_dict(raw.get("author"))
    if direction is None:
        fallback_sender = "Patient"
    else:
        fallback_sender = _direction_sender(is_from_patient)
    return Message(
        id=str(raw.get("id") or body.get("id") or ""),
        content=str(_first(body.get("body"), body.get("text")) or ("[Photo]" if media else "")),
        timestamp=_iso_timestamp(_first(body.get("sentAt"), raw.get("createdAt"), raw.get("timestamp")), now),
        sender_name=str(_first(body.get("senderName"), author.get("displayName")) or fallback_sender),
        is_from_patient=is_from_patient,
        is_internal_note=bool(body.get("isInternal") or raw.get("isInternalNote")),
        type="message",
        media=media,
    )


def _normalize_attachment(raw: Dict[str, Any], now: datetime | None) -> Message | None:
    attachment = _as_dict(raw.get("attachment"))
    if not _is_image(attachment) or not attachment.get("url"):
        return None
    is_from_patient = _direction_flags(raw)
    author = _as_dict(raw.get("author"))
    fallback_sender = "Media" if raw.get("direction") is None else _direction_sender(is_from_patient)
    return Message(
        id=str(raw.get("id") or ""),
        content="[Photo]",
        timestamp=_iso_timestamp(_first(raw.get("createdAt"), attachment.get("createdAt"), raw.get("timestamp")), now),
        sender_name=str(author.get("displayName") or fallback_sender),
        is_from_patient=is_from_patient,
        is_internal_note=bool(raw.get("isInternalNote")),
        type="attachment",
        media=[str(attachment["url"])],
    )


def _normalize_event(raw: Dict[str, Any], now: datetime | None) -> Message:
    event = _as_dict(raw.get("event"))
    label = event.get("type") or "event"
    message = _normalize_generic(raw, now)
    return message.model_copy(update={"content": str(_first(raw.get("text"), raw.get("content")) or f"[{label}]")})


def _normalize_generic(raw: Dict[str, Any], now: datetime | None) -> Message:
    is_from_patient = _direction_flags(raw)
    author = _as_dict(raw.get("author"))
    media = raw.get("media")
    if isinstance(media, list):
        media_urls = [str(url) for url in media if url] or None
    else:
        media_urls = _image_urls(raw.get("attachments"))
    return Message(
        id=str(raw.get("id") or ""),
        content=str(_first(raw.get("text"), raw.get("content"), raw.get("body")) or "Media/Event"),
        timestamp=_iso_timestamp(_first(raw.get("createdAt"), raw.get("timestamp"), raw.get("sent_at")), now),
        sender_name=str(
            _first(author.get("displayName"), raw.get("sender_name"), raw.get("senderName"))
            or _direction_sender(is_from_patient)
        ),
        is_from_patient=is_from_patient,
        is_internal_note=bool(raw.get("isInternalNote") or raw.get("type") == "note"),
        type=str(_first(raw.get("object"), raw.get("type")) or "message"),
        media=media_urls,
    )


_NORMALIZERS: Dict[ItemKind, Callable[[Dict[str, Any], datetime | None], Message | None]] = {
    "message": _normalize_message,
    "attachment": _normalize_attachment,
    "event": _normalize_event,
    "generic": _normalize_generic,
}


def normalize_item(raw: Dict[str, Any], *, now: datetime | None = None) -> Message | None:
    """Normalize one upstream item; ``None`` means the item carries nothing displayable."""

    return _NORMALIZERS[classify_item(raw)](raw, now)


def normalize_items(raw_items: Iterable[Dict[str, Any]], *, now: datetime | None = None) -> List[Message]:
    """Normalize and sort items ascending by timestamp (stable for equal timestamps)."""

    messages = [message for message in (normalize_item(item, now=now) for item in raw_items) if message is not None]
    messages.sort(key=lambda message: timestamp_sort_key(message.timestamp))
    return messages
