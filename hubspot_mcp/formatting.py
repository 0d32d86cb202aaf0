from __future__ import annotations

# Normalisation helpers shared by the HubSpot client.

from datetime import date, datetime, time, timezone
from typing import Any, Callable, Mapping


def format_datetime(value: date) -> str:
    """Render a date or datetime as a UTC ISO-8601 string with millisecond precision."""
    if not isinstance(value, datetime):
        value = datetime.combine(value, time.min)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def convert_datetime_fields(obj: Any) -> Any:
    """Recursively replace every date/datetime in ``obj`` with its string form.

    Mappings and sequences are rebuilt (tuples become lists, as they would in
    JSON); any other value is returned unchanged, so applying the function to
    its own output is a no-op.
    """
    if isinstance(obj, date):
        return format_datetime(obj)
    if isinstance(obj, Mapping):
        return {key: convert_datetime_fields(value) for key, value in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [convert_datetime_fields(item) for item in obj]
    return obj


def _recipient(data: Mapping[str, Any] | None) -> dict[str, str]:
    data = data or {}
    return {
        "raw": data.get("raw") or "",
        "email": data.get("email") or "",
        "firstName": data.get("firstName") or "",
        "lastName": data.get("lastName") or "",
    }


def _note_content(metadata: Mapping[str, Any]) -> str:
    return metadata.get("body") or ""


def _email_content(metadata: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "subject": metadata.get("subject") or "",
        "from": _recipient(metadata.get("from")),
        "to": [_recipient(item) for item in metadata.get("to") or []],
        "cc": [_recipient(item) for item in metadata.get("cc") or []],
        "bcc": [_recipient(item) for item in metadata.get("bcc") or []],
        "sender": {"email": (metadata.get("sender") or {}).get("email") or ""},
        "body": metadata.get("text") or metadata.get("html") or "",
    }


def _task_content(metadata: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "subject": metadata.get("subject") or "",
        "body": metadata.get("body") or "",
        "status": metadata.get("status") or "",
        "for_object_type": metadata.get("forObjectType") or "",
    }


def _meeting_content(metadata: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "title": metadata.get("title") or "",
        "body": metadata.get("body") or "",
        "start_time": metadata.get("startTime"),
        "end_time": metadata.get("endTime"),
        "internal_notes": metadata.get("internalMeetingNotes") or "",
    }


def _call_content(metadata: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "body": metadata.get("body") or "",
        "from_number": metadata.get("fromNumber") or "",
        "to_number": metadata.get("toNumber") or "",
        "duration_ms": metadata.get("durationMilliseconds"),
        "status": metadata.get("status") or "",
        "disposition": metadata.get("disposition") or "",
    }


CONTENT_BUILDERS: dict[str, Callable[[Mapping[str, Any]], Any]] = {
    "NOTE": _note_content,
    "EMAIL": _email_content,
    "TASK": _task_content,
    "MEETING": _meeting_content,
    "CALL": _call_content,
}


def format_engagement(record: Mapping[str, Any]) -> dict[str, Any]:
    """Flatten a legacy v1 engagement payload into a uniform record.

    ``record`` is the ``{"engagement", "associations", "metadata"}`` object
    returned by the engagements API. Unknown engagement types keep the common
    fields but carry no ``content`` key.
    """
    engagement = record.get("engagement") or {}
    metadata = record.get("metadata") or {}
    engagement_type = engagement.get("type")

    formatted: dict[str, Any] = {
        "id": engagement.get("id"),
        "type": engagement_type,
        "created_at": engagement.get("createdAt"),
        "last_updated": engagement.get("lastUpdated"),
        "created_by": engagement.get("createdBy"),
        "modified_by": engagement.get("modifiedBy"),
        "timestamp": engagement.get("timestamp"),
        "associations": record.get("associations") or {},
    }
    builder = CONTENT_BUILDERS.get(engagement_type)
    if builder is not None:
        formatted["content"] = builder(metadata)
    return formatted
