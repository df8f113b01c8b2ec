"""Structural validation of bulk-import song records.

The check is intentionally shallow: a record needs a name, a main stanza
and a non-empty stanza collection. The inner shape of stanzas is not
inspected. Field aliases are resolved here so later stages only ever see
canonical keys, and JSON text content is decoded exactly once.
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping

from pydantic import TypeAdapter, ValidationError

MISSING_FIELDS = "Missing fields"

# canonical key -> accepted spellings, first match wins
FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "song_name": ("song_name", "songName"),
    "main_stanza": ("main_stanza", "mainStanza"),
    "stanzas": ("stanzas",),
    "created_at": ("created_at", "createdAt"),
    "last_updated_at": ("last_updated_at", "lastUpdatedAt"),
    "created_by": ("created_by", "createdBy"),
    "last_updated_by": ("last_updated_by", "lastUpdatedBy"),
}

_datetime_adapter = TypeAdapter(datetime)


class RecordInvalidError(Exception):
    """Raised when a single record fails validation."""

    def __init__(self, reason: str, song_name: Any = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.song_name = song_name


@dataclass(frozen=True)
class Raw:
    """Content still in serialized JSON text form."""
    text: str


@dataclass(frozen=True)
class Structured:
    """Decoded content (a JSON object or array)."""
    value: Any


Content = Raw | Structured


@dataclass
class SongCandidate:
    """A validated, normalized bulk-import record."""
    index: int
    song_name: str
    main_stanza: Any
    stanzas: Any
    created_at: datetime
    last_updated_at: datetime
    created_by: str = "System"
    last_updated_by: str = ""

    def to_row(self) -> dict[str, Any]:
        """Column values for the songs table."""
        return {
            "song_name": self.song_name,
            "main_stanza": self.main_stanza,
            "stanzas": self.stanzas,
            "created_at": self.created_at,
            "last_updated_at": self.last_updated_at,
            "created_by": self.created_by,
            "last_updated_by": self.last_updated_by,
        }


def resolve_alias(raw: Mapping[str, Any], canonical: str) -> Any:
    """Return the first value among a field's aliases that is not None or a blank string."""
    for key in FIELD_ALIASES[canonical]:
        value = raw.get(key)
        if value is None or (isinstance(value, str) and not value.strip()):
            continue
        return value
    return None


def as_content(value: Any) -> Content:
    """Classify a content field as raw text or structured data."""
    if isinstance(value, str):
        return Raw(value)
    return Structured(value)


def decode_content(content: Content) -> Any:
    """Turn a content block into its structured value.

    Raises:
        ValueError: If raw text is not valid JSON
    """
    if isinstance(content, Structured):
        return content.value
    try:
        return json.loads(content.text)
    except json.JSONDecodeError as e:
        raise ValueError(f"{e.msg} at position {e.pos}") from e


def _is_blank(value: Any) -> bool:
    if value is None or value is False:
        return True
    if isinstance(value, (str, list, dict, tuple)):
        return len(value) == 0
    return False


def _parse_timestamp(value: Any, field_name: str, default: datetime, name: str) -> datetime:
    if _is_blank(value):
        return default
    try:
        parsed = _datetime_adapter.validate_python(value)
    except ValidationError as e:
        raise RecordInvalidError(f"Invalid timestamp: {field_name}", name) from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def validate_record(
    index: int,
    raw: Any,
    *,
    default_actor: str = "System",
    now: datetime | None = None,
) -> SongCandidate:
    """Validate and normalize one bulk-import record.

    Args:
        index: Position of the record in the submitted payload
        raw: The record as received
        default_actor: created_by value used when the record has none
        now: Timestamp used for missing provenance fields

    Returns:
        SongCandidate with canonical keys and decoded content

    Raises:
        RecordInvalidError: If a required field is missing or content
            cannot be decoded
    """
    if not isinstance(raw, Mapping):
        raise RecordInvalidError(MISSING_FIELDS)

    song_name = resolve_alias(raw, "song_name")
    main_stanza = resolve_alias(raw, "main_stanza")
    stanzas = resolve_alias(raw, "stanzas")

    if (
        not isinstance(song_name, str)
        or not song_name.strip()
        or _is_blank(main_stanza)
        or _is_blank(stanzas)
    ):
        raise RecordInvalidError(MISSING_FIELDS, song_name)

    song_name = song_name.strip()

    try:
        main_value = decode_content(as_content(main_stanza))
        stanzas_value = decode_content(as_content(stanzas))
    except ValueError as e:
        raise RecordInvalidError(f"Invalid content: {e}", song_name) from e

    # Text that decodes to nothing counts as missing
    if _is_blank(main_value) or _is_blank(stanzas_value):
        raise RecordInvalidError(MISSING_FIELDS, song_name)

    now = now or datetime.now(timezone.utc)
    created_by = resolve_alias(raw, "created_by")
    last_updated_by = resolve_alias(raw, "last_updated_by")

    return SongCandidate(
        index=index,
        song_name=song_name,
        main_stanza=main_value,
        stanzas=stanzas_value,
        created_at=_parse_timestamp(resolve_alias(raw, "created_at"), "created_at", now, song_name),
        last_updated_at=_parse_timestamp(
            resolve_alias(raw, "last_updated_at"), "last_updated_at", now, song_name
        ),
        created_by=str(created_by) if created_by else default_actor,
        last_updated_by=str(last_updated_by) if last_updated_by else "",
    )
