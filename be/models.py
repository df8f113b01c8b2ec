"""Core SQLAlchemy models (2.x style) for presentations, songs and psalms.

Stanza and slide payloads are stored as JSON (JSONB on PostgreSQL).
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON, BigInteger, DateTime, Index, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

JSONType = JSON().with_variant(JSONB(), "postgresql")
# SQLite only autoincrements INTEGER PRIMARY KEY columns
IdType = BigInteger().with_variant(Integer, "sqlite")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


class Presentation(Base):
    """One slide of a named presentation."""
    __tablename__ = "presentations"

    id: Mapped[int] = mapped_column(IdType, primary_key=True, autoincrement=True)
    random_id: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    presentation_name: Mapped[str] = mapped_column(Text, nullable=False)
    slide_order: Mapped[int | None] = mapped_column(Integer)
    slide_data: Mapped[Any] = mapped_column(JSONType, nullable=False)
    created_datetime: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
    )
    updated_datetime: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        server_default=func.now(),
        nullable=False,
    )

    __table_args__ = (
        Index("presentations_name_created_idx", "presentation_name", "created_datetime"),
    )


class Song(Base):
    """Songs table."""
    __tablename__ = "songs"

    song_id: Mapped[int] = mapped_column(IdType, primary_key=True, autoincrement=True)
    song_name: Mapped[str] = mapped_column(Text, nullable=False)
    main_stanza: Mapped[Any] = mapped_column(JSONType, nullable=False)
    stanzas: Mapped[Any] = mapped_column(JSONType, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
    )
    # Bumped on every UPDATE issued through the ORM
    last_updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        server_default=func.now(),
        nullable=False,
    )
    created_by: Mapped[str] = mapped_column(String(255), default="System", server_default="System")
    last_updated_by: Mapped[str] = mapped_column(String(255), default="", server_default="")

    def to_dict(self) -> dict[str, Any]:
        return {
            "song_id": self.song_id,
            "song_name": self.song_name,
            "main_stanza": self.main_stanza,
            "stanzas": self.stanzas,
            "created_at": self.created_at,
            "last_updated_at": self.last_updated_at,
            "created_by": self.created_by,
            "last_updated_by": self.last_updated_by,
        }


Index("songs_name_idx", func.lower(Song.song_name))


class Psalm(Base):
    """Psalm verses with Telugu and English text."""
    __tablename__ = "psalms"

    id: Mapped[int] = mapped_column(IdType, primary_key=True, autoincrement=True)
    chapter: Mapped[int] = mapped_column(Integer, nullable=False)
    verse: Mapped[int] = mapped_column(Integer, nullable=False)
    telugu: Mapped[str] = mapped_column(Text, nullable=False)
    english: Mapped[str] = mapped_column(Text, nullable=False)

    __table_args__ = (
        UniqueConstraint("chapter", "verse", name="psalms_ch_v_idx"),
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "chapter": self.chapter,
            "verse": self.verse,
            "telugu": self.telugu,
            "english": self.english,
        }
