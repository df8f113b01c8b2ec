"""Persistence layer for songs, psalms and presentations.

Each repository wraps an AsyncSession and commits its own writes. Database
errors are re-raised as StoreError subclasses so callers never depend on
SQLAlchemy exception types.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol, Sequence

from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from be import models

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Raised when a database operation fails."""
    pass


class ChunkWriteError(StoreError):
    """Raised when one multi-row insert fails as a whole."""
    pass


@dataclass
class SongRef:
    """Identifier and name of a persisted song."""
    song_id: int
    song_name: str


class SongStore(Protocol):
    """What the bulk import pipeline needs from persistence."""

    async def fetch_all_names(self) -> list[SongRef]: ...

    async def insert_batch(self, rows: Sequence[dict[str, Any]]) -> list[SongRef]: ...


@dataclass
class SongFilters:
    """Optional filters for song listing."""
    name: str | None = None
    created_by: str | None = None
    last_updated_by: str | None = None
    created_from: datetime | None = None
    created_to: datetime | None = None
    updated_from: datetime | None = None
    updated_to: datetime | None = None

    def clauses(self) -> list[Any]:
        song = models.Song
        clauses = []
        if self.name:
            clauses.append(song.song_name.ilike(f"%{self.name}%"))
        if self.created_by:
            clauses.append(song.created_by == self.created_by)
        if self.last_updated_by:
            clauses.append(song.last_updated_by == self.last_updated_by)
        if self.created_from:
            clauses.append(song.created_at >= self.created_from)
        if self.created_to:
            clauses.append(song.created_at <= self.created_to)
        if self.updated_from:
            clauses.append(song.last_updated_at >= self.updated_from)
        if self.updated_to:
            clauses.append(song.last_updated_at <= self.updated_to)
        return clauses


class _Repository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def _commit(self) -> None:
        try:
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise StoreError(f"Commit failed: {e}") from e

    async def _fail(self, action: str, exc: Exception) -> StoreError:
        await self.session.rollback()
        logger.error(f"{action} failed: {exc}")
        return StoreError(f"{action} failed: {exc}")


class SongRepository(_Repository):
    """Songs table access, including the bulk import capability."""

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        retry=retry_if_exception_type(OperationalError),
        reraise=True,
    )
    async def _select_names(self) -> list[SongRef]:
        try:
            result = await self.session.execute(
                select(models.Song.song_id, models.Song.song_name).order_by(models.Song.song_id)
            )
        except OperationalError:
            await self.session.rollback()
            raise
        return [SongRef(song_id=row.song_id, song_name=row.song_name) for row in result]

    async def fetch_all_names(self) -> list[SongRef]:
        """Full id/name snapshot of the songs table.

        Raises:
            StoreError: If the snapshot cannot be read after retries
        """
        try:
            names = await self._select_names()
        except SQLAlchemyError as e:
            raise await self._fail("Song name snapshot", e) from e
        logger.debug(f"Fetched {len(names)} existing song names")
        return names

    async def insert_batch(self, rows: Sequence[dict[str, Any]]) -> list[SongRef]:
        """Insert rows in one statement and commit.

        Returned rows follow the order of ``rows``.

        Raises:
            ChunkWriteError: If the insert or commit fails; nothing from
                this batch is persisted
        """
        stmt = insert(models.Song).returning(
            models.Song.song_id,
            models.Song.song_name,
            sort_by_parameter_order=True,
        )
        try:
            result = await self.session.execute(stmt, list(rows))
            created = [SongRef(song_id=row.song_id, song_name=row.song_name) for row in result]
            await self.session.commit()
        except (SQLAlchemyError, TypeError, ValueError) as e:
            await self.session.rollback()
            logger.error(f"Batch insert of {len(rows)} songs failed: {e}")
            raise ChunkWriteError(str(e)) from e
        return created

    async def create(
        self,
        *,
        song_name: str,
        main_stanza: Any,
        stanzas: Any,
        created_by: str = "System",
    ) -> models.Song:
        song = models.Song(
            song_name=song_name,
            main_stanza=main_stanza,
            stanzas=stanzas,
            created_by=created_by,
            last_updated_by="",
        )
        try:
            self.session.add(song)
            await self.session.flush()
            await self.session.commit()
        except SQLAlchemyError as e:
            raise await self._fail("Song create", e) from e
        return song

    async def get(self, song_id: int) -> models.Song | None:
        return await self.session.get(models.Song, song_id)

    async def list_songs(
        self,
        filters: SongFilters,
        *,
        limit: int,
        offset: int,
    ) -> tuple[int, list[models.Song]]:
        """Return (total matching rows, one page ordered by song_id)."""
        clauses = filters.clauses()
        try:
            total = await self.session.scalar(
                select(func.count()).select_from(models.Song).where(*clauses)
            )
            result = await self.session.scalars(
                select(models.Song)
                .where(*clauses)
                .order_by(models.Song.song_id)
                .offset(offset)
                .limit(limit)
            )
        except SQLAlchemyError as e:
            raise await self._fail("Song listing", e) from e
        return total or 0, list(result)

    async def update(self, song_id: int, values: dict[str, Any]) -> bool:
        """Update one song; last_updated_at is bumped by the model."""
        try:
            result = await self.session.execute(
                update(models.Song)
                .where(models.Song.song_id == song_id)
                .values(**values)
                .returning(models.Song.song_id)
            )
            found = result.first() is not None
        except SQLAlchemyError as e:
            raise await self._fail("Song update", e) from e
        await self._commit()
        return found

    async def delete(self, song_id: int) -> int:
        return await self._delete_where(models.Song.song_id == song_id)

    async def delete_by_name(self, name: str) -> int:
        """Case-insensitive exact-name delete."""
        return await self._delete_where(func.lower(models.Song.song_name) == name.lower())

    async def _delete_where(self, clause: Any) -> int:
        try:
            result = await self.session.execute(
                delete(models.Song).where(clause).returning(models.Song.song_id)
            )
            deleted = len(result.all())
        except SQLAlchemyError as e:
            raise await self._fail("Song delete", e) from e
        await self._commit()
        return deleted


class PsalmRepository(_Repository):
    """Psalm verse access."""

    async def create(self, *, chapter: int, verse: int, telugu: str, english: str) -> models.Psalm:
        psalm = models.Psalm(chapter=chapter, verse=verse, telugu=telugu, english=english)
        try:
            self.session.add(psalm)
            await self.session.flush()
            await self.session.commit()
        except SQLAlchemyError as e:
            raise await self._fail("Psalm create", e) from e
        return psalm

    async def bulk_insert(self, rows: Sequence[dict[str, Any]]) -> int:
        if not rows:
            return 0
        try:
            await self.session.execute(insert(models.Psalm), list(rows))
        except SQLAlchemyError as e:
            raise await self._fail("Psalm bulk insert", e) from e
        await self._commit()
        return len(rows)

    async def get_verse(self, chapter: int, verse: int) -> models.Psalm | None:
        return await self.session.scalar(
            select(models.Psalm).where(models.Psalm.chapter == chapter, models.Psalm.verse == verse)
        )

    async def list_chapter(
        self,
        chapter: int,
        *,
        start: int | None = None,
        end: int | None = None,
    ) -> list[models.Psalm]:
        stmt = select(models.Psalm).where(models.Psalm.chapter == chapter)
        if start is not None:
            stmt = stmt.where(models.Psalm.verse >= start)
        if end is not None:
            stmt = stmt.where(models.Psalm.verse <= end)
        result = await self.session.scalars(stmt.order_by(models.Psalm.verse))
        return list(result)

    async def update(self, psalm_id: int, values: dict[str, Any]) -> bool:
        try:
            result = await self.session.execute(
                update(models.Psalm)
                .where(models.Psalm.id == psalm_id)
                .values(**values)
                .returning(models.Psalm.id)
            )
            found = result.first() is not None
        except SQLAlchemyError as e:
            raise await self._fail("Psalm update", e) from e
        await self._commit()
        return found

    async def delete(self, psalm_id: int) -> int:
        try:
            result = await self.session.execute(
                delete(models.Psalm).where(models.Psalm.id == psalm_id).returning(models.Psalm.id)
            )
            deleted = len(result.all())
        except SQLAlchemyError as e:
            raise await self._fail("Psalm delete", e) from e
        await self._commit()
        return deleted


class PresentationRepository(_Repository):
    """Presentation slide access."""

    async def add_slide(
        self,
        *,
        presentation_name: str,
        random_id: str,
        slide_data: Any,
        slide_order: int | None = None,
    ) -> models.Presentation:
        slide = models.Presentation(
            presentation_name=presentation_name,
            random_id=random_id,
            slide_order=slide_order,
            slide_data=slide_data,
        )
        try:
            self.session.add(slide)
            await self.session.flush()
            await self.session.commit()
        except SQLAlchemyError as e:
            raise await self._fail("Slide create", e) from e
        return slide

    async def update_slide(self, presentation_name: str, random_id: str, slide_data: Any) -> bool:
        try:
            result = await self.session.execute(
                update(models.Presentation)
                .where(
                    models.Presentation.presentation_name == presentation_name,
                    models.Presentation.random_id == random_id,
                )
                .values(slide_data=slide_data)
                .returning(models.Presentation.id)
            )
            found = result.first() is not None
        except SQLAlchemyError as e:
            raise await self._fail("Slide update", e) from e
        await self._commit()
        return found

    async def list_slides(self, presentation_name: str) -> list[models.Presentation]:
        result = await self.session.scalars(
            select(models.Presentation)
            .where(models.Presentation.presentation_name == presentation_name)
            .order_by(models.Presentation.created_datetime)
        )
        return list(result)

    async def list_names(self) -> list[str]:
        result = await self.session.scalars(
            select(models.Presentation.presentation_name).distinct()
        )
        return sorted(result)

    async def oldest_slide_before(self, cutoff: datetime) -> list[tuple[str, datetime]]:
        """(name, earliest slide time) for groups with slides older than cutoff."""
        created = func.min(models.Presentation.created_datetime)
        result = await self.session.execute(
            select(models.Presentation.presentation_name, created.label("created"))
            .where(models.Presentation.created_datetime < cutoff)
            .group_by(models.Presentation.presentation_name)
            .order_by(created.desc())
        )
        return [(row.presentation_name, row.created) for row in result]

    async def stale_names(self, cutoff: datetime) -> list[str]:
        """Names of presentations whose newest slide is older than cutoff."""
        try:
            result = await self.session.scalars(
                select(models.Presentation.presentation_name)
                .group_by(models.Presentation.presentation_name)
                .having(func.max(models.Presentation.created_datetime) < cutoff)
            )
        except SQLAlchemyError as e:
            raise await self._fail("Stale presentation lookup", e) from e
        return list(result)

    async def delete_slide(self, presentation_name: str, random_id: str) -> int:
        return await self._delete_where(
            models.Presentation.presentation_name == presentation_name,
            models.Presentation.random_id == random_id,
        )

    async def delete_presentation(self, presentation_name: str) -> int:
        return await self._delete_where(models.Presentation.presentation_name == presentation_name)

    async def delete_by_names(self, names: Sequence[str]) -> int:
        """Delete every slide of the named presentations. Safe to repeat."""
        if not names:
            return 0
        return await self._delete_where(models.Presentation.presentation_name.in_(list(names)))

    async def _delete_where(self, *clauses: Any) -> int:
        try:
            result = await self.session.execute(
                delete(models.Presentation).where(*clauses).returning(models.Presentation.id)
            )
            deleted = len(result.all())
        except SQLAlchemyError as e:
            raise await self._fail("Slide delete", e) from e
        await self._commit()
        return deleted
