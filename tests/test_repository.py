"""Repository tests against a throwaway SQLite database (aiosqlite)."""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from tenacity import wait_none

from be import models
from be.pipelines.song_import import ImportOptions, OutcomeStatus, bulk_import
from be.repository import ChunkWriteError, PresentationRepository, SongRepository, StoreError

from conftest import make_song, run

NOW = datetime(2025, 6, 10, 9, 30, tzinfo=timezone.utc)


@asynccontextmanager
async def sqlite_session(path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{path}")
    async with engine.begin() as conn:
        await conn.run_sync(models.Base.metadata.create_all)
    maker = async_sessionmaker(engine, expire_on_commit=False)
    try:
        async with maker() as session:
            yield session
    finally:
        await engine.dispose()


def _row(name: str | None) -> dict:
    return {
        "song_name": name,
        "main_stanza": {"lines": ["refrain"]},
        "stanzas": {"1": {"lines": ["verse"]}},
        "created_at": NOW,
        "last_updated_at": NOW,
        "created_by": "System",
        "last_updated_by": "",
    }


async def _names_by_id(session) -> dict[int, str]:
    result = await session.execute(select(models.Song.song_id, models.Song.song_name))
    return {row.song_id: row.song_name for row in result}


class TestInsertBatch:
    def test_ids_follow_row_order_across_chunks(self, tmp_path):
        names = [f"Hymn {i}" for i in range(7)]

        async def scenario():
            async with sqlite_session(tmp_path / "songs.db") as session:
                repo = SongRepository(session)
                created = []
                for start in range(0, len(names), 3):
                    created.extend(await repo.insert_batch([_row(n) for n in names[start:start + 3]]))
                return created, await _names_by_id(session)

        created, stored = run(scenario())

        assert [ref.song_name for ref in created] == names
        assert len({ref.song_id for ref in created}) == len(names)
        for ref in created:
            assert stored[ref.song_id] == ref.song_name

    def test_failed_chunk_rolls_back_and_later_chunks_commit(self, tmp_path):
        async def scenario():
            async with sqlite_session(tmp_path / "songs.db") as session:
                repo = SongRepository(session)
                await repo.insert_batch([_row("Amazing Grace"), _row("It Is Well")])
                with pytest.raises(ChunkWriteError):
                    await repo.insert_batch([_row("How Great Thou Art"), _row(None)])
                await repo.insert_batch([_row("Blessed Assurance")])
                return await _names_by_id(session)

        stored = run(scenario())

        assert sorted(stored.values()) == ["Amazing Grace", "Blessed Assurance", "It Is Well"]

    def test_snapshot_reads_inserted_names(self, tmp_path):
        async def scenario():
            async with sqlite_session(tmp_path / "songs.db") as session:
                repo = SongRepository(session)
                await repo.insert_batch([_row("Amazing Grace"), _row("It Is Well")])
                return await repo.fetch_all_names()

        refs = run(scenario())
        assert [ref.song_name for ref in refs] == ["Amazing Grace", "It Is Well"]


class TestBulkImportOnSqlite:
    def test_created_ids_match_names(self, tmp_path):
        payload = [
            make_song("Amazing Grace"),
            make_song("It Is Well"),
            make_song("Amazing Grase"),
            make_song("How Great Thou Art"),
            make_song("Blessed Assurance"),
        ]

        async def scenario():
            async with sqlite_session(tmp_path / "songs.db") as session:
                options = ImportOptions(allow_similar=False, similarity_threshold=0.8, chunk_size=2)
                result = await bulk_import(SongRepository(session), payload, options)
                return result, await _names_by_id(session)

        result, stored = run(scenario())

        skipped = result.results[2]
        assert skipped.status == OutcomeStatus.SKIPPED_CONFLICT
        assert skipped.conflict_with == "payload"

        created = [r for r in result.results if r.status == OutcomeStatus.CREATED]
        assert len(created) == 4
        for outcome in created:
            assert stored[outcome.song_id] == outcome.song_name


class TestSnapshotRetry:
    @pytest.fixture(autouse=True)
    def no_wait(self, monkeypatch):
        monkeypatch.setattr(SongRepository._select_names.retry, "wait", wait_none())

    @staticmethod
    def _session(*effects) -> MagicMock:
        session = MagicMock()
        session.execute = AsyncMock(side_effect=list(effects))
        session.rollback = AsyncMock()
        return session

    @staticmethod
    def _dropped() -> OperationalError:
        return OperationalError("SELECT songs", {}, ConnectionResetError("connection reset"))

    def test_retries_then_succeeds(self):
        rows = [SimpleNamespace(song_id=1, song_name="Amazing Grace")]
        session = self._session(self._dropped(), self._dropped(), rows)

        refs = run(SongRepository(session).fetch_all_names())

        assert [ref.song_name for ref in refs] == ["Amazing Grace"]
        assert session.execute.await_count == 3
        assert session.rollback.await_count == 2

    def test_gives_up_after_three_attempts(self):
        session = self._session(self._dropped(), self._dropped(), self._dropped())

        with pytest.raises(StoreError):
            run(SongRepository(session).fetch_all_names())
        assert session.execute.await_count == 3


class TestStalePresentations:
    def _slides(self):
        spec = [
            ("Sunday Service", 72),
            ("Sunday Service", 1),
            ("Good Friday", 72),
            ("Good Friday", 50),
            ("Christmas Eve", 100),
        ]
        return [
            models.Presentation(
                presentation_name=name,
                random_id=f"slide-{i}",
                slide_order=i,
                slide_data={"text": name},
                created_datetime=NOW - timedelta(hours=age),
                updated_datetime=NOW - timedelta(hours=age),
            )
            for i, (name, age) in enumerate(spec)
        ]

    def test_only_groups_with_old_newest_slide_are_stale(self, tmp_path):
        async def scenario():
            async with sqlite_session(tmp_path / "slides.db") as session:
                session.add_all(self._slides())
                await session.commit()
                return await PresentationRepository(session).stale_names(NOW - timedelta(hours=48))

        assert sorted(run(scenario())) == ["Christmas Eve", "Good Friday"]

    def test_delete_by_names_is_idempotent(self, tmp_path):
        async def scenario():
            async with sqlite_session(tmp_path / "slides.db") as session:
                session.add_all(self._slides())
                await session.commit()
                repo = PresentationRepository(session)
                first = await repo.delete_by_names(["Good Friday", "Christmas Eve"])
                second = await repo.delete_by_names(["Good Friday", "Christmas Eve"])
                remaining = await session.scalar(select(func.count(models.Presentation.id)))
                return first, second, remaining

        assert run(scenario()) == (3, 0, 2)
