"""Shared fixtures: an in-memory song store and record builders."""

from __future__ import annotations

import asyncio
from types import SimpleNamespace
from typing import Any

import pytest

from be.repository import ChunkWriteError, SongRef, StoreError


class FakeSongStore:
    """In-memory stand-in for SongRepository.

    ``fail_on_calls`` lists zero-based insert_batch call numbers that raise
    ChunkWriteError.
    """

    def __init__(
        self,
        existing: list[str] | tuple[str, ...] = (),
        *,
        fail_on_calls: set[int] | None = None,
        fail_snapshot: bool = False,
    ) -> None:
        self.existing = [SongRef(song_id=i + 1, song_name=n) for i, n in enumerate(existing)]
        self.fail_on_calls = fail_on_calls or set()
        self.fail_snapshot = fail_snapshot
        self.snapshot_calls = 0
        self.insert_calls: list[list[dict[str, Any]]] = []
        self.created: list[dict[str, Any]] = []
        self._next_id = 1000

    async def fetch_all_names(self) -> list[SongRef]:
        self.snapshot_calls += 1
        if self.fail_snapshot:
            raise StoreError("connection refused")
        return list(self.existing)

    async def insert_batch(self, rows):
        call_no = len(self.insert_calls)
        self.insert_calls.append(list(rows))
        if call_no in self.fail_on_calls:
            raise ChunkWriteError("duplicate key value violates unique constraint")

        created = []
        for row in rows:
            self._next_id += 1
            created.append(SongRef(song_id=self._next_id, song_name=row["song_name"]))
        return created

    async def create(self, *, song_name, main_stanza, stanzas, created_by="System"):
        self._next_id += 1
        self.created.append({"song_name": song_name, "main_stanza": main_stanza, "stanzas": stanzas})
        return SimpleNamespace(song_id=self._next_id, song_name=song_name)


def make_song(name: str | None, **overrides: Any) -> dict[str, Any]:
    """A well-formed bulk import record."""
    record: dict[str, Any] = {
        "main_stanza": {"lines": ["Refrain line one", "Refrain line two"]},
        "stanzas": {"1": {"lines": ["Verse one"]}, "2": {"lines": ["Verse two"]}},
    }
    if name is not None:
        record["song_name"] = name
    record.update(overrides)
    return record


def run(coro):
    return asyncio.run(coro)


@pytest.fixture
def store() -> FakeSongStore:
    return FakeSongStore()
