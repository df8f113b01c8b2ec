"""Bulk song import pipeline.

Workflow:
1. Extract the record list from the payload
2. Take one snapshot of existing song names (strict mode only)
3. Validate each record and check its name against the snapshot and the
   names accepted earlier in the batch, in input order
4. Insert accepted records in fixed-size chunks, one statement per chunk
5. Reconcile every outcome back into input order and count them

Partial success is expected: a failed chunk only fails its own records.
"""
from __future__ import annotations

import logging
from collections import Counter
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from itertools import chain
from operator import attrgetter
from typing import Any, Iterable, Sequence

from be.config import SimilarityScorer, settings
from be.pipelines.dedup import NameConflict, NameDeduplicator, clamp_threshold
from be.pipelines.validation import RecordInvalidError, SongCandidate, validate_record
from be.repository import ChunkWriteError, SongStore, StoreError

logger = logging.getLogger(__name__)

PAYLOAD_KEY = "songs"


class SongImportError(Exception):
    """Raised when a bulk import cannot be processed."""
    pass


class MalformedInputError(SongImportError):
    """Raised when the payload is not a non-empty list of records."""
    pass


class SnapshotFetchError(SongImportError):
    """Raised when existing song names cannot be read."""
    pass


class OutcomeStatus(str, Enum):
    """Per-record result."""
    INVALID = "invalid"
    SKIPPED_CONFLICT = "skipped_conflict"
    CREATED = "created"
    FAILED = "failed"


class BatchStatus(str, Enum):
    """Overall result; ACCEPTED means at least one song was created."""
    ACCEPTED = "accepted"
    PROCESSED = "processed"


@dataclass
class ImportOptions:
    """Per-call import controls."""
    allow_similar: bool = True
    similarity_threshold: float = 0.8
    scorer: SimilarityScorer = SimilarityScorer.DICE
    chunk_size: int = 500
    default_actor: str = "System"

    def __post_init__(self) -> None:
        self.similarity_threshold = clamp_threshold(self.similarity_threshold)
        if self.chunk_size < 1:
            raise ValueError(f"chunk_size must be positive, got {self.chunk_size}")

    @classmethod
    def from_query(
        cls,
        allow_similar: str | bool | None = None,
        similarity: Any = None,
    ) -> ImportOptions:
        """Build options from raw query values, falling back to settings."""
        cfg = settings.imports

        if allow_similar is None:
            allow = cfg.allow_similar
        elif isinstance(allow_similar, bool):
            allow = allow_similar
        else:
            # Only the literal "true" enables permissive mode
            allow = allow_similar == "true"

        return cls(
            allow_similar=allow,
            similarity_threshold=cfg.similarity_threshold if similarity is None else similarity,
            scorer=cfg.scorer,
            chunk_size=cfg.chunk_size,
            default_actor=cfg.default_actor,
        )


@dataclass
class ImportOutcome:
    """Result for one input record."""
    index: int
    status: OutcomeStatus
    song_name: Any = None
    reason: str | None = None
    song_id: int | None = None
    conflict_with: str | None = None
    similarity_threshold: float | None = None
    matched_name: str | None = None
    similarity_score: float | None = None

    @classmethod
    def invalid(cls, index: int, song_name: Any, reason: str) -> ImportOutcome:
        return cls(index=index, status=OutcomeStatus.INVALID, song_name=song_name, reason=reason)

    @classmethod
    def skipped(cls, candidate: SongCandidate, conflict: NameConflict, threshold: float) -> ImportOutcome:
        return cls(
            index=candidate.index,
            status=OutcomeStatus.SKIPPED_CONFLICT,
            song_name=candidate.song_name,
            conflict_with=conflict.source.value,
            similarity_threshold=threshold,
            matched_name=conflict.matched_name,
            similarity_score=round(conflict.score, 4),
        )

    @classmethod
    def created(cls, candidate: SongCandidate, song_id: int, song_name: str) -> ImportOutcome:
        return cls(index=candidate.index, status=OutcomeStatus.CREATED, song_name=song_name, song_id=song_id)

    @classmethod
    def failed(cls, candidate: SongCandidate, reason: str) -> ImportOutcome:
        return cls(
            index=candidate.index,
            status=OutcomeStatus.FAILED,
            song_name=candidate.song_name,
            reason=reason,
        )


@dataclass
class ImportSummary:
    """Aggregate counts for one batch."""
    requested: int
    created: int
    skipped_conflict: int
    invalid: int
    failed: int


@dataclass
class BulkImportResult:
    """Reconciled batch result."""
    summary: ImportSummary
    results: list[ImportOutcome]
    status: BatchStatus

    def summary_dict(self) -> dict[str, int]:
        return asdict(self.summary)


def extract_records(payload: Any) -> list[Any]:
    """Accept a bare list or an object wrapping the list under ``songs``.

    Raises:
        MalformedInputError: If no non-empty list can be found
    """
    if isinstance(payload, dict):
        payload = payload.get(PAYLOAD_KEY)
    if not isinstance(payload, list) or not payload:
        raise MalformedInputError(f"Body must be a non-empty array or {{ {PAYLOAD_KEY}: [...] }}")
    return payload


async def write_in_chunks(
    store: SongStore,
    accepted: Sequence[SongCandidate],
    chunk_size: int,
) -> list[ImportOutcome]:
    """Insert accepted records chunk by chunk.

    Each chunk is one insert_batch call. Returned rows are paired with
    submitted rows by position. A ChunkWriteError marks only that chunk's
    records as failed and the next chunk is still attempted.
    """
    outcomes: list[ImportOutcome] = []

    for offset in range(0, len(accepted), chunk_size):
        chunk = accepted[offset:offset + chunk_size]
        try:
            created = await store.insert_batch([c.to_row() for c in chunk])
        except ChunkWriteError as e:
            logger.warning(f"Chunk at offset {offset} ({len(chunk)} rows) failed: {e}")
            outcomes.extend(ImportOutcome.failed(c, str(e)) for c in chunk)
            continue

        for candidate, ref in zip(chunk, created):
            outcomes.append(ImportOutcome.created(candidate, ref.song_id, ref.song_name))

        # A short result set would otherwise drop outcomes silently
        if len(created) < len(chunk):
            logger.error(
                f"Chunk at offset {offset} returned {len(created)} rows for {len(chunk)} submitted"
            )
            outcomes.extend(
                ImportOutcome.failed(c, "Insert returned no row for this record")
                for c in chunk[len(created):]
            )

    return outcomes


def reconcile(requested: int, *outcome_lists: Iterable[ImportOutcome]) -> BulkImportResult:
    """Merge partial outcome lists into input order and count them.

    Raises:
        SongImportError: If the outcomes do not cover every input index
            exactly once
    """
    results = sorted(chain.from_iterable(outcome_lists), key=attrgetter("index"))

    if [o.index for o in results] != list(range(requested)):
        raise SongImportError(
            f"Outcome mismatch: {len(results)} outcomes for {requested} records"
        )

    counts = Counter(o.status for o in results)
    summary = ImportSummary(
        requested=requested,
        created=counts[OutcomeStatus.CREATED],
        skipped_conflict=counts[OutcomeStatus.SKIPPED_CONFLICT],
        invalid=counts[OutcomeStatus.INVALID],
        failed=counts[OutcomeStatus.FAILED],
    )
    status = BatchStatus.ACCEPTED if summary.created > 0 else BatchStatus.PROCESSED
    return BulkImportResult(summary=summary, results=results, status=status)


async def bulk_import(
    store: SongStore,
    payload: Any,
    options: ImportOptions | None = None,
) -> BulkImportResult:
    """Import a batch of songs.

    Args:
        store: Persistence capability (name snapshot + batch insert)
        payload: Request body, a list or ``{"songs": [...]}``
        options: Similarity and chunking controls (defaults from settings)

    Returns:
        BulkImportResult with one outcome per input record

    Raises:
        MalformedInputError: If the payload has no records
        SnapshotFetchError: If strict mode cannot read existing names
    """
    options = options or ImportOptions.from_query()
    records = extract_records(payload)

    dedup: NameDeduplicator | None = None
    if not options.allow_similar:
        try:
            existing = await store.fetch_all_names()
        except StoreError as e:
            raise SnapshotFetchError(f"Cannot read existing songs: {e}") from e
        dedup = NameDeduplicator(
            (ref.song_name for ref in existing),
            threshold=options.similarity_threshold,
            scorer=options.scorer,
        )

    logger.info(
        f"Bulk import of {len(records)} records "
        f"(allow_similar={options.allow_similar}, threshold={options.similarity_threshold})"
    )

    invalid: list[ImportOutcome] = []
    skipped: list[ImportOutcome] = []
    accepted: list[SongCandidate] = []
    now = datetime.now(timezone.utc)

    for index, raw in enumerate(records):
        try:
            candidate = validate_record(index, raw, default_actor=options.default_actor, now=now)
        except RecordInvalidError as e:
            invalid.append(ImportOutcome.invalid(index, e.song_name, e.reason))
            continue

        if dedup is not None:
            conflict = dedup.find_conflict(candidate.song_name)
            if conflict is not None:
                logger.debug(
                    f"Record {index} '{candidate.song_name}' conflicts with "
                    f"'{conflict.matched_name}' ({conflict.source.value}, {conflict.score:.3f})"
                )
                skipped.append(ImportOutcome.skipped(candidate, conflict, dedup.threshold))
                continue
            dedup.accept(candidate.song_name)

        accepted.append(candidate)

    written = await write_in_chunks(store, accepted, options.chunk_size)
    result = reconcile(len(records), invalid, skipped, written)

    logger.info(f"Bulk import finished: {result.summary_dict()}")
    return result
