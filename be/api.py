"""FastAPI app for songs, psalms and presentations.

The bulk song import endpoint is wired to the import pipeline; the other
routes are thin wrappers over the repositories.
"""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any

from fastapi import Body, Depends, FastAPI, HTTPException, Query, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from .config import settings
from .db import AsyncSessionMaker, engine, get_session
from .logging_config import setup_logging
from .pipelines.cleanup import run_cleanup_loop, stop_cleanup_task
from .pipelines.dedup import NameDeduplicator
from .pipelines.song_import import (
    BatchStatus,
    ImportOptions,
    MalformedInputError,
    OutcomeStatus,
    SnapshotFetchError,
    SongImportError,
    bulk_import,
)
from .pipelines.validation import RecordInvalidError, as_content, decode_content, validate_record
from .repository import (
    PresentationRepository,
    PsalmRepository,
    SongFilters,
    SongRepository,
    StoreError,
)

logger = logging.getLogger(__name__)


# Pydantic response models
class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str


class PingResponse(BaseModel):
    """Liveness response."""
    status: str
    timestamp: str


class ErrorResponse(BaseModel):
    """Error response."""
    error: str
    detail: str | None = None


class MessageResponse(BaseModel):
    message: str


class OutcomeDTO(BaseModel):
    """Per-record bulk import outcome."""
    model_config = ConfigDict(populate_by_name=True)

    index: int
    song_name: Any = None
    status: OutcomeStatus
    reason: str | None = None
    song_id: int | None = None
    conflict_with: str | None = Field(default=None, alias="conflictWith")
    similarity_threshold: float | None = Field(default=None, alias="similarityThreshold")
    matched_name: str | None = Field(default=None, alias="matchedName")
    similarity_score: float | None = Field(default=None, alias="similarityScore")


class ImportSummaryDTO(BaseModel):
    """Bulk import counts."""
    requested: int
    created: int
    skipped_conflict: int
    invalid: int
    failed: int


class BulkImportResponse(BaseModel):
    """Bulk import response, identical for 201 and 200."""
    summary: ImportSummaryDTO
    results: list[OutcomeDTO]


class SongCreateResponse(BaseModel):
    song_id: int


class SongUpdateRequest(BaseModel):
    """Partial song update; omitted fields are left untouched."""
    song_name: str | None = Field(default=None, min_length=1)
    main_stanza: Any = None
    stanzas: Any = None
    last_updated_by: str | None = None


class SongDTO(BaseModel):
    """Song record."""
    song_id: int
    song_name: str
    main_stanza: Any
    stanzas: Any
    created_at: datetime
    last_updated_at: datetime
    created_by: str | None
    last_updated_by: str | None


class SongPage(BaseModel):
    """Paginated song listing."""
    total: int
    limit: int
    offset: int
    data: list[SongDTO]


class PsalmCreateRequest(BaseModel):
    chapter: int = Field(ge=1)
    verse: int = Field(ge=1)
    telugu: str = Field(min_length=1)
    english: str = Field(min_length=1)


class PsalmUpdateRequest(BaseModel):
    chapter: int | None = Field(default=None, ge=1)
    verse: int | None = Field(default=None, ge=1)
    telugu: str | None = None
    english: str | None = None


class PsalmDTO(BaseModel):
    id: int
    chapter: int
    verse: int
    telugu: str
    english: str


class PsalmIdResponse(BaseModel):
    id: int


class PsalmBulkResponse(BaseModel):
    message: str
    inserted: int


class PresentationInitRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    presentation_name: str | None = Field(default=None, alias="presentationName")
    created_date_time: str | None = Field(default=None, alias="createdDateTime")


class SlideRequest(BaseModel):
    """Slide create/update body; slideData may be JSON text or an object."""
    model_config = ConfigDict(populate_by_name=True)

    presentation_name: str = Field(alias="presentationName", min_length=1)
    random_id: str = Field(alias="randomId", min_length=1)
    slide_data: Any = Field(alias="slideData")
    slide_order: int | None = Field(default=None, alias="slideOrder")


class SlideDTO(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    random_id: str = Field(serialization_alias="randomId")
    slide_data: Any = Field(serialization_alias="slideData")
    created_date_time: datetime = Field(serialization_alias="createdDateTime")


class PresentationGroupDTO(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    presentation_name: str = Field(serialization_alias="presentationName")
    created_date_time: datetime = Field(serialization_alias="createdDateTime")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup/shutdown logic."""
    # Startup
    setup_logging()
    logger.info("Application starting up")

    cleanup_task: asyncio.Task | None = None
    if settings.cleanup.enabled:
        cleanup_task = asyncio.create_task(run_cleanup_loop(AsyncSessionMaker))

    yield

    # Shutdown
    if cleanup_task is not None:
        await stop_cleanup_task(cleanup_task)
    await engine.dispose()
    logger.info("Application shutting down")


app = FastAPI(
    title=settings.app_name,
    version=settings.version,
    description="Songs, psalms and presentation slides with bulk song import",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors.allowed_origins,
    allow_credentials=False,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)


# Repository dependencies
async def get_song_repository(session: AsyncSession = Depends(get_session)) -> SongRepository:
    return SongRepository(session)


async def get_psalm_repository(session: AsyncSession = Depends(get_session)) -> PsalmRepository:
    return PsalmRepository(session)


async def get_presentation_repository(
    session: AsyncSession = Depends(get_session),
) -> PresentationRepository:
    return PresentationRepository(session)


def _error(status_code: int, error: str, detail: str | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=error, detail=detail).model_dump(),
    )


def _decode_or_400(value: Any, field_name: str) -> Any:
    try:
        return decode_content(as_content(value))
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"{field_name} is not valid JSON: {e}",
        ) from e


# Exception handlers
@app.exception_handler(MalformedInputError)
async def malformed_input_handler(request, exc: MalformedInputError):
    """Reject bodies that carry no records."""
    logger.warning(f"Malformed import payload: {exc}")
    return _error(status.HTTP_400_BAD_REQUEST, "malformed_input", str(exc))


@app.exception_handler(SnapshotFetchError)
async def snapshot_error_handler(request, exc: SnapshotFetchError):
    """Strict imports cannot run without the existing-name snapshot."""
    logger.error(f"Snapshot error: {exc}")
    return _error(status.HTTP_503_SERVICE_UNAVAILABLE, "snapshot_unavailable", str(exc))


@app.exception_handler(SongImportError)
async def import_error_handler(request, exc: SongImportError):
    logger.error(f"Import error: {exc}")
    return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "import_error", str(exc))


@app.exception_handler(StoreError)
async def store_error_handler(request, exc: StoreError):
    """Handle database errors."""
    logger.error(f"Database error: {exc}")
    return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "database_error", str(exc))


@app.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    """Health check endpoint."""
    return HealthResponse(status="ok", version=settings.version)


@app.get("/ping", response_model=PingResponse)
async def ping() -> PingResponse:
    return PingResponse(status="ok", timestamp=datetime.now(timezone.utc).isoformat())


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "app": settings.app_name,
        "version": settings.version,
        "endpoints": {
            "health": "/health",
            "songs": "/songs",
            "bulk_import": "/songs/bulk",
            "psalms": "/psalms/{chapter}",
            "presentations": "/presentations",
            "docs": "/docs",
        },
    }


# -------------------------------
# Songs
# -------------------------------
@app.post(
    "/songs/bulk",
    response_model=BulkImportResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        200: {"model": BulkImportResponse, "description": "Processed, nothing created"},
        400: {"model": ErrorResponse},
        503: {"model": ErrorResponse},
    },
)
async def import_songs(
    payload: Any = Body(default=None),
    allow_similar: str | None = Query(default=None, alias="allowSimilar"),
    similarity: str | None = Query(default=None),
    repo: SongRepository = Depends(get_song_repository),
) -> JSONResponse:
    """Bulk import songs.

    Similarity checks are off by default so known catalogs can be
    re-imported. Pass ``allowSimilar=false`` (and optionally
    ``similarity=0..1``) to skip records whose name is close to an existing
    song or to an earlier record in the same payload.

    Returns 201 when at least one song was created, 200 otherwise; the body
    has the same shape in both cases.
    """
    options = ImportOptions.from_query(allow_similar, similarity)

    try:
        result = await bulk_import(repo, payload, options)
    except (SongImportError, StoreError):
        raise
    except Exception as e:
        logger.error(f"Unexpected error during bulk import: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Internal server error: {str(e)}",
        )

    response = BulkImportResponse(
        summary=ImportSummaryDTO(**result.summary_dict()),
        results=[
            OutcomeDTO(
                index=o.index,
                song_name=o.song_name,
                status=o.status,
                reason=o.reason,
                song_id=o.song_id,
                conflict_with=o.conflict_with,
                similarity_threshold=o.similarity_threshold,
                matched_name=o.matched_name,
                similarity_score=o.similarity_score,
            )
            for o in result.results
        ],
    )
    status_code = (
        status.HTTP_201_CREATED if result.status == BatchStatus.ACCEPTED else status.HTTP_200_OK
    )
    return JSONResponse(
        status_code=status_code,
        content=response.model_dump(mode="json", by_alias=True, exclude_none=True),
    )


@app.post("/songs", response_model=SongCreateResponse, status_code=status.HTTP_201_CREATED)
async def create_song(
    payload: Any = Body(default=None),
    repo: SongRepository = Depends(get_song_repository),
) -> SongCreateResponse:
    """Create one song, rejecting names close to an existing song."""
    try:
        candidate = validate_record(0, payload, default_actor=settings.imports.default_actor)
    except RecordInvalidError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.reason)

    existing = await repo.fetch_all_names()
    dedup = NameDeduplicator(
        (ref.song_name for ref in existing),
        threshold=settings.imports.create_similarity_threshold,
        scorer=settings.imports.scorer,
    )
    conflict = dedup.find_conflict(candidate.song_name)
    if conflict is not None:
        logger.info(f"Rejected '{candidate.song_name}': similar to '{conflict.matched_name}'")
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="A similar song already exists")

    song = await repo.create(
        song_name=candidate.song_name,
        main_stanza=candidate.main_stanza,
        stanzas=candidate.stanzas,
        created_by=candidate.created_by,
    )
    return SongCreateResponse(song_id=song.song_id)


@app.get("/songs", response_model=SongPage)
async def list_songs(
    name: str | None = None,
    created_by: str | None = None,
    last_updated_by: str | None = None,
    created_from: datetime | None = None,
    created_to: datetime | None = None,
    updated_from: datetime | None = None,
    updated_to: datetime | None = None,
    limit: int = Query(default=1000, ge=1),
    offset: int = Query(default=0),
    repo: SongRepository = Depends(get_song_repository),
) -> SongPage:
    """Paginated song listing ordered by song_id."""
    page_size = min(limit, 5000)
    page_offset = max(offset, 0)
    filters = SongFilters(
        name=name,
        created_by=created_by,
        last_updated_by=last_updated_by,
        created_from=created_from,
        created_to=created_to,
        updated_from=updated_from,
        updated_to=updated_to,
    )
    total, songs = await repo.list_songs(filters, limit=page_size, offset=page_offset)
    return SongPage(
        total=total,
        limit=page_size,
        offset=page_offset,
        data=[SongDTO(**song.to_dict()) for song in songs],
    )


@app.get("/songs/{song_id}", response_model=SongDTO)
async def get_song(song_id: int, repo: SongRepository = Depends(get_song_repository)) -> SongDTO:
    song = await repo.get(song_id)
    if song is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Song not found")
    return SongDTO(**song.to_dict())


@app.put("/songs/{song_id}", response_model=MessageResponse)
async def update_song(
    song_id: int,
    request: SongUpdateRequest,
    repo: SongRepository = Depends(get_song_repository),
) -> MessageResponse:
    values: dict[str, Any] = {"last_updated_by": request.last_updated_by or settings.imports.default_actor}
    if request.song_name is not None:
        values["song_name"] = request.song_name
    if request.main_stanza is not None:
        values["main_stanza"] = _decode_or_400(request.main_stanza, "main_stanza")
    if request.stanzas is not None:
        values["stanzas"] = _decode_or_400(request.stanzas, "stanzas")

    if not await repo.update(song_id, values):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Song not found")
    return MessageResponse(message="Song updated")


@app.delete("/songs/by-name/{name}", response_model=MessageResponse)
async def delete_songs_by_name(name: str, repo: SongRepository = Depends(get_song_repository)) -> MessageResponse:
    if not await repo.delete_by_name(name):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No song found with that name.")
    return MessageResponse(message="Song(s) deleted successfully.")


@app.delete("/songs/{song_id}", response_model=MessageResponse)
async def delete_song(song_id: int, repo: SongRepository = Depends(get_song_repository)) -> MessageResponse:
    if not await repo.delete(song_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Song not found.")
    return MessageResponse(message="Song deleted successfully.")


# -------------------------------
# Psalms
# -------------------------------
@app.post("/psalms", response_model=PsalmIdResponse, status_code=status.HTTP_201_CREATED)
async def create_psalm(
    request: PsalmCreateRequest,
    repo: PsalmRepository = Depends(get_psalm_repository),
) -> PsalmIdResponse:
    psalm = await repo.create(**request.model_dump())
    return PsalmIdResponse(id=psalm.id)


@app.post("/psalms/bulk", response_model=PsalmBulkResponse, status_code=status.HTTP_201_CREATED)
async def create_psalms_bulk(
    verses: Any = Body(default=None),
    repo: PsalmRepository = Depends(get_psalm_repository),
) -> PsalmBulkResponse:
    """Insert every complete verse; incomplete entries are dropped."""
    if not isinstance(verses, list) or not verses:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Must be a non-empty array of verses.",
        )
    keys = ("chapter", "verse", "telugu", "english")
    rows = [
        {key: v[key] for key in keys}
        for v in verses
        if isinstance(v, dict) and all(v.get(key) for key in keys)
    ]
    inserted = await repo.bulk_insert(rows)
    return PsalmBulkResponse(message="Psalms inserted successfully.", inserted=inserted)


@app.get("/psalms/{chapter}/range", response_model=list[PsalmDTO])
async def get_psalm_range(
    chapter: int,
    start: int | None = None,
    end: int | None = None,
    repo: PsalmRepository = Depends(get_psalm_repository),
) -> list[PsalmDTO]:
    verses = await repo.list_chapter(chapter, start=start, end=end)
    return [PsalmDTO(**v.to_dict()) for v in verses]


@app.get("/psalms/{chapter}/{verse}", response_model=PsalmDTO)
async def get_psalm_verse(
    chapter: int,
    verse: int,
    repo: PsalmRepository = Depends(get_psalm_repository),
) -> PsalmDTO:
    psalm = await repo.get_verse(chapter, verse)
    if psalm is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Verse not found.")
    return PsalmDTO(**psalm.to_dict())


@app.get("/psalms/{chapter}", response_model=list[PsalmDTO])
async def get_psalm_chapter(
    chapter: int,
    repo: PsalmRepository = Depends(get_psalm_repository),
) -> list[PsalmDTO]:
    verses = await repo.list_chapter(chapter)
    return [PsalmDTO(**v.to_dict()) for v in verses]


@app.put("/psalms/{psalm_id}", response_model=MessageResponse)
async def update_psalm(
    psalm_id: int,
    request: PsalmUpdateRequest,
    repo: PsalmRepository = Depends(get_psalm_repository),
) -> MessageResponse:
    values = request.model_dump(exclude_none=True)
    if not values:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Nothing to update.")
    if not await repo.update(psalm_id, values):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Psalm not found.")
    return MessageResponse(message="Psalm updated.")


@app.delete("/psalms/{psalm_id}", response_model=MessageResponse)
async def delete_psalm(psalm_id: int, repo: PsalmRepository = Depends(get_psalm_repository)) -> MessageResponse:
    if not await repo.delete(psalm_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Psalm not found.")
    return MessageResponse(message="Psalm deleted successfully.")


# -------------------------------
# Presentations
# -------------------------------
@app.post("/presentations", response_model=MessageResponse, status_code=status.HTTP_201_CREATED)
async def init_presentation(request: PresentationInitRequest) -> MessageResponse:
    """Acknowledge a new presentation; slides are what get stored."""
    if not request.presentation_name or not request.created_date_time:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="presentationName and createdDateTime required.",
        )
    return MessageResponse(message="Presentation initialized.")


@app.post("/presentations/slide", response_model=MessageResponse, status_code=status.HTTP_201_CREATED)
async def add_slide(
    request: SlideRequest,
    repo: PresentationRepository = Depends(get_presentation_repository),
) -> MessageResponse:
    await repo.add_slide(
        presentation_name=request.presentation_name,
        random_id=request.random_id,
        slide_data=_decode_or_400(request.slide_data, "slideData"),
        slide_order=request.slide_order,
    )
    return MessageResponse(message="Slide added.")


@app.put("/presentations/slide", response_model=MessageResponse)
async def update_slide(
    request: SlideRequest,
    repo: PresentationRepository = Depends(get_presentation_repository),
) -> MessageResponse:
    found = await repo.update_slide(
        request.presentation_name,
        request.random_id,
        _decode_or_400(request.slide_data, "slideData"),
    )
    if not found:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Slide not found.")
    return MessageResponse(message="Slide updated.")


@app.get("/presentations/older", response_model=list[PresentationGroupDTO])
async def list_older_presentations(
    hours: int = Query(default=48, ge=1),
    repo: PresentationRepository = Depends(get_presentation_repository),
) -> JSONResponse:
    """Presentations with slides older than ``hours``, newest first."""
    cutoff = datetime.now(timezone.utc) - timedelta(hours=hours)
    groups = await repo.oldest_slide_before(cutoff)
    return JSONResponse(
        content=[
            PresentationGroupDTO(presentation_name=name, created_date_time=created).model_dump(
                mode="json", by_alias=True
            )
            for name, created in groups
        ]
    )


@app.get("/presentations/{name}/slides", response_model=list[SlideDTO])
async def list_slides(
    name: str,
    repo: PresentationRepository = Depends(get_presentation_repository),
) -> JSONResponse:
    slides = await repo.list_slides(name)
    return JSONResponse(
        content=[
            SlideDTO(
                random_id=s.random_id,
                slide_data=s.slide_data,
                created_date_time=s.created_datetime,
            ).model_dump(mode="json", by_alias=True)
            for s in slides
        ]
    )


@app.get("/presentations", response_model=list[str])
async def list_presentations(
    repo: PresentationRepository = Depends(get_presentation_repository),
) -> list[str]:
    return await repo.list_names()


@app.delete("/presentations/slide/{presentation_name}/{random_id}", response_model=MessageResponse)
async def delete_slide(
    presentation_name: str,
    random_id: str,
    repo: PresentationRepository = Depends(get_presentation_repository),
) -> MessageResponse:
    if not await repo.delete_slide(presentation_name, random_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Slide not found.")
    return MessageResponse(message=f'Slide with ID "{random_id}" deleted.')


@app.delete("/presentations/{presentation_name}", response_model=MessageResponse)
async def delete_presentation(
    presentation_name: str,
    repo: PresentationRepository = Depends(get_presentation_repository),
) -> MessageResponse:
    deleted = await repo.delete_presentation(presentation_name)
    if not deleted:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No presentation found with that name.",
        )
    return MessageResponse(
        message=f'Deleted {deleted} slide(s) from presentation "{presentation_name}".'
    )
