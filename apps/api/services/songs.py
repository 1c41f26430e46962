"""Song record store: generation requests, their status and variations."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import update
from sqlalchemy.exc import OperationalError, ProgrammingError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from database import dialect_insert
from models.anonymous_usage import AnonymousUsage
from models.song import Song
from services.identity import parse_owner_id

logger = logging.getLogger(__name__)

SONG_STATUSES = ("pending", "processing", "complete", "failed")
STATUS_RANK = {"pending": 0, "processing": 1, "complete": 2, "failed": 2}
TERMINAL_STATUSES = frozenset({"complete", "failed"})
VARIATION_STATUSES = ("pending", "processing", "complete")

SONG_NOT_FOUND = "Song not found"
UNAUTHORIZED = "Unauthorized"
STALE_STATUS = "stale"
UNKNOWN_STATUS = "Unknown status"

_STATUS_UPDATE_ATTEMPTS = 3


@dataclass(frozen=True)
class SongVariation:
    id: str
    title: str
    duration: str = "0:00"
    audio_url: Optional[str] = None
    video_url: Optional[str] = None
    image_url: Optional[str] = None
    status: str = "pending"
    prompt: Optional[str] = None
    tags: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "duration": self.duration,
            "audio_url": self.audio_url,
            "video_url": self.video_url,
            "image_url": self.image_url,
            "status": self.status,
            "prompt": self.prompt,
            "tags": self.tags,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SongVariation":
        status = str(data.get("status") or "pending")
        return cls(
            id=str(data.get("id") or ""),
            title=str(data.get("title") or ""),
            duration=str(data.get("duration") or "0:00"),
            audio_url=data.get("audio_url"),
            video_url=data.get("video_url"),
            image_url=data.get("image_url"),
            status=status if status in VARIATION_STATUSES else "pending",
            prompt=data.get("prompt"),
            tags=data.get("tags"),
        )


@dataclass(frozen=True)
class SongDraft:
    id: str
    name: str
    style: str
    celebration_type: Optional[str] = None
    status: str = "pending"
    message: Optional[str] = None
    task_id: Optional[str] = None
    variations: List[SongVariation] = field(default_factory=list)


@dataclass(frozen=True)
class SongOperationResult:
    success: bool
    error: Optional[str] = None
    song: Optional[Song] = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def pending_variations(count: int) -> List[SongVariation]:
    return [
        SongVariation(id=f"pending-{index}", title=f"Version {index}", duration="0:00", status="pending")
        for index in range(1, max(int(count), 0) + 1)
    ]


def _sort_key(song: Song):
    created_at = song.created_at
    if created_at is None:
        created_at = datetime.min
    elif created_at.tzinfo is not None:
        created_at = created_at.astimezone(timezone.utc).replace(tzinfo=None)
    return (created_at, song.id or "")


def sort_songs_newest_first(songs: Iterable[Song]) -> List[Song]:
    """In-memory equivalent of ORDER BY created_at DESC, id DESC."""
    return sorted(songs, key=_sort_key, reverse=True)


def serialize_song(song: Song) -> Dict[str, Any]:
    return {
        "id": song.id,
        "user_id": song.user_id,
        "anonymous": parse_owner_id(song.user_id).is_anonymous,
        "name": song.name,
        "celebration_type": song.celebration_type,
        "style": song.style,
        "status": song.status,
        "message": song.message,
        "task_id": song.task_id,
        "variations": list(song.variations or []),
        "created_at": song.created_at.isoformat() if song.created_at else None,
        "updated_at": song.updated_at.isoformat() if song.updated_at else None,
    }


async def get_song_by_id(song_id: str, db: AsyncSession) -> Optional[Song]:
    result = await db.execute(
        select(Song).where(Song.id == song_id).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_song_by_task_id(task_id: str, db: AsyncSession) -> Optional[Song]:
    result = await db.execute(
        select(Song).where(Song.task_id == task_id).limit(1).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def save_song(
    user_id: str,
    draft: SongDraft,
    db: AsyncSession,
    email: Optional[str] = None,
    trust_generation_fields: bool = True,
) -> SongOperationResult:
    """Upsert a song by id.

    created_at is set only on insert and updated_at on every save. When
    trust_generation_fields is False, status, variations and task_id are
    left to the generation callback: new records start pending and existing
    records keep what is stored.
    """
    now = _utcnow()
    try:
        existing = await get_song_by_id(draft.id, db)
        if existing is None:
            if trust_generation_fields:
                status = draft.status if draft.status in STATUS_RANK else "pending"
                variations = [variation.to_dict() for variation in draft.variations]
                task_id = draft.task_id
            else:
                status = "pending"
                variations = [variation.to_dict() for variation in pending_variations(len(draft.variations))]
                task_id = None
            song = Song(
                id=draft.id,
                user_id=user_id,
                email=email,
                name=draft.name,
                celebration_type=draft.celebration_type,
                style=draft.style,
                status=status,
                message=draft.message,
                variations=variations,
                task_id=task_id,
                created_at=now,
                updated_at=now,
            )
            db.add(song)
        else:
            if existing.user_id != user_id:
                return SongOperationResult(success=False, error=UNAUTHORIZED)
            song = existing
            song.name = draft.name
            song.celebration_type = draft.celebration_type
            song.style = draft.style
            song.message = draft.message
            if email and not song.email:
                song.email = email
            if trust_generation_fields:
                song.status = draft.status if draft.status in STATUS_RANK else song.status
                song.variations = [variation.to_dict() for variation in draft.variations]
                if draft.task_id:
                    song.task_id = draft.task_id
            song.updated_at = now
        await db.commit()
    except SQLAlchemyError:
        await db.rollback()
        raise
    await db.refresh(song)
    return SongOperationResult(success=True, song=song)


async def get_user_songs(user_id: str, db: AsyncSession) -> List[Song]:
    """All songs owned by user_id, newest first."""
    try:
        result = await db.execute(
            select(Song)
            .where(Song.user_id == user_id)
            .order_by(Song.created_at.desc(), Song.id.desc())
        )
        return list(result.scalars().all())
    except (OperationalError, ProgrammingError) as exc:
        if "index" not in str(exc).lower():
            raise
        await db.rollback()
        logger.warning("Ordered song query unavailable, sorting in memory: %s", exc)
        result = await db.execute(select(Song).where(Song.user_id == user_id))
        return sort_songs_newest_first(result.scalars().all())


async def update_song_status_by_task_id(
    task_id: str,
    status: str,
    db: AsyncSession,
    variations: Optional[List[SongVariation]] = None,
) -> SongOperationResult:
    """Apply a generation status update without ever moving backwards.

    complete and failed are terminal; a lower-ranked status than the stored
    one is rejected as stale.
    """
    if status not in STATUS_RANK:
        return SongOperationResult(success=False, error=UNKNOWN_STATUS)

    try:
        for _ in range(_STATUS_UPDATE_ATTEMPTS):
            song = await get_song_by_task_id(task_id, db)
            if song is None:
                return SongOperationResult(success=False, error=SONG_NOT_FOUND)

            current = song.status if song.status in STATUS_RANK else "pending"
            if current in TERMINAL_STATUSES or STATUS_RANK[status] < STATUS_RANK[current]:
                logger.warning(
                    "Ignoring %s callback for task %s: song %s is already %s",
                    status,
                    task_id,
                    song.id,
                    current,
                )
                return SongOperationResult(success=False, error=STALE_STATUS, song=song)

            values: Dict[str, Any] = {"status": status, "updated_at": _utcnow()}
            if variations is not None:
                values["variations"] = [variation.to_dict() for variation in variations]
            result = await db.execute(
                update(Song)
                .where(Song.id == song.id, Song.status == song.status)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                await db.commit()
                await db.refresh(song)
                return SongOperationResult(success=True, song=song)
            await db.rollback()
    except SQLAlchemyError:
        await db.rollback()
        raise
    return SongOperationResult(success=False, error=STALE_STATUS)


async def delete_song(song_id: str, user_id: str, db: AsyncSession) -> SongOperationResult:
    song = await get_song_by_id(song_id, db)
    if song is None:
        return SongOperationResult(success=False, error=SONG_NOT_FOUND)
    if song.user_id != user_id:
        logger.warning("User %s tried to delete song %s owned by someone else", user_id, song_id)
        return SongOperationResult(success=False, error=UNAUTHORIZED)
    try:
        await db.delete(song)
        await db.commit()
    except SQLAlchemyError:
        await db.rollback()
        raise
    return SongOperationResult(success=True)


async def mark_anonymous_usage(visitor_id: str, song_id: str, db: AsyncSession) -> None:
    insert = dialect_insert(db)
    try:
        await db.execute(
            insert(AnonymousUsage)
            .values(visitor_id=visitor_id, first_song_id=song_id)
            .on_conflict_do_nothing(index_elements=["visitor_id"])
        )
        await db.commit()
    except SQLAlchemyError:
        await db.rollback()
        raise


async def has_anonymous_usage(visitor_id: str, db: AsyncSession) -> bool:
    result = await db.execute(
        select(AnonymousUsage.visitor_id).where(AnonymousUsage.visitor_id == visitor_id)
    )
    return result.scalar_one_or_none() is not None
