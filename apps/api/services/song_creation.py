"""Song creation: eligibility, pending record and credit debit in one request."""

from __future__ import annotations

import enum
import logging
import uuid
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from models.song import Song
from services.credits import can_create_song, deduct_credit_for_song
from services.identity import AnonymousCaller, Caller
from services.songs import (
    SongDraft,
    delete_song,
    mark_anonymous_usage,
    pending_variations,
    save_song,
)

logger = logging.getLogger(__name__)

PENDING_MESSAGE = "Songs are being generated. This may take 30-60 seconds."


class SongCreationStatus(str, enum.Enum):
    CREATED = "created"
    INELIGIBLE = "ineligible"
    DEBIT_FAILED = "debit_failed"


@dataclass(frozen=True)
class SongCreationResult:
    status: SongCreationStatus
    song: Optional[Song] = None
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status == SongCreationStatus.CREATED


async def _discard_unpaid_song(song_id: str, owner_id: str, db: AsyncSession) -> None:
    """Best-effort removal after the ledger itself failed; the ledger error wins."""
    try:
        await db.rollback()
        await delete_song(song_id, owner_id, db)
    except SQLAlchemyError as cleanup_error:
        logger.error("Could not remove unpaid song %s for user %s: %s", song_id, owner_id, cleanup_error)


async def create_song(
    caller: Caller,
    *,
    name: str,
    celebration_type: str,
    style: str,
    db: AsyncSession,
) -> SongCreationResult:
    """Create a pending song for the caller.

    Authenticated callers must be eligible and are debited before returning;
    if the debit fails the pending record is removed again. Anonymous
    callers skip the ledger and get a usage marker instead.
    """
    email = getattr(caller, "email", None)
    if not caller.is_anonymous:
        eligibility = await can_create_song(caller.owner_id, db, email=email)
        if not eligibility.can_create:
            return SongCreationResult(status=SongCreationStatus.INELIGIBLE, error=eligibility.reason)

    draft = SongDraft(
        id=str(uuid.uuid4()),
        name=name.strip(),
        celebration_type=celebration_type,
        style=style,
        status="pending",
        message=PENDING_MESSAGE,
        task_id=uuid.uuid4().hex,
        variations=pending_variations(settings.PENDING_VARIATION_COUNT),
    )
    saved = await save_song(caller.owner_id, draft, db, email=email)
    song = saved.song

    if isinstance(caller, AnonymousCaller):
        await mark_anonymous_usage(caller.visitor_id, song.id, db)
        return SongCreationResult(status=SongCreationStatus.CREATED, song=song)

    try:
        debit = await deduct_credit_for_song(caller.owner_id, db, email=email)
    except SQLAlchemyError:
        await _discard_unpaid_song(song.id, caller.owner_id, db)
        raise
    if not debit.success:
        logger.error("Debit failed after creating song %s for user %s: %s", song.id, caller.owner_id, debit.error)
        await delete_song(song.id, caller.owner_id, db)
        return SongCreationResult(status=SongCreationStatus.DEBIT_FAILED, error=debit.error)

    return SongCreationResult(status=SongCreationStatus.CREATED, song=song)
