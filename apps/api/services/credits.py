"""Credit ledger: free-tier usage and purchased song credits per user."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy import func, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from database import dialect_insert
from models.user_credits import UserCredits

logger = logging.getLogger(__name__)

NO_CREDITS_REASON = "You have used all free songs. Purchase credits to create more songs."
LEDGER_CONTENTION = "Ledger contention, retry"


class InsufficientCreditsError(RuntimeError):
    """Raised inside a debit when neither free nor paid credits remain."""


class LedgerConflictError(RuntimeError):
    """Raised when guarded updates keep losing to concurrent writers."""


@dataclass(frozen=True)
class LedgerResult:
    success: bool
    error: Optional[str] = None


@dataclass(frozen=True)
class Eligibility:
    can_create: bool
    reason: Optional[str] = None


def free_song_limit() -> int:
    return max(int(settings.FREE_SONG_LIMIT), 0)


def _has_credit(free_songs_used: int, paid_credits: int) -> bool:
    return int(free_songs_used or 0) < free_song_limit() or int(paid_credits or 0) > 0


async def _load(user_id: str, db: AsyncSession) -> Optional[UserCredits]:
    result = await db.execute(
        select(UserCredits)
        .where(UserCredits.user_id == user_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


def credit_upsert_statement(db: AsyncSession, user_id: str, amount: int, email: Optional[str] = None):
    """INSERT-or-increment of paid_credits, usable inside a larger unit of work."""
    insert = dialect_insert(db)
    stmt = insert(UserCredits).values(
        user_id=user_id,
        email=email,
        free_songs_used=0,
        paid_credits=amount,
        total_songs_created=0,
    )
    return stmt.on_conflict_do_update(
        index_elements=["user_id"],
        set_={
            "paid_credits": UserCredits.paid_credits + amount,
            "email": func.coalesce(UserCredits.email, stmt.excluded.email),
            "updated_at": func.now(),
        },
    )


async def _backfill_email(user_id: str, email: Optional[str], db: AsyncSession) -> None:
    if not email:
        return
    await db.execute(
        update(UserCredits)
        .where(UserCredits.user_id == user_id, UserCredits.email.is_(None))
        .values(email=email)
        .execution_options(synchronize_session=False)
    )


async def get_user_credits(user_id: str, db: AsyncSession, email: Optional[str] = None) -> UserCredits:
    """Return the ledger record, creating a zero balance on first sight."""
    credits = await _load(user_id, db)
    if credits is not None and (credits.email or not email):
        return credits

    try:
        if credits is None:
            insert = dialect_insert(db)
            await db.execute(
                insert(UserCredits)
                .values(
                    user_id=user_id,
                    email=email,
                    free_songs_used=0,
                    paid_credits=0,
                    total_songs_created=0,
                )
                .on_conflict_do_nothing(index_elements=["user_id"])
            )
        await _backfill_email(user_id, email, db)
        await db.commit()
    except SQLAlchemyError:
        await db.rollback()
        raise

    credits = await _load(user_id, db)
    if credits is None:
        raise LedgerConflictError(f"credit record for {user_id} vanished after initialization")
    return credits


def credit_summary(credits: UserCredits) -> Dict[str, Any]:
    limit = free_song_limit()
    free_used = int(credits.free_songs_used or 0)
    return {
        "user_id": credits.user_id,
        "free_songs_used": free_used,
        "free_songs_remaining": max(0, limit - free_used),
        "free_song_limit": limit,
        "paid_credits": int(credits.paid_credits or 0),
        "total_songs_created": int(credits.total_songs_created or 0),
    }


async def can_create_song(user_id: str, db: AsyncSession, email: Optional[str] = None) -> Eligibility:
    credits = await get_user_credits(user_id, db, email=email)
    if _has_credit(credits.free_songs_used, credits.paid_credits):
        return Eligibility(can_create=True)
    return Eligibility(can_create=False, reason=NO_CREDITS_REASON)


async def _try_debit(user_id: str, db: AsyncSession, email: Optional[str]) -> bool:
    """Re-read the balance and apply one guarded debit.

    Returns False when a concurrent writer changed the row between the read
    and the write; the caller rolls back and re-reads.
    """
    limit = free_song_limit()
    row = (
        await db.execute(
            select(UserCredits.free_songs_used, UserCredits.paid_credits).where(UserCredits.user_id == user_id)
        )
    ).one_or_none()

    if row is None:
        if limit <= 0:
            raise InsufficientCreditsError(NO_CREDITS_REASON)
        insert = dialect_insert(db)
        result = await db.execute(
            insert(UserCredits)
            .values(
                user_id=user_id,
                email=email,
                free_songs_used=1,
                paid_credits=0,
                total_songs_created=1,
            )
            .on_conflict_do_nothing(index_elements=["user_id"])
        )
        return result.rowcount == 1

    free_used, paid = int(row[0] or 0), int(row[1] or 0)
    if free_used < limit:
        stmt = (
            update(UserCredits)
            .where(UserCredits.user_id == user_id, UserCredits.free_songs_used < limit)
            .values(
                free_songs_used=UserCredits.free_songs_used + 1,
                total_songs_created=UserCredits.total_songs_created + 1,
            )
        )
    elif paid > 0:
        stmt = (
            update(UserCredits)
            .where(
                UserCredits.user_id == user_id,
                UserCredits.free_songs_used >= limit,
                UserCredits.paid_credits > 0,
            )
            .values(
                paid_credits=UserCredits.paid_credits - 1,
                total_songs_created=UserCredits.total_songs_created + 1,
            )
        )
    else:
        raise InsufficientCreditsError(NO_CREDITS_REASON)

    result = await db.execute(stmt.execution_options(synchronize_session=False))
    if result.rowcount != 1:
        return False
    await _backfill_email(user_id, email, db)
    return True


async def deduct_credit_for_song(user_id: str, db: AsyncSession, email: Optional[str] = None) -> LedgerResult:
    """Debit exactly one song: free tier first, then paid credits."""
    attempts = max(int(settings.DEBIT_MAX_ATTEMPTS), 1)
    try:
        for _ in range(attempts):
            if await _try_debit(user_id, db, email):
                await db.commit()
                return LedgerResult(success=True)
            await db.rollback()
        raise LedgerConflictError(LEDGER_CONTENTION)
    except InsufficientCreditsError as exc:
        await db.rollback()
        logger.warning("Debit refused for user %s: no credits available", user_id)
        return LedgerResult(success=False, error=str(exc))
    except LedgerConflictError as exc:
        await db.rollback()
        logger.warning("Debit for user %s gave up after %s attempts", user_id, attempts)
        return LedgerResult(success=False, error=str(exc))
    except SQLAlchemyError:
        await db.rollback()
        raise


async def add_paid_credits(
    user_id: str,
    amount: int,
    db: AsyncSession,
    email: Optional[str] = None,
) -> LedgerResult:
    """Increment paid credits, initializing the record if needed.

    Not idempotent by itself: duplicate payment events are filtered by the
    payment journal before this is reached.
    """
    grant = int(amount)
    if grant <= 0:
        return LedgerResult(success=False, error="amount must be greater than 0")
    try:
        await db.execute(credit_upsert_statement(db, user_id, grant, email=email))
        await db.commit()
    except SQLAlchemyError:
        await db.rollback()
        raise
    logger.info("Added %s paid credits to user %s", grant, user_id)
    return LedgerResult(success=True)


async def merge_anonymous_song(user_id: str, db: AsyncSession, email: Optional[str] = None) -> bool:
    """Count a song made before sign-in against the free tier, once.

    Only applies while the account has no songs, so repeated calls are no-ops.
    """
    try:
        row = (
            await db.execute(select(UserCredits.user_id).where(UserCredits.user_id == user_id))
        ).one_or_none()
        if row is None:
            insert = dialect_insert(db)
            result = await db.execute(
                insert(UserCredits)
                .values(
                    user_id=user_id,
                    email=email,
                    free_songs_used=1,
                    paid_credits=0,
                    total_songs_created=1,
                )
                .on_conflict_do_nothing(index_elements=["user_id"])
            )
        else:
            result = await db.execute(
                update(UserCredits)
                .where(UserCredits.user_id == user_id, UserCredits.total_songs_created == 0)
                .values(
                    free_songs_used=UserCredits.free_songs_used + 1,
                    total_songs_created=UserCredits.total_songs_created + 1,
                )
                .execution_options(synchronize_session=False)
            )
        merged = result.rowcount == 1
        await db.commit()
    except SQLAlchemyError:
        await db.rollback()
        raise
    return merged
