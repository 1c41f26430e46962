from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import func
from sqlalchemy.exc import OperationalError
from sqlalchemy.future import select

from models.song import Song
from services.identity import AuthenticatedCaller
from services.song_creation import SongCreationStatus, create_song


CALLER = AuthenticatedCaller(user_id="creator-1", email="creator@example.com")


async def _create(db_session):
    return await create_song(CALLER, name="Ada", celebration_type="birthday", style="pop", db=db_session)


async def _song_count(session_maker):
    async with session_maker() as session:
        return (await session.execute(select(func.count()).select_from(Song))).scalar_one()


@pytest.mark.asyncio
async def test_store_failure_during_debit_removes_song_and_propagates(session_maker, db_session):
    ledger_down = OperationalError("UPDATE user_credits", {}, Exception("ledger down"))

    with patch("services.song_creation.deduct_credit_for_song", new=AsyncMock(side_effect=ledger_down)):
        with pytest.raises(OperationalError) as exc_info:
            await _create(db_session)

    assert exc_info.value is ledger_down
    assert await _song_count(session_maker) == 0


@pytest.mark.asyncio
async def test_failed_cleanup_does_not_mask_ledger_error(db_session, caplog):
    ledger_down = OperationalError("UPDATE user_credits", {}, Exception("ledger down"))
    cleanup_down = OperationalError("DELETE FROM songs", {}, Exception("store gone"))

    with patch("services.song_creation.deduct_credit_for_song", new=AsyncMock(side_effect=ledger_down)), patch(
        "services.song_creation.delete_song", new=AsyncMock(side_effect=cleanup_down)
    ):
        with pytest.raises(OperationalError) as exc_info:
            await _create(db_session)

    assert exc_info.value is ledger_down
    assert any("Could not remove unpaid song" in record.getMessage() for record in caplog.records)


@pytest.mark.asyncio
async def test_successful_creation_debits_one_free_song(db_session):
    result = await _create(db_session)

    assert result.status == SongCreationStatus.CREATED
    assert result.song.user_id == "creator-1"
    assert result.song.status == "pending"
