from datetime import datetime
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.future import select

from models.song import Song
from services.songs import (
    SONG_NOT_FOUND,
    STALE_STATUS,
    UNAUTHORIZED,
    SongDraft,
    SongVariation,
    delete_song,
    get_song_by_id,
    get_user_songs,
    has_anonymous_usage,
    mark_anonymous_usage,
    pending_variations,
    save_song,
    sort_songs_newest_first,
    update_song_status_by_task_id,
)


def _draft(song_id="song-1", task_id="task-1", **overrides):
    values = {
        "id": song_id,
        "name": "Ada",
        "style": "pop",
        "celebration_type": "birthday",
        "status": "pending",
        "task_id": task_id,
        "variations": pending_variations(2),
    }
    values.update(overrides)
    return SongDraft(**values)


async def _add_song(session_maker, song_id, user_id, created_at, **fields):
    async with session_maker() as session:
        session.add(
            Song(
                id=song_id,
                user_id=user_id,
                name=fields.get("name", song_id),
                style=fields.get("style", "pop"),
                status=fields.get("status", "pending"),
                variations=[],
                task_id=fields.get("task_id"),
                created_at=created_at,
                updated_at=created_at,
            )
        )
        await session.commit()


@pytest.mark.asyncio
async def test_save_song_keeps_created_at_and_refreshes_updated_at(db_session):
    created = await save_song("user-a", _draft(), db_session)
    first_created_at = created.song.created_at
    first_updated_at = created.song.updated_at

    updated = await save_song("user-a", _draft(name="Ada Lovelace"), db_session)

    assert updated.success is True
    assert updated.song.name == "Ada Lovelace"
    assert updated.song.created_at == first_created_at
    assert updated.song.updated_at >= first_updated_at


@pytest.mark.asyncio
async def test_untrusted_save_never_touches_generation_fields(db_session):
    await save_song("user-a", _draft(), db_session)
    await update_song_status_by_task_id("task-1", "processing", db_session)

    forged = _draft(
        status="complete",
        task_id="forged-task",
        variations=[SongVariation(id="v1", title="Version 1", status="complete", audio_url="https://x/1.mp3")],
        message="edited",
    )
    result = await save_song("user-a", forged, db_session, trust_generation_fields=False)

    assert result.success is True
    assert result.song.status == "processing"
    assert result.song.task_id == "task-1"
    assert all(variation["status"] == "pending" for variation in result.song.variations)
    assert result.song.message == "edited"


@pytest.mark.asyncio
async def test_untrusted_save_of_new_record_starts_pending(db_session):
    result = await save_song(
        "user-a",
        _draft(song_id="song-new", status="complete", task_id="t-new"),
        db_session,
        trust_generation_fields=False,
    )

    assert result.song.status == "pending"
    assert result.song.task_id is None


@pytest.mark.asyncio
async def test_save_onto_someone_elses_song_is_unauthorized(db_session):
    await save_song("user-a", _draft(), db_session)

    result = await save_song("user-b", _draft(name="Hijacked"), db_session)

    assert result.success is False
    assert result.error == UNAUTHORIZED
    song = await get_song_by_id("song-1", db_session)
    assert song.name == "Ada"


@pytest.mark.asyncio
async def test_user_songs_are_newest_first_with_id_tiebreak(session_maker, db_session):
    await _add_song(session_maker, "song-a", "user-a", datetime(2026, 1, 1, 10, 0, 0))
    await _add_song(session_maker, "song-b", "user-a", datetime(2026, 1, 1, 10, 0, 0))
    await _add_song(session_maker, "song-c", "user-a", datetime(2026, 1, 2, 9, 0, 0))
    await _add_song(session_maker, "song-other", "user-b", datetime(2026, 1, 3, 9, 0, 0))

    songs = await get_user_songs("user-a", db_session)

    assert [song.id for song in songs] == ["song-c", "song-b", "song-a"]


@pytest.mark.asyncio
async def test_in_memory_sort_matches_ordered_query(session_maker, db_session):
    await _add_song(session_maker, "song-1", "user-a", datetime(2026, 3, 1, 8, 0, 0))
    await _add_song(session_maker, "song-3", "user-a", datetime(2026, 3, 1, 8, 0, 0))
    await _add_song(session_maker, "song-2", "user-a", datetime(2026, 2, 1, 8, 0, 0))

    ordered = await get_user_songs("user-a", db_session)
    unordered = (await db_session.execute(select(Song).where(Song.user_id == "user-a"))).scalars().all()

    assert [song.id for song in sort_songs_newest_first(unordered)] == [song.id for song in ordered]


@pytest.mark.asyncio
async def test_missing_index_falls_back_to_in_memory_sort(session_maker, db_session):
    await _add_song(session_maker, "song-old", "user-a", datetime(2026, 1, 1))
    await _add_song(session_maker, "song-new", "user-a", datetime(2026, 5, 1))

    original_execute = db_session.execute
    calls = {"count": 0}

    async def execute_without_index(statement, *args, **kwargs):
        calls["count"] += 1
        if calls["count"] == 1:
            raise OperationalError("SELECT songs", {}, Exception("The query requires an index"))
        return await original_execute(statement, *args, **kwargs)

    with patch.object(db_session, "execute", execute_without_index):
        songs = await get_user_songs("user-a", db_session)

    assert calls["count"] == 2
    assert [song.id for song in songs] == ["song-new", "song-old"]


@pytest.mark.asyncio
async def test_other_operational_errors_propagate(db_session):
    async def broken_execute(statement, *args, **kwargs):
        raise OperationalError("SELECT songs", {}, Exception("database is locked"))

    with patch.object(db_session, "execute", broken_execute):
        with pytest.raises(OperationalError):
            await get_user_songs("user-a", db_session)


@pytest.mark.asyncio
async def test_status_moves_forward_and_stores_variations(db_session):
    await save_song("user-a", _draft(), db_session)
    ready = [SongVariation(id="v1", title="Version 1", duration="1:02", status="complete", audio_url="https://x/1.mp3")]

    processing = await update_song_status_by_task_id("task-1", "processing", db_session)
    complete = await update_song_status_by_task_id("task-1", "complete", db_session, variations=ready)

    assert processing.success and complete.success
    assert complete.song.status == "complete"
    assert complete.song.variations[0]["audio_url"] == "https://x/1.mp3"


@pytest.mark.asyncio
async def test_complete_song_is_not_regressed_by_late_callbacks(db_session):
    await save_song("user-a", _draft(), db_session)
    await update_song_status_by_task_id("task-1", "complete", db_session)

    for late_status in ("processing", "pending", "failed"):
        result = await update_song_status_by_task_id(
            "task-1",
            late_status,
            db_session,
            variations=[SongVariation(id="late", title="Late")],
        )
        assert result.success is False
        assert result.error == STALE_STATUS

    song = await get_song_by_id("song-1", db_session)
    assert song.status == "complete"
    assert song.variations[0]["id"] == "pending-1"


@pytest.mark.asyncio
async def test_same_rank_update_refreshes_variations(db_session):
    await save_song("user-a", _draft(), db_session)
    await update_song_status_by_task_id("task-1", "processing", db_session)

    first_track = [SongVariation(id="v1", title="Version 1", status="complete", audio_url="https://x/1.mp3")]
    result = await update_song_status_by_task_id("task-1", "processing", db_session, variations=first_track)

    assert result.success is True
    assert result.song.variations[0]["id"] == "v1"


@pytest.mark.asyncio
async def test_unknown_task_id_is_not_found(db_session):
    result = await update_song_status_by_task_id("missing-task", "complete", db_session)

    assert result.success is False
    assert result.error == SONG_NOT_FOUND


@pytest.mark.asyncio
async def test_delete_requires_owner(db_session):
    await save_song("user-a", _draft(), db_session)

    denied = await delete_song("song-1", "user-b", db_session)
    missing = await delete_song("no-such-song", "user-a", db_session)

    assert denied.success is False and denied.error == UNAUTHORIZED
    assert missing.success is False and missing.error == SONG_NOT_FOUND
    assert await get_song_by_id("song-1", db_session) is not None

    allowed = await delete_song("song-1", "user-a", db_session)
    assert allowed.success is True
    assert await get_song_by_id("song-1", db_session) is None


@pytest.mark.asyncio
async def test_anonymous_usage_marker_is_idempotent(db_session):
    assert await has_anonymous_usage("visitor-1", db_session) is False

    await mark_anonymous_usage("visitor-1", "song-1", db_session)
    await mark_anonymous_usage("visitor-1", "song-2", db_session)

    assert await has_anonymous_usage("visitor-1", db_session) is True
