"""Song creation and song library router."""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_auth_context, get_optional_auth_context
from routers.rate_limit import rate_limit
from services.identity import Caller, normalize_visitor_id, resolve_caller
from services.song_creation import SongCreationStatus, create_song
from services.songs import (
    SONG_NOT_FOUND,
    UNAUTHORIZED,
    SongDraft,
    SongVariation,
    delete_song,
    get_song_by_id,
    get_song_by_task_id,
    get_user_songs,
    has_anonymous_usage,
    save_song,
    serialize_song,
)

router = APIRouter()
logger = logging.getLogger(__name__)


class CreateSongRequest(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    celebration_type: str = Field(min_length=1, max_length=80)
    style: str = Field(min_length=1, max_length=80)
    visitor_id: Optional[str] = None


class SaveSongRequest(BaseModel):
    id: str = Field(min_length=1, max_length=128)
    name: str = Field(min_length=1, max_length=120)
    style: str = Field(min_length=1, max_length=80)
    celebration_type: Optional[str] = None
    message: Optional[str] = None
    status: Optional[str] = None
    variations: List[Dict[str, Any]] = Field(default_factory=list)


def _require_caller(auth: Optional[AuthContext], visitor_id: Optional[str]) -> Caller:
    caller = auth.as_caller() if auth else resolve_caller(None, None, visitor_id)
    if caller is None:
        raise HTTPException(status_code=401, detail="Sign in or provide a visitor_id.")
    return caller


def _raise_for_song_error(error: Optional[str]) -> None:
    if error == SONG_NOT_FOUND:
        raise HTTPException(status_code=404, detail=SONG_NOT_FOUND)
    if error == UNAUTHORIZED:
        raise HTTPException(status_code=403, detail=UNAUTHORIZED)
    raise HTTPException(status_code=400, detail=error or "Song operation failed")


@router.post("")
async def create_song_endpoint(
    request: CreateSongRequest,
    auth: Optional[AuthContext] = Depends(get_optional_auth_context),
    _rate_limit: None = Depends(rate_limit("song_creation")),
    db: AsyncSession = Depends(get_db),
):
    if not request.name.strip():
        raise HTTPException(status_code=400, detail="Missing required fields: name, celebration_type, or style")
    caller = _require_caller(auth, request.visitor_id)

    result = await create_song(
        caller,
        name=request.name,
        celebration_type=request.celebration_type,
        style=request.style,
        db=db,
    )
    if result.status == SongCreationStatus.INELIGIBLE:
        raise HTTPException(status_code=403, detail=result.error or "Insufficient credits")
    if result.status == SongCreationStatus.DEBIT_FAILED:
        raise HTTPException(status_code=500, detail="Could not charge a credit for this song. Please try again.")

    return serialize_song(result.song)


@router.get("")
async def list_songs(
    visitor_id: Optional[str] = Query(default=None),
    auth: Optional[AuthContext] = Depends(get_optional_auth_context),
    _rate_limit: None = Depends(rate_limit("read")),
    db: AsyncSession = Depends(get_db),
):
    caller = _require_caller(auth, visitor_id)
    songs = await get_user_songs(caller.owner_id, db)
    return {"songs": [serialize_song(song) for song in songs]}


@router.get("/status")
async def song_status(
    task_id: str = Query(min_length=1),
    visitor_id: Optional[str] = Query(default=None),
    auth: Optional[AuthContext] = Depends(get_optional_auth_context),
    _rate_limit: None = Depends(rate_limit("read")),
    db: AsyncSession = Depends(get_db),
):
    caller = _require_caller(auth, visitor_id)
    song = await get_song_by_task_id(task_id, db)
    if song is None:
        raise HTTPException(status_code=404, detail=SONG_NOT_FOUND)
    if song.user_id != caller.owner_id:
        raise HTTPException(status_code=403, detail=UNAUTHORIZED)
    return {
        "task_id": song.task_id,
        "song_id": song.id,
        "status": song.status,
        "variations": list(song.variations or []),
    }


@router.get("/anonymous-status")
async def anonymous_status(
    visitor_id: str = Query(min_length=1),
    _rate_limit: None = Depends(rate_limit("read")),
    db: AsyncSession = Depends(get_db),
):
    normalized = normalize_visitor_id(visitor_id)
    if not normalized:
        raise HTTPException(status_code=400, detail="Invalid visitor_id")
    return {"visitor_id": normalized, "used": await has_anonymous_usage(normalized, db)}


@router.post("/save")
async def save_song_endpoint(
    request: SaveSongRequest,
    auth: AuthContext = Depends(get_auth_context),
    _rate_limit: None = Depends(rate_limit("default")),
    db: AsyncSession = Depends(get_db),
):
    draft = SongDraft(
        id=request.id,
        name=request.name,
        style=request.style,
        celebration_type=request.celebration_type,
        message=request.message,
        variations=[SongVariation.from_dict(item) for item in request.variations],
    )
    # Status and variations belong to the generation callback.
    result = await save_song(auth.user_id, draft, db, email=auth.email, trust_generation_fields=False)
    if not result.success:
        _raise_for_song_error(result.error)
    return serialize_song(result.song)


@router.get("/{song_id}")
async def read_song(
    song_id: str,
    visitor_id: Optional[str] = Query(default=None),
    auth: Optional[AuthContext] = Depends(get_optional_auth_context),
    _rate_limit: None = Depends(rate_limit("read")),
    db: AsyncSession = Depends(get_db),
):
    caller = _require_caller(auth, visitor_id)
    song = await get_song_by_id(song_id, db)
    if song is None:
        raise HTTPException(status_code=404, detail=SONG_NOT_FOUND)
    if song.user_id != caller.owner_id:
        raise HTTPException(status_code=403, detail=UNAUTHORIZED)
    return serialize_song(song)


@router.delete("/{song_id}")
async def delete_song_endpoint(
    song_id: str,
    auth: AuthContext = Depends(get_auth_context),
    _rate_limit: None = Depends(rate_limit("default")),
    db: AsyncSession = Depends(get_db),
):
    result = await delete_song(song_id, auth.user_id, db)
    if not result.success:
        _raise_for_song_error(result.error)
    return {"deleted": True, "song_id": song_id}
