"""Music generator callback handling."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from services.songs import SongVariation, update_song_status_by_task_id

logger = logging.getLogger(__name__)

CALLBACK_STATUS_MAP = {
    "pending": "pending",
    "text": "processing",
    "first": "processing",
    "processing": "processing",
    "complete": "complete",
    "error": "failed",
    "failed": "failed",
}


class GenerationCallbackError(ValueError):
    """Raised when a callback payload does not have the expected shape."""


@dataclass(frozen=True)
class GenerationUpdate:
    task_id: str
    status: str
    variations: Optional[List[SongVariation]] = None


@dataclass(frozen=True)
class CallbackResult:
    applied: bool
    task_id: Optional[str] = None
    status: Optional[str] = None
    error: Optional[str] = None


def format_duration(seconds: Any) -> str:
    """Render raw seconds as m:ss, defaulting to 0:00."""
    try:
        total = float(seconds)
    except (TypeError, ValueError):
        return "0:00"
    if math.isnan(total) or math.isinf(total) or total <= 0:
        return "0:00"
    whole = int(math.floor(total))
    return f"{whole // 60}:{whole % 60:02d}"


def _variation_status(song_status: str, item: Dict[str, Any]) -> str:
    if song_status == "complete":
        return "complete"
    if song_status == "processing":
        return "complete" if item.get("audio_url") else "processing"
    return "pending"


def _to_variation(index: int, item: Dict[str, Any], song_status: str) -> SongVariation:
    return SongVariation(
        id=str(item.get("id") or f"variation-{index}"),
        title=str(item.get("title") or f"Version {index}"),
        duration=format_duration(item.get("duration")),
        audio_url=item.get("audio_url") or None,
        video_url=item.get("video_url") or None,
        image_url=item.get("image_url") or None,
        status=_variation_status(song_status, item),
        prompt=item.get("prompt") or None,
        tags=item.get("tags") or None,
    )


def parse_generation_callback(payload: Any) -> GenerationUpdate:
    """Validate the provider payload and map it onto song vocabulary."""
    if not isinstance(payload, dict):
        raise GenerationCallbackError("Callback payload must be a JSON object")
    if payload.get("code") != 200:
        raise GenerationCallbackError(f"Generation failed upstream (code {payload.get('code')})")

    data = payload.get("data")
    if not isinstance(data, dict) or not data:
        raise GenerationCallbackError("Callback payload is missing data")

    task_id = str(data.get("task_id") or "").strip()
    if not task_id:
        raise GenerationCallbackError("Callback payload is missing task_id")

    callback_type = str(data.get("callbackType") or "").strip().lower()
    status = CALLBACK_STATUS_MAP.get(callback_type)
    if status is None:
        raise GenerationCallbackError(f"Unknown callbackType: {callback_type or '(empty)'}")

    items = data.get("data")
    variations: Optional[List[SongVariation]] = None
    if isinstance(items, list) and items:
        variations = [
            _to_variation(index, item, status)
            for index, item in enumerate(items, start=1)
            if isinstance(item, dict)
        ]
    elif items is not None and not isinstance(items, list):
        raise GenerationCallbackError("Callback result items must be a list")

    return GenerationUpdate(task_id=task_id, status=status, variations=variations)


async def handle_generation_callback(payload: Any, db: AsyncSession) -> CallbackResult:
    """Apply a callback to the matching song; failures come back as results."""
    try:
        update = parse_generation_callback(payload)
    except GenerationCallbackError as exc:
        logger.warning("Rejected generation callback: %s", exc)
        return CallbackResult(applied=False, error=str(exc))

    result = await update_song_status_by_task_id(
        update.task_id,
        update.status,
        db,
        variations=update.variations,
    )
    if not result.success:
        if result.error != "stale":
            logger.warning("Generation callback for task %s not applied: %s", update.task_id, result.error)
        return CallbackResult(applied=False, task_id=update.task_id, status=update.status, error=result.error)

    logger.info("Song for task %s is now %s", update.task_id, update.status)
    return CallbackResult(applied=True, task_id=update.task_id, status=update.status)
