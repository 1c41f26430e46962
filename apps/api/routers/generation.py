"""Music generator callback router."""

import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from routers.rate_limit import rate_limit
from services.generation_callback import handle_generation_callback
from services.songs import SONG_NOT_FOUND, STALE_STATUS
from services.webhook_security import verify_hmac_signature

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/callback")
async def generation_callback(
    request: Request,
    _rate_limit: None = Depends(rate_limit("webhook")),
    db: AsyncSession = Depends(get_db),
):
    body = await request.body()
    if settings.GENERATION_CALLBACK_SECRET:
        signature = request.headers.get("x-webhook-signature")
        if not verify_hmac_signature(body, signature, settings.GENERATION_CALLBACK_SECRET):
            logger.warning("Rejected generation callback with invalid signature")
            raise HTTPException(status_code=401, detail="Invalid webhook signature")

    try:
        payload = json.loads(body or b"null")
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid JSON payload") from exc

    result = await handle_generation_callback(payload, db)
    if result.applied:
        return {"success": True, "task_id": result.task_id, "status": result.status}
    if result.error == SONG_NOT_FOUND:
        raise HTTPException(status_code=404, detail=SONG_NOT_FOUND)
    if result.error == STALE_STATUS:
        raise HTTPException(status_code=409, detail="Song already reached a later status")
    raise HTTPException(status_code=400, detail=result.error or "Invalid callback payload")
