"""Credit balance router."""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from routers.rate_limit import rate_limit
from services.credits import can_create_song, credit_summary, get_user_credits, merge_anonymous_song

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("")
async def read_credits(
    auth: AuthContext = Depends(get_auth_context),
    _rate_limit: None = Depends(rate_limit("read")),
    db: AsyncSession = Depends(get_db),
):
    credits = await get_user_credits(auth.user_id, db, email=auth.email)
    return credit_summary(credits)


@router.get("/eligibility")
async def read_eligibility(
    auth: AuthContext = Depends(get_auth_context),
    _rate_limit: None = Depends(rate_limit("read")),
    db: AsyncSession = Depends(get_db),
):
    eligibility = await can_create_song(auth.user_id, db, email=auth.email)
    return {"can_create": eligibility.can_create, "reason": eligibility.reason}


@router.post("/merge-anonymous")
async def merge_anonymous(
    auth: AuthContext = Depends(get_auth_context),
    _rate_limit: None = Depends(rate_limit("default")),
    db: AsyncSession = Depends(get_db),
):
    merged = await merge_anonymous_song(auth.user_id, db, email=auth.email)
    if merged:
        logger.info("Merged anonymous song into user %s", auth.user_id)
    credits = await get_user_credits(auth.user_id, db)
    return {"merged": merged, "credits": credit_summary(credits)}
