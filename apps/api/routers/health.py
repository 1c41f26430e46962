"""
Health check endpoints.

``/health`` reports each dependency the ledger needs; ``/health/ready`` only
answers 200 when credits can actually be sold and spent.
"""

from typing import List

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

import database
from config import payment_gateway_configured, settings

router = APIRouter()

GATEWAY_KEYS = ("IYZICO_API_KEY", "IYZICO_SECRET_KEY", "IYZICO_BASE_URL")


async def _database_status() -> str:
    try:
        async with database.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError) as exc:
        return f"down: {exc}"
    return "up"


def _missing_gateway_keys() -> List[str]:
    return [key for key in GATEWAY_KEYS if not str(getattr(settings, key, "") or "").strip()]


@router.get("/health")
async def health_check(request: Request):
    """Report database, rate limiter store and gateway configuration."""
    limiter = request.app.state.rate_limiter
    report = {
        "status": "healthy",
        "api": "up",
        "database": await _database_status(),
        "rate_limiter": type(limiter).__name__,
        "rate_limit_store": await limiter.backend_status(),
        "payment_gateway": "configured" if payment_gateway_configured() else "missing",
    }
    if report["database"] != "up" or report["rate_limit_store"].startswith("down"):
        report["status"] = "degraded"
    return report


@router.get("/health/ready")
async def readiness_check():
    """Ready once the ledger store answers and checkout can be initialized."""
    missing = _missing_gateway_keys()
    database_status = await _database_status()
    if missing or database_status != "up":
        return JSONResponse(
            status_code=503,
            content={"ready": False, "missing": missing, "database": database_status},
        )
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    return {"alive": True}
