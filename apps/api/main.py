"""
WishTune API - FastAPI Backend
Credit ledger, song library and payment reconciliation for celebration songs.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import SQLAlchemyError

from config import payment_gateway_configured, settings, validate_security_settings
from database import Base, engine
import models  # noqa: F401
from routers import credits, generation, health, payments, songs
from routers.rate_limit import build_rate_limiter

API_VERSION = "0.1.0"


async def _ensure_schema() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@asynccontextmanager
async def lifespan(app: FastAPI):
    print("🎵 Starting WishTune API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            await _ensure_schema()
            print("🗄️ Ledger tables ready.")
        except (SQLAlchemyError, OSError) as e:
            print(f"⚠️ Ledger schema bootstrap skipped: {e}")
    if not payment_gateway_configured():
        print("💳 iyzico keys missing: credit purchases are disabled.")
    if not settings.POLAR_WEBHOOK_SECRET:
        print("💳 POLAR_WEBHOOK_SECRET missing: Polar webhooks are refused.")
    print(f"🚦 Rate limiter: {type(app.state.rate_limiter).__name__}")
    yield
    await engine.dispose()
    print("👋 WishTune API stopped.")


app = FastAPI(
    title="WishTune API",
    description="Celebration songs, song credits and credit purchases",
    version=API_VERSION,
    lifespan=lifespan,
)
app.state.rate_limiter = build_rate_limiter()
app.state.disable_rate_limits = False

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["Authorization", "Content-Type"],
)

app.include_router(health.router, tags=["Health"])
app.include_router(credits.router, prefix="/credits", tags=["Credits"])
app.include_router(songs.router, prefix="/songs", tags=["Songs"])
app.include_router(payments.router, prefix="/payments", tags=["Payments"])
app.include_router(generation.router, prefix="/generation", tags=["Generation"])


@app.get("/")
async def root():
    return {"name": "WishTune API", "version": API_VERSION, "status": "running"}
