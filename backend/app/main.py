"""
Backlink Exchange — FastAPI Backend
Publishers claim campaign slots, prove placements and earn credits; advertisers
fund campaigns with those credits. All state persisted to PostgreSQL.
"""

import logging
from contextlib import asynccontextmanager
from starlette.requests import Request
from fastapi import FastAPI
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import update

from app.config import get_settings
from app.database import init_db, check_db_connection
from app.errors import ExchangeError, InsufficientFunds
from app.models import User, UserRole
from app.routers import auth, assets, campaigns, slots, transactions, admin
from app.utils import safe_error_detail

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

settings = get_settings()


async def _bootstrap_first_admin():
    """Promote the FIRST_ADMIN_EMAIL user to admin if they have already signed in."""
    if not settings.first_admin_email:
        return
    from app.database import async_session
    async with async_session() as db:
        result = await db.execute(
            update(User)
            .where(User.email == settings.first_admin_email.lower(), User.role != UserRole.ADMIN.value)
            .values(role=UserRole.ADMIN.value)
        )
        await db.commit()
        if result.rowcount:
            logger.info(f"Bootstrap: promoted {settings.first_admin_email} to admin")


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting Backlink Exchange...")
    try:
        await init_db()
        await _bootstrap_first_admin()
        logger.info("Database initialized — all tables ready.")
    except Exception as e:
        logger.error(f"Startup failed (DB/init): {e}", exc_info=True)
        # Still yield so app can serve /api/health (degraded) and logs are visible
    yield
    logger.info("Shutting down...")


app = FastAPI(
    title="Backlink Exchange",
    description="Credit-based backlink exchange with automated link verification",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── Error mapping ────────────────────────────────────────────────────

@app.exception_handler(ExchangeError)
async def exchange_error_handler(request: Request, exc: ExchangeError):
    body = {"detail": exc.message, "error": exc.code}
    if isinstance(exc, InsufficientFunds):
        body["balance"] = exc.balance
        body["required"] = exc.required
    return JSONResponse(status_code=exc.status_code, content=body)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    return JSONResponse(
        status_code=500,
        content={"detail": safe_error_detail(exc), "error": "internal_error"},
    )


# ── Register Routers ─────────────────────────────────────────────────
app.include_router(auth.router, prefix="/api")
app.include_router(assets.router, prefix="/api/assets", tags=["Assets"])
app.include_router(campaigns.router, prefix="/api/campaigns", tags=["Campaigns"])
app.include_router(slots.router, prefix="/api/slots", tags=["Slots"])
app.include_router(transactions.router, prefix="/api/transactions", tags=["Transactions"])
app.include_router(admin.router, prefix="/api/admin", tags=["Admin"])


@app.get("/api/health")
async def health_check():
    db_ok = await check_db_connection()
    return {
        "status": "healthy" if db_ok else "degraded",
        "service": "Backlink Exchange",
        "database": "connected" if db_ok else "disconnected",
    }
