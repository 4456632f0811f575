# safu/main.py
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from safu.config import settings
from safu.database import AsyncSessionLocal, init_db
from safu.exceptions import SafuError
from safu.utils.logger import setup_logging

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    logger.info(f"Safu ledger started ({settings.ENVIRONMENT})")
    if not settings.encryption_keys:
        logger.warning("WALLET_ENCRYPTION_KEY is not set: launch creation will be refused")
    yield
    logger.info("Safu ledger shutting down")


# FastAPI app
app = FastAPI(
    title="Safu Launch API",
    description="Escrowed community crowdfunding for Solana token launches.",
    version="0.1.0",
    lifespan=lifespan,
)

if settings.ENVIRONMENT == "development":
    allowed_origins = ["*"]
else:
    allowed_origins = settings.allowed_origins

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    max_age=600
)


@app.exception_handler(SafuError)
async def safu_error_handler(request: Request, exc: SafuError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} -> {exc.code}: {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path} -> {exc.code}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# Import routers AFTER app creation to avoid circular imports
from safu.routers import withdrawals
from safu.routers.safu import contributions_router, launches_router, settlement_router

# Include routers
app.include_router(launches_router)
app.include_router(contributions_router)
app.include_router(settlement_router)
app.include_router(withdrawals.router)


@app.get("/health")
async def health_check():
    try:
        async with AsyncSessionLocal() as session:
            await session.execute(text("SELECT 1"))
        database = "ok"
    except Exception as e:
        logger.error(f"Health check database error: {e}")
        database = "error"
    return {
        "status": "healthy" if database == "ok" else "degraded",
        "database": database,
        "encryption": "configured" if settings.encryption_keys else "missing",
    }
