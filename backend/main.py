from dotenv import load_dotenv
load_dotenv()

import asyncio
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from database import get_db

# ENV
from config.env import ENV, CORS_ALLOWED_ORIGINS, validate_production_env

# ROUTES
from routes.orders import router as orders_router
from routes.offers import router as offers_router
from routes.returns import router as returns_router
from routes.settlements import router as settlements_router
from routes.notifications import router as notifications_router

# ERRORS
from utils.errors import MarketplaceError
from utils.indexes import ensure_indexes

# WORKERS
from workers.return_penalty_worker import return_penalty_worker
from workers.settlement_worker import settlement_worker
from workers.order_archive_worker import order_archive_worker

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)

validate_production_env()
logger.info("ENV=%s", ENV)

app = FastAPI(
    title="Marketplace Orders API",
    version="1.0.0",
    docs_url=None if ENV == "production" else "/docs",
    redoc_url=None if ENV == "production" else "/redoc",
    openapi_url=None if ENV == "production" else "/openapi.json",
)

# -----------------------------
# CORS
# -----------------------------

allowed_origins = [origin.strip() for origin in CORS_ALLOWED_ORIGINS if origin.strip()]
if not allowed_origins:
    allowed_origins = [
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:5173",
    ]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# -----------------------------
# ERROR HANDLERS
# -----------------------------

@app.exception_handler(MarketplaceError)
async def marketplace_error_handler(request: Request, exc: MarketplaceError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"kind": exc.kind, "detail": exc.detail},
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("UNHANDLED_ERROR path=%s", request.url.path)
    return JSONResponse(
        status_code=500,
        content={"kind": "InternalError", "detail": "Internal server error"},
    )

# -----------------------------
# ROUTES
# -----------------------------

app.include_router(orders_router, prefix="/api")
app.include_router(offers_router, prefix="/api")
app.include_router(returns_router, prefix="/api")
app.include_router(settlements_router, prefix="/api")
app.include_router(notifications_router, prefix="/api")

# -----------------------------
# HEALTH CHECKS
# -----------------------------

@app.get("/api/health")
async def health():

    return {"status": "ok"}

@app.get("/api/health/db")
async def health_db():
    db = get_db()
    await db.command("ping")
    return {"status": "mongodb connected"}

# -----------------------------
# STARTUP (INDEXES + WORKERS, ONE PLACE ONLY)
# -----------------------------

@app.on_event("startup")
async def start_background_workers():
    await ensure_indexes(get_db())

    asyncio.create_task(return_penalty_worker())
    asyncio.create_task(settlement_worker())
    asyncio.create_task(order_archive_worker())
