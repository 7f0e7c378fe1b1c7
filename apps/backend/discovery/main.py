"""
Hotspot Discovery API — Application entry point.

Bootstraps FastAPI, wires up middleware, registers route groups,
and manages the MongoDB connection lifecycle.

Extension points:
  - Add new route groups with app.include_router() below
  - Add new middleware in the middleware block
  - Change startup behaviour in the lifespan context manager
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from discovery.core import database
from discovery.core.config import settings
from discovery.core.rate_limit import limiter
from discovery.routes.health import router as health_router
from discovery.routes.hotspots import router as hotspots_router
from discovery.routes.map_stream import router as map_stream_router
from discovery.services.hotspot_store import MongoHotspotStore

# ─── Logging ───────────────────────────────────────────────────────────────────
logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
)
logger = logging.getLogger(__name__)


# ─── Lifespan ──────────────────────────────────────────────────────────────────
@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage startup and shutdown lifecycle.

    Code before `yield` runs on startup; code after runs on shutdown.
    """
    logger.info("Starting Hotspot Discovery API (env: %s)", settings.environment)
    await database.connect_to_mongo()
    db = database.get_db()
    if db is not None:
        try:
            await MongoHotspotStore(db).ensure_indexes()
        except Exception as exc:
            logger.warning("Could not ensure hotspot indexes: %s", exc)
    yield
    logger.info("Shutting down Hotspot Discovery API")
    await database.close_mongo_connection()


# ─── App ───────────────────────────────────────────────────────────────────────
app = FastAPI(
    title="Hotspot Discovery API",
    description="Live map discovery of nearby hotspots, kept in sync with OpenStreetMap.",
    version="0.1.0",
    lifespan=lifespan,
    # Disable docs in production to reduce attack surface
    docs_url="/docs" if settings.environment != "production" else None,
    redoc_url="/redoc" if settings.environment != "production" else None,
)


# ─── Rate limiting ─────────────────────────────────────────────────────────────
# Routes opt-in with @limiter.limit("N/minute") + request: Request parameter.
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# ─── Middleware ─────────────────────────────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ─── Routes ────────────────────────────────────────────────────────────────────
app.include_router(health_router, prefix="/health", tags=["health"])
app.include_router(hotspots_router)
app.include_router(map_stream_router)


@app.get("/", tags=["root"])
async def root():
    """API root — basic metadata."""
    return {
        "name": "Hotspot Discovery API",
        "version": "0.1.0",
        "status": "running",
        "environment": settings.environment,
        "docs": "/docs",
    }
