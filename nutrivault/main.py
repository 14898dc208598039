import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config import FRONTEND_URL, SYNC_COOLDOWN_BACKEND
from .database import Base, engine
from . import models  # noqa: F401 - register models
from . import models_google_calendar  # noqa: F401
from . import models_visit  # noqa: F401
from .domain.calendar_sync.router import router as google_calendar_router
from .domain.visits.router import router as visits_router

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Reduce verbosity of third-party libraries
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Application starting up...")
    try:
        Base.metadata.create_all(bind=engine, checkfirst=True)
        logger.info("Database tables created successfully")
    except Exception as e:
        # Ignore "already exists" errors from race conditions between workers
        error_msg = str(e)
        if "already exists" in error_msg or "duplicate key" in error_msg:
            logger.info("Database tables already exist (created by another worker)")
        else:
            logger.error(f"Failed to create database tables: {e}")

    if SYNC_COOLDOWN_BACKEND == "redis":
        try:
            from .rate_limiter import get_redis_client

            get_redis_client()  # Connection test
            logger.info("Redis connection established")
        except Exception as e:
            logger.warning(f"Redis connection failed - sync cooldowns will fail open: {e}")

    yield
    logger.info("Application shutting down...")


app = FastAPI(title="NutriVault API", version="1.0.0", lifespan=lifespan)

ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS", f"{FRONTEND_URL},http://localhost:3000").split(",")

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS", "PATCH"],
    allow_headers=["*"],
)

# Routes
app.include_router(visits_router)
app.include_router(google_calendar_router)


@app.get("/health")
def health():
    return {"status": "healthy"}
