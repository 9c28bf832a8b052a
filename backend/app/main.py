"""Access Control Editor - FastAPI Application."""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import logging

from app.config import settings
from app.database import async_engine
from app.rbac import get_catalog

logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting Access Control API...")

    # Fail fast on a broken catalog file
    catalog = get_catalog()
    logger.info("Permission catalog loaded (%d groups)", len(catalog))

    # Verify DB connection
    try:
        async with async_engine.begin() as conn:
            await conn.exec_driver_sql("SELECT 1")
        logger.info("Database connection verified")
    except Exception as e:
        logger.error(f"Database connection failed: {e}")

    logger.info("Access Control API started successfully")
    yield

    # Shutdown
    await async_engine.dispose()
    logger.info("Access Control API shut down")


app = FastAPI(
    title="Access Control Editor",
    description="Role-permission matrix and per-user overrides for the operations portal",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Import and register routers
from app.routes import access_control

app.include_router(access_control.router)


@app.get("/api/health")
async def health_check():
    return {"status": "healthy", "service": "Access Control API", "version": "1.0.0"}
