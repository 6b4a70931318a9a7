from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
import time
import logging

from examguard.core.config import settings
from examguard.core.database import create_db_and_tables
from examguard.core.cache import cache
from examguard.api.v1.api import api_router


logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="ExamGuard API",
    description="Exam integrity monitoring: event ingestion, risk scoring and proctoring dashboards",
    version="1.0.0",
    docs_url="/docs" if settings.environment == "development" else None,
    redoc_url="/redoc" if settings.environment == "development" else None
)


app.add_middleware(GZipMiddleware, minimum_size=1000)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Global exception on {request.method} {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "message": "An unexpected error occurred. Please try again later.",
        }
    )


@app.on_event("startup")
async def startup_event():
    """Application startup tasks"""
    logger.info("Starting ExamGuard API...")

    create_db_and_tables()
    logger.info("Database initialized")

    if cache.enabled:
        if cache.health_check():
            logger.info("Cache connection established")
        else:
            logger.warning("Cache connection failed - running without cache")

    logger.info("ExamGuard API startup completed")


@app.on_event("shutdown")
async def shutdown_event():
    """Application shutdown tasks"""
    logger.info("Shutting down ExamGuard API...")
    cache.close()
    logger.info("ExamGuard API shutdown completed")


app.include_router(api_router, prefix="/api/v1")


@app.get("/health")
async def health_check():
    return {
        "status": "healthy",
        "timestamp": time.time(),
        "version": "1.0.0",
        "cache": "enabled" if cache.enabled else "disabled",
    }


@app.get("/")
async def read_root():
    return {
        "message": "Welcome to the ExamGuard API!",
        "version": "1.0.0",
    }
