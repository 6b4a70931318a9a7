from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.orm import Session
import time
import logging

from ....core.cache import cache
from ....core.database import get_db
from ...deps import CurrentUser, require_instructor

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/")
def get_basic_health():
    """Basic liveness - no authentication required"""
    return {
        "status": "healthy",
        "timestamp": time.time(),
        "service": "examguard-api"
    }


@router.get("/system")
def get_system_health(
    current_user: CurrentUser = Depends(require_instructor),
    db: Session = Depends(get_db)
):
    """Database, cache and host health"""
    health_status = {
        "timestamp": time.time(),
        "overall_status": "healthy",
        "services": {},
        "performance": {},
        "alerts": []
    }

    try:
        start_time = time.time()
        db.execute(text("SELECT 1"))
        db_response_time = (time.time() - start_time) * 1000
        health_status["services"]["database"] = {
            "status": "healthy",
            "response_time": round(db_response_time, 2)
        }
        if db_response_time > 200:
            health_status["alerts"].append("Database response time is high")
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        health_status["services"]["database"] = {"status": "error", "error": str(e)}
        health_status["overall_status"] = "unhealthy"

    cache_ok = cache.health_check()
    health_status["services"]["cache"] = {
        "status": "healthy" if cache_ok else ("disabled" if not cache.enabled else "unhealthy")
    }
    if cache.enabled and not cache_ok and health_status["overall_status"] == "healthy":
        health_status["overall_status"] = "degraded"

    try:
        import psutil
        memory = psutil.virtual_memory()
        disk = psutil.disk_usage('/')
        health_status["performance"] = {
            "cpu_usage_percent": psutil.cpu_percent(interval=0),
            "memory_usage_percent": memory.percent,
            "disk_usage_percent": round((disk.used / disk.total) * 100, 2),
        }
        if memory.percent > 90:
            health_status["alerts"].append("Memory usage is high")
    except Exception as e:
        logger.warning(f"System metrics unavailable: {e}")
        health_status["performance"] = {"error": str(e)}

    return health_status
