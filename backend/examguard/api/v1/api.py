from fastapi import APIRouter

from .endpoints import proctoring, dashboard, health

api_router = APIRouter()

api_router.include_router(proctoring.router, prefix="/proctoring", tags=["proctoring"])
api_router.include_router(dashboard.router, prefix="/proctoring", tags=["proctoring-dashboard"])
api_router.include_router(health.router, prefix="/health", tags=["health"])
