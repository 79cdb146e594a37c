from fastapi import APIRouter

from app.api.routes import admin, demands, health

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(demands.router, prefix="/demands", tags=["demands"])
api_router.include_router(admin.router, prefix="/admin", tags=["admin"])
