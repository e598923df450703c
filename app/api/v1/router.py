"""
API router
"""

from fastapi import APIRouter
from app.api.v1 import jobs
from app.api.v1 import status
from app.api.v1 import api_keys
from app.api.v1 import health

api_router = APIRouter()

api_router.include_router(jobs.router, prefix="/jobs", tags=["jobs"])
api_router.include_router(status.router, prefix="/status", tags=["jobs"])
api_router.include_router(api_keys.router, prefix="/api-keys", tags=["api-keys"])
api_router.include_router(health.router, prefix="/health", tags=["service"])
