"""
API v1 router initialization and setup.
"""
from fastapi import APIRouter
from .endpoints import pricing_jobs

api_router = APIRouter()

api_router.include_router(
    pricing_jobs.router,
    prefix="/pricing",
    tags=["pricing"]
)
