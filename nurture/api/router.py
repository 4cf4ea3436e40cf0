"""
API router - aggregates all route modules.
"""
from fastapi import APIRouter
from nurture.api.sequences import router as sequences_router
from nurture.api.health import router as health_router

api_router = APIRouter()
api_router.include_router(sequences_router)
api_router.include_router(health_router)
