"""API routes for Company Communicator."""

from fastapi import APIRouter

from .notifications import router as notifications_router

# Main API router
api_router = APIRouter()

api_router.include_router(notifications_router)

__all__ = ["api_router"]
