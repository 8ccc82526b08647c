"""API routes for EmbedTV"""

from fastapi import APIRouter

from .control import router as control_router
from .iptv import router as iptv_router

# Control API under /api; IPTV routes are mounted at the root
api_router = APIRouter(prefix="/api")
api_router.include_router(control_router)

__all__ = ["api_router", "iptv_router"]
