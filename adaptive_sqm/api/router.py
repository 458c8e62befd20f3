"""Master API router: includes all sub-routers."""

from fastapi import APIRouter

from .routes.alerts import router as alerts_router
from .routes.links import router as links_router
from .routes.profiles import router as profiles_router
from .routes.sqm import router as sqm_router

api_router = APIRouter(prefix="/api/v1")

api_router.include_router(links_router)
api_router.include_router(profiles_router)
api_router.include_router(sqm_router)
api_router.include_router(alerts_router)
