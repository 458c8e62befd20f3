"""Connection profile presets."""

from fastapi import APIRouter

from ...engine.registry import WanLinkRegistry

router = APIRouter(prefix="/profiles", tags=["profiles"])


@router.get("/")
async def list_profiles():
    return WanLinkRegistry.list_profiles()
