"""Live shaping status for dashboard polling."""

from fastapi import APIRouter, Depends

from ...dependencies import get_controller, get_sampler

router = APIRouter(prefix="/sqm", tags=["sqm"])


@router.get("/status")
async def get_status(controller=Depends(get_controller)):
    """Per-interface rates: ``ifb<iface>`` is the download side, ``<iface>`` the upload side."""
    return controller.status_snapshot()


@router.get("/learning-progress")
async def get_learning_progress(controller=Depends(get_controller), sampler=Depends(get_sampler)):
    progress = controller.learning_progress()
    for entry in progress:
        entry["sampling_phase"] = sampler.sampling_phase(entry["link_id"])
    return progress
