"""WAN link management routes."""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from ...core.profiles import ConnectionProfile, Direction
from ...dependencies import get_baseline_store, get_controller, get_registry, get_sampler

router = APIRouter(prefix="/links", tags=["links"])


class WanLinkCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    interface: str = Field(min_length=1, max_length=15)
    profile: ConnectionProfile
    nominal_download_mbps: float = Field(gt=0)
    nominal_upload_mbps: float = Field(gt=0)
    floor_download_mbps: Optional[float] = Field(default=None, gt=0)
    floor_upload_mbps: Optional[float] = Field(default=None, gt=0)
    enabled: bool = True
    ping_host: str = "1.1.1.1"
    speedtest_server_id: Optional[str] = None
    baseline_latency_ms: Optional[float] = Field(default=None, ge=0)
    speedtest_morning_hour: int = Field(default=6, ge=0, le=23)
    speedtest_morning_minute: int = Field(default=0, ge=0, le=59)
    speedtest_evening_hour: int = Field(default=18, ge=0, le=23)
    speedtest_evening_minute: int = Field(default=30, ge=0, le=59)


class WanLinkUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    interface: Optional[str] = Field(default=None, min_length=1, max_length=15)
    profile: Optional[ConnectionProfile] = None
    nominal_download_mbps: Optional[float] = Field(default=None, gt=0)
    nominal_upload_mbps: Optional[float] = Field(default=None, gt=0)
    floor_download_mbps: Optional[float] = Field(default=None, gt=0)
    floor_upload_mbps: Optional[float] = Field(default=None, gt=0)
    enabled: Optional[bool] = None
    ping_host: Optional[str] = None
    speedtest_server_id: Optional[str] = None
    baseline_latency_ms: Optional[float] = Field(default=None, ge=0)
    speedtest_morning_hour: Optional[int] = Field(default=None, ge=0, le=23)
    speedtest_morning_minute: Optional[int] = Field(default=None, ge=0, le=59)
    speedtest_evening_hour: Optional[int] = Field(default=None, ge=0, le=23)
    speedtest_evening_minute: Optional[int] = Field(default=None, ge=0, le=59)


def _link_summary(runtime, store) -> dict:
    data = runtime.link.to_dict()
    data["shaping"] = runtime.shaping.to_dict()
    data["mode"] = "learning" if store.is_learning(runtime.link_id) else "active"
    return data


@router.get("/")
async def list_links(registry=Depends(get_registry), store=Depends(get_baseline_store)):
    return [_link_summary(rt, store) for rt in registry.runtimes()]


@router.post("/", status_code=status.HTTP_201_CREATED)
async def create_link(
    body: WanLinkCreate,
    registry=Depends(get_registry),
    store=Depends(get_baseline_store),
    controller=Depends(get_controller),
):
    fields = body.model_dump(exclude_none=True)
    fields["profile"] = body.profile.value
    runtime = await registry.create_link(**fields)
    controller.activate_link(runtime.link_id)
    return _link_summary(runtime, store)


@router.get("/{link_id}")
async def get_link(link_id: int, controller=Depends(get_controller)):
    return controller.link_status(link_id)


@router.put("/{link_id}")
async def update_link(
    link_id: int,
    body: WanLinkUpdate,
    registry=Depends(get_registry),
    store=Depends(get_baseline_store),
    controller=Depends(get_controller),
):
    changes = body.model_dump(exclude_unset=True)
    if "profile" in changes and changes["profile"] is not None:
        changes["profile"] = changes["profile"].value
    changes = {k: v for k, v in changes.items() if v is not None or k == "speedtest_server_id"}
    if not changes:
        raise HTTPException(status_code=400, detail="No fields to update")
    runtime = await registry.update_link(link_id, **changes)
    controller.activate_link(link_id)
    await controller.reconcile_link(link_id)
    return _link_summary(runtime, store)


@router.delete("/{link_id}")
async def delete_link(link_id: int, registry=Depends(get_registry)):
    await registry.delete_link(link_id)
    return {"deleted": link_id}


@router.get("/{link_id}/baselines")
async def get_baselines(
    link_id: int,
    direction: Direction = Query(Direction.DOWNLOAD),
    registry=Depends(get_registry),
    store=Depends(get_baseline_store),
):
    registry.get(link_id)
    return {
        "link_id": link_id,
        "direction": direction.value,
        "learning": store.learning_summary(link_id),
        "buckets": store.get_grid(link_id, direction),
    }


@router.post("/{link_id}/test-now")
async def test_now(link_id: int, sampler=Depends(get_sampler), controller=Depends(get_controller)):
    """Run a speed test now, merged with any in-flight or just-finished one."""
    measurement = await sampler.run_sample(link_id, manual=True)
    if measurement is None:
        raise HTTPException(
            status_code=503,
            detail="Speed test failed; the last applied shaping rates remain in effect",
        )
    return {"link_id": link_id, "measurement": measurement, "status": controller.link_status(link_id)}


@router.post("/{link_id}/redeploy")
async def redeploy(link_id: int, force: bool = True, controller=Depends(get_controller)):
    result = await controller.redeploy(link_id, force=force)
    return {"link_id": link_id, **result.to_dict()}
