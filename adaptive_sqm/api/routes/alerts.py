"""Alert routes."""

import json

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ...dependencies import get_db
from ...models.alert import Alert

router = APIRouter(prefix="/alerts", tags=["alerts"])


@router.get("/")
async def get_alerts(
    limit: int = Query(50, ge=1, le=500),
    severity: str | None = None,
    wan_link_id: int | None = None,
    unacknowledged_only: bool = False,
    db: AsyncSession = Depends(get_db),
):
    query = select(Alert).order_by(Alert.timestamp.desc(), Alert.id.desc()).limit(limit)
    if severity:
        query = query.where(Alert.severity == severity)
    if wan_link_id is not None:
        query = query.where(Alert.wan_link_id == wan_link_id)
    if unacknowledged_only:
        query = query.where(Alert.acknowledged == False)  # noqa: E712

    rows = (await db.execute(query)).scalars().all()
    return [
        {
            "id": r.id,
            "timestamp": r.timestamp.isoformat(),
            "severity": r.severity,
            "source": r.source,
            "title": r.title,
            "description": r.description,
            "details": json.loads(r.details_json) if r.details_json else None,
            "wan_link_id": r.wan_link_id,
            "acknowledged": r.acknowledged,
        }
        for r in rows
    ]


class AcknowledgeRequest(BaseModel):
    alert_ids: list[int]


@router.post("/acknowledge")
async def acknowledge_alerts(body: AcknowledgeRequest, db: AsyncSession = Depends(get_db)):
    await db.execute(update(Alert).where(Alert.id.in_(body.alert_ids)).values(acknowledged=True))
    await db.commit()
    return {"acknowledged": body.alert_ids}
