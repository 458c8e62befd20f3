"""Alert dispatch manager.

Routes alerts to the in-memory history, the database and an optional
webhook.
"""

import json
import time
from collections import deque
from datetime import datetime, timezone
from typing import Optional

import httpx

from ..utils.logging import get_logger

logger = get_logger("alerting.manager")

SEVERITIES = ("critical", "high", "medium", "low", "info")


class AlertManager:
    """Manages alert creation, deduplication and dispatch."""

    def __init__(
        self,
        webhook_url: Optional[str] = None,
        db_session_factory=None,
        dedup_ttl: float = 300.0,
        history_size: int = 1000,
    ):
        self._webhook_url = webhook_url
        self._db_session_factory = db_session_factory
        self._alert_history: deque = deque(maxlen=history_size)
        self._dedup_cache: dict[tuple[str, str, str], float] = {}
        self._dedup_ttl = dedup_ttl

    def set_db_session_factory(self, factory) -> None:
        """Set the async session factory for database persistence."""
        self._db_session_factory = factory

    def _is_duplicate(self, key: tuple[str, str, str], now: float) -> bool:
        """True if the same alert fired within the TTL. Records the key otherwise.

        Keyed on severity, source and title; descriptions carry counters
        and would never match.
        """
        for stale in [k for k, seen in self._dedup_cache.items() if now - seen > self._dedup_ttl]:
            del self._dedup_cache[stale]
        if key in self._dedup_cache:
            return True
        self._dedup_cache[key] = now
        return False

    async def create_alert(
        self,
        severity: str,
        source: str,
        title: str,
        description: str,
        details: dict | None = None,
        wan_link_id: int | None = None,
    ) -> dict:
        """Create and dispatch an alert.

        Args:
            severity: critical, high, medium, low, info
            source: Which component raised the alert
            title: Short alert title
            description: Detailed description
            details: Additional structured data
            wan_link_id: WAN link the alert concerns, if any
        """
        if severity not in SEVERITIES:
            raise ValueError(f"unknown severity {severity!r}")

        alert = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "severity": severity,
            "source": source,
            "title": title,
            "description": description,
            "details": details,
            "wan_link_id": wan_link_id,
            "acknowledged": False,
        }

        if self._is_duplicate((severity, source, title), time.monotonic()):
            logger.info("alert_suppressed", severity=severity, source=source, title=title)
            alert["suppressed"] = True
            return alert

        self._alert_history.append(alert)
        logger.info("alert_created", severity=severity, source=source, title=title, link_id=wan_link_id)

        alert_id = await self._persist_to_db(alert)
        if alert_id is not None:
            alert["id"] = alert_id

        await self._send_webhook(alert)
        return alert

    async def _persist_to_db(self, alert: dict) -> Optional[int]:
        """Write alert to the database and return its ID."""
        if not self._db_session_factory:
            return None

        try:
            from ..models.alert import Alert

            async with self._db_session_factory() as session:
                db_alert = Alert(
                    severity=alert["severity"],
                    source=alert["source"],
                    title=alert["title"],
                    description=alert["description"],
                    details_json=json.dumps(alert.get("details"), default=str) if alert.get("details") else None,
                    wan_link_id=alert.get("wan_link_id"),
                    acknowledged=False,
                )
                session.add(db_alert)
                await session.commit()
                await session.refresh(db_alert)
                return db_alert.id
        except Exception as e:
            logger.error("alert_db_persist_failed", error=str(e))
            return None

    async def _send_webhook(self, alert: dict) -> None:
        """Send alert to configured webhook URL."""
        if not self._webhook_url:
            return

        try:
            async with httpx.AsyncClient(timeout=10) as client:
                await client.post(
                    self._webhook_url,
                    json=alert,
                    headers={"Content-Type": "application/json"},
                )
        except Exception as e:
            logger.error("webhook_send_failed", error=str(e), url=self._webhook_url)

    def get_recent_alerts(self, limit: int = 50, severity: str | None = None) -> list[dict]:
        """Get recent alerts from memory cache, newest first."""
        alerts = [a for a in reversed(self._alert_history) if severity is None or a["severity"] == severity]
        return alerts[:limit]
