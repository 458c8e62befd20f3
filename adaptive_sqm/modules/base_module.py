"""Abstract base class for the per-link background modules."""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

from ..core.scheduler import Scheduler
from ..engine.registry import WanLinkRegistry
from ..utils.logging import get_logger


class BaseModule(ABC):
    """Base class for modules that run one scheduled job per WAN link.

    Provides the start/stop lifecycle, per-link attach/detach on the shared
    scheduler and health reporting. Subclasses supply the cadence and the
    job body.
    """

    def __init__(
        self,
        name: str,
        registry: WanLinkRegistry,
        scheduler: Scheduler,
        config: dict | None = None,
    ):
        self.name = name
        self.config = config or {}
        self.registry = registry
        self.scheduler = scheduler
        self.enabled = True
        self.running = False
        self.health_status = "initialized"
        self.last_heartbeat: Optional[datetime] = None
        self.logger = get_logger(f"module.{name}")

    @property
    def clock(self):
        return self.scheduler.clock

    def job_name(self, link_id: int) -> str:
        return f"{self.name}:{link_id}"

    @abstractmethod
    def next_interval(self, link_id: int, now: datetime) -> float:
        """Seconds until the next run for this link."""
        ...

    @abstractmethod
    async def run_job(self, link_id: int) -> None:
        ...

    def run_immediately(self, link_id: int) -> bool:
        return False

    def attach(self, link_id: int) -> None:
        """Start (or restart) the periodic job for one link."""
        self.scheduler.schedule_periodic(
            self.job_name(link_id),
            lambda now: self.next_interval(link_id, now),
            lambda: self.run_job(link_id),
            run_immediately=self.run_immediately(link_id),
        )
        self.logger.info("link_attached", link_id=link_id)

    def detach(self, link_id: int) -> bool:
        return self.scheduler.cancel(self.job_name(link_id))

    def attached_links(self) -> list[int]:
        prefix = f"{self.name}:"
        return [int(n[len(prefix):]) for n in self.scheduler.job_names() if n.startswith(prefix)]

    async def start(self) -> None:
        self.running = True
        self.health_status = "running"
        for runtime in self.registry.runtimes():
            if runtime.link.enabled:
                self.attach(runtime.link_id)
        self.heartbeat()
        self.logger.info("module_started", links=len(self.attached_links()))

    async def stop(self) -> None:
        self.scheduler.cancel_prefix(f"{self.name}:")
        self.running = False
        self.health_status = "stopped"
        self.logger.info("module_stopped")

    @abstractmethod
    async def health_check(self) -> dict:
        """Return module health status.

        Returns:
            dict with keys: status (str), details (dict)
        """
        ...

    def heartbeat(self) -> None:
        self.last_heartbeat = self.clock.now()

    def get_status(self) -> dict:
        return {
            "name": self.name,
            "enabled": self.enabled,
            "running": self.running,
            "health_status": self.health_status,
            "attached_links": self.attached_links(),
            "last_heartbeat": self.last_heartbeat.isoformat() if self.last_heartbeat else None,
        }
