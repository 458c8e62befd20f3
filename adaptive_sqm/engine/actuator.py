"""Gateway Actuator: pushes shaping fragments to the gateway.

Deploys are serialized per link, short-circuit on an unchanged content
hash and retry only transport failures. A failed deploy never touches the
stored ShapingState: the last applied rates stay authoritative.
"""

import asyncio
import shlex
from dataclasses import dataclass
from typing import Optional

from ..core.clock import Clock, SystemClock
from ..core.errors import DeploymentRefused, DeploymentRejected, InvalidShapingParameter, RemoteUnreachable
from ..core.profiles import Direction
from ..transport.remote import RemoteCommandChannel
from ..utils.logging import get_logger
from .registry import WanLinkRegistry
from ..utils.input_validators import validate_remote_path
from .shaping_script import RenderedScript, boot_script_path, render_shaping_script
from .state import LinkRuntime, ShapingState

logger = get_logger("engine.actuator")


@dataclass(frozen=True)
class DeployResult:
    changed: bool
    state: ShapingState
    attempts: int = 0

    def to_dict(self) -> dict:
        return {"changed": self.changed, "attempts": self.attempts, "state": self.state.to_dict()}


class GatewayActuator:
    def __init__(
        self,
        registry: WanLinkRegistry,
        channel: RemoteCommandChannel,
        host: str,
        boot_dir: str = "/data/on_boot.d",
        timeout: float = 20.0,
        max_attempts: int = 3,
        backoff_base: float = 2.0,
        backoff_max: float = 30.0,
        clock: Optional[Clock] = None,
    ):
        self._registry = registry
        self._channel = channel
        self._host = host
        self._boot_dir = boot_dir
        self._timeout = timeout
        self._max_attempts = max(1, max_attempts)
        self._backoff_base = backoff_base
        self._backoff_max = backoff_max
        self._clock = clock or SystemClock()

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based): base * 2^(attempt-1), capped."""
        return min(self._backoff_base * (2 ** (attempt - 1)), self._backoff_max)

    async def deploy(
        self,
        link_id: int,
        down_mbps: float,
        up_mbps: float,
        reason: str,
        force: bool = False,
    ) -> DeployResult:
        """Render and push the shaping fragment for one link.

        Raises DeploymentRefused when the link has no rate source yet,
        InvalidShapingParameter for unsafe values, DeploymentRejected when
        the gateway reports a failure and RemoteUnreachable once every
        retry is exhausted.
        """
        runtime = self._registry.get(link_id)
        async with runtime.deploy_lock:
            if not runtime.has_rate_source:
                raise DeploymentRefused(f"link {link_id} has no measurement or baseline yet")

            link = runtime.link
            for direction, rate in ((Direction.DOWNLOAD, down_mbps), (Direction.UPLOAD, up_mbps)):
                if rate is None or not link.floor(direction) <= rate <= link.nominal(direction):
                    raise InvalidShapingParameter(
                        f"{direction.value} rate {rate!r} outside [{link.floor(direction)}, {link.nominal(direction)}]"
                    )

            rendered = render_shaping_script(link, down_mbps, up_mbps, self._boot_dir)
            previous = runtime.shaping
            if not force and previous.last_deployed_content_hash == rendered.content_hash:
                logger.debug("deployment_unchanged", link_id=link_id, content_hash=rendered.content_hash[:12])
                return DeployResult(changed=False, state=previous)

            attempts = await self._push_with_retry(runtime, rendered)

            state = ShapingState(
                applied_down_mbps=down_mbps,
                applied_up_mbps=up_mbps,
                last_applied_at=self._clock.now(),
                last_adjustment_reason=reason,
                last_deployed_content_hash=rendered.content_hash,
                deployed_path=rendered.remote_path,
            )
            await self._registry.save_shaping_state(link_id, state)
            if previous.deployed_path and previous.deployed_path != rendered.remote_path:
                await self._remove_stale(runtime, previous.deployed_path)
            runtime.record_adjustment(state.last_applied_at, down_mbps, up_mbps, reason)
            logger.info(
                "deployment_applied",
                link_id=link_id,
                interface=link.interface,
                down_mbps=down_mbps,
                up_mbps=up_mbps,
                reason=reason,
                attempts=attempts,
            )
            return DeployResult(changed=True, state=state, attempts=attempts)

    async def remove(self, link_id: int) -> Optional[str]:
        """Delete the link's boot script from the gateway.

        Returns the removed path, or None when nothing was ever deployed.
        Raises RemoteUnreachable or DeploymentRejected like ``deploy``.
        """
        runtime = self._registry.get(link_id)
        async with runtime.deploy_lock:
            state = runtime.shaping
            if not state.is_applied:
                return None
            path = state.deployed_path or boot_script_path(self._boot_dir, runtime.link)
            await self._remove_path(path)
            logger.info("boot_script_removed", link_id=link_id, path=path)
            return path

    async def _remove_stale(self, runtime: LinkRuntime, path: str) -> None:
        # The new fragment is live; a leftover old one would also run at boot
        try:
            await self._remove_path(path)
        except (RemoteUnreachable, DeploymentRejected, InvalidShapingParameter) as e:
            logger.error("stale_boot_script_remove_failed", link_id=runtime.link_id, path=path, error=str(e))
            return
        logger.info("stale_boot_script_removed", link_id=runtime.link_id, path=path)

    async def _remove_path(self, path: str) -> None:
        try:
            path = validate_remote_path(path)
        except ValueError as e:
            raise InvalidShapingParameter(str(e)) from e
        result = await self._call(self._channel.execute(self._host, f"rm -f {shlex.quote(path)}", self._timeout))
        if not result.success:
            raise DeploymentRejected(
                f"removing {path} failed", exit_code=result.exit_code, output=result.output
            )

    async def _push_with_retry(self, runtime: LinkRuntime, rendered: RenderedScript) -> int:
        attempt = 0
        while True:
            attempt += 1
            try:
                await self._push(rendered)
                return attempt
            except RemoteUnreachable as e:
                if attempt >= self._max_attempts:
                    logger.warning(
                        "deployment_unreachable",
                        link_id=runtime.link_id,
                        attempts=attempt,
                        error=str(e),
                    )
                    raise
                delay = self.backoff_delay(attempt)
                logger.info("deployment_retry", link_id=runtime.link_id, attempt=attempt, delay=delay, error=str(e))
                await self._clock.sleep(delay)

    async def _push(self, rendered: RenderedScript) -> None:
        upload = await self._call(
            self._channel.upload_content(self._host, rendered.content, rendered.remote_path, self._timeout)
        )
        if not upload.success:
            raise DeploymentRejected(
                f"upload to {rendered.remote_path} failed", exit_code=upload.exit_code, output=upload.output
            )

        result = await self._call(
            self._channel.execute(self._host, f"sh {shlex.quote(rendered.remote_path)}", self._timeout)
        )
        if not result.success:
            raise DeploymentRejected(
                f"shaping script exited with {result.exit_code}", exit_code=result.exit_code, output=result.output
            )

    async def _call(self, coro):
        # The channel enforces its own timeout; this bounds a channel that doesn't.
        try:
            return await asyncio.wait_for(coro, timeout=self._timeout + 5)
        except asyncio.TimeoutError:
            raise RemoteUnreachable(f"remote call exceeded {self._timeout}s")
