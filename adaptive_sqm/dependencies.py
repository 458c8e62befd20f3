"""FastAPI dependency injection providers.

Every component is a lazily created module-level singleton so routes work
with or without the application lifespan having run.
"""

from sqlalchemy.ext.asyncio import AsyncSession
from fastapi import Depends

from .config import SqmConfig, get_config
from .database import get_session, get_session_factory
from .utils.logging import get_logger

_dep_logger = get_logger("dependencies")

_config_instance: SqmConfig | None = None
_clock = None
_scheduler = None
_registry = None
_baseline_store = None
_alert_manager = None
_remote_channel = None
_actuator = None
_controller = None
_sampler = None
_latency_monitor = None


def get_app_config() -> SqmConfig:
    """Get the application config singleton."""
    global _config_instance
    if _config_instance is None:
        _config_instance = get_config()
    return _config_instance


async def get_db(config: SqmConfig = Depends(get_app_config)) -> AsyncSession:
    """Get an async database session."""
    async for session in get_session(config):
        yield session


def get_clock():
    global _clock
    if _clock is None:
        from .core.clock import SystemClock
        _clock = SystemClock()
    return _clock


def get_scheduler():
    global _scheduler
    if _scheduler is None:
        from .core.scheduler import Scheduler
        _scheduler = Scheduler(clock=get_clock())
    return _scheduler


def get_registry():
    """Get the WAN link registry singleton."""
    global _registry
    if _registry is None:
        from .engine.registry import WanLinkRegistry
        config = get_app_config()
        _registry = WanLinkRegistry(config=config, db_session_factory=get_session_factory(config))
    return _registry


def get_baseline_store():
    global _baseline_store
    if _baseline_store is None:
        from .engine.baseline_store import BaselineStore
        config = get_app_config()
        _baseline_store = BaselineStore(
            min_bucket_samples=config.min_bucket_samples,
            single_sample_cv=config.single_sample_cv,
            tz=config.baseline_timezone,
            db_session_factory=get_session_factory(config),
        )
    return _baseline_store


def get_alert_manager():
    """Get the alert manager singleton."""
    global _alert_manager
    if _alert_manager is None:
        from .alerting.manager import AlertManager
        config = get_app_config()
        _alert_manager = AlertManager(
            webhook_url=config.alert_webhook_url,
            db_session_factory=get_session_factory(config),
            dedup_ttl=config.alert_dedup_seconds,
        )
    return _alert_manager


def get_remote_channel():
    """Get the gateway command channel (SSH)."""
    global _remote_channel
    if _remote_channel is None:
        from .transport.remote import SshCommandChannel
        config = get_app_config()
        _remote_channel = SshCommandChannel(
            username=config.gateway_ssh_user,
            port=config.gateway_ssh_port,
            key_path=config.gateway_ssh_key_path,
            connect_timeout=int(min(config.remote_timeout_seconds, 10)),
        )
    return _remote_channel


def get_actuator():
    global _actuator
    if _actuator is None:
        from .engine.actuator import GatewayActuator
        config = get_app_config()
        _actuator = GatewayActuator(
            registry=get_registry(),
            channel=get_remote_channel(),
            host=config.gateway_host,
            boot_dir=config.boot_script_dir,
            timeout=config.remote_timeout_seconds,
            max_attempts=config.deploy_max_attempts,
            backoff_base=config.deploy_backoff_base_seconds,
            backoff_max=config.deploy_backoff_max_seconds,
            clock=get_clock(),
        )
    return _actuator


def get_controller():
    """Get the adaptive SQM controller singleton."""
    global _controller
    if _controller is None:
        from .engine.blending import BlendingEngine
        from .engine.controller import AdaptiveSqmController
        from .engine.decision import DecisionEngine
        config = get_app_config()
        _controller = AdaptiveSqmController(
            registry=get_registry(),
            baseline_store=get_baseline_store(),
            blending=BlendingEngine(
                get_baseline_store(),
                stable_baseline_weight=config.stable_baseline_weight,
                volatile_baseline_weight=config.volatile_baseline_weight,
            ),
            decision=DecisionEngine(hysteresis_min_delta=config.hysteresis_min_delta),
            actuator=get_actuator(),
            alert_manager=get_alert_manager(),
            config=config,
            clock=get_clock(),
        )
        get_registry().add_teardown_hook(_controller.teardown_link)
    return _controller


def get_sampler():
    """Get the Sampler module singleton."""
    global _sampler
    if _sampler is None:
        from .measurement.providers import GatewaySpeedTestProvider
        from .modules.sampler import Sampler
        config = get_app_config()
        provider = GatewaySpeedTestProvider(
            get_remote_channel(),
            host=config.gateway_host,
            timeout=config.measurement_timeout_seconds,
            command=config.speedtest_command,
        )
        _sampler = Sampler(
            controller=get_controller(),
            provider=provider,
            registry=get_registry(),
            scheduler=get_scheduler(),
            config={
                "learning_days": config.learning_days,
                "dense_interval_minutes": config.dense_interval_minutes,
                "measurement_timeout_seconds": config.measurement_timeout_seconds,
                "manual_test_debounce_seconds": config.manual_test_debounce_seconds,
                "timezone": config.baseline_timezone,
            },
            db_session_factory=get_session_factory(config),
        )
        _controller.set_modules(sampler=_sampler)
    return _sampler


def get_latency_monitor():
    """Get the Latency Monitor module singleton."""
    global _latency_monitor
    if _latency_monitor is None:
        from .measurement.providers import GatewayPingProvider
        from .modules.latency_monitor import LatencyMonitor
        config = get_app_config()
        provider = GatewayPingProvider(
            get_remote_channel(),
            host=config.gateway_host,
            count=config.ping_count,
            timeout=config.remote_timeout_seconds,
        )
        _latency_monitor = LatencyMonitor(
            controller=get_controller(),
            provider=provider,
            registry=get_registry(),
            scheduler=get_scheduler(),
            config={
                "ping_interval_seconds": config.ping_interval_seconds,
                "ping_timeout_seconds": config.remote_timeout_seconds + 5,
            },
            db_session_factory=get_session_factory(config),
        )
        _controller.set_modules(latency_monitor=_latency_monitor)
    return _latency_monitor
