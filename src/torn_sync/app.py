"""
Application entry point for the Torn sync agent.

This module configures logging, builds every shared component once, runs the
background jobs and serves the health and status probe.
"""

import asyncio
import logging
import signal
import sys
from datetime import timedelta
from typing import Any

import structlog
from aiohttp import web

from .clock import Clock, SystemClock
from .config import Settings, get_settings
from .credentials import CredentialVault
from .jobs import ActivityStatusJob, ChainWatchJob, MarketPriceJob, build_policies
from .models import JobDescriptor
from .notifier import DiscordNotifier
from .polling.cache import AdaptiveCache
from .polling.metrics import ApiCallTracker, JobMetrics
from .polling.notifications import DEFAULT_ALERT_POLICIES, AlertClassPolicy, NotificationGate
from .polling.orchestrator import JobScheduler, PollingJob, SyncContext
from .polling.rate_limiter import RateLimiter
from .polling.retry import RetryExecutor
from .polling.rotation import CredentialRotator
from .state.manager import (
    InMemoryJobRegistry,
    InMemorySnapshotStore,
    InMemorySubscriptionStore,
    JobRegistry,
    SnapshotStore,
    SubscriptionStore,
)
from .torn_client import TornClient

logger = structlog.get_logger(__name__)


def setup_logging(settings: Settings) -> None:
    """Configure structured logging."""
    logging.basicConfig(
        level=getattr(logging, settings.log_level), format="%(message)s"
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            (
                structlog.processors.JSONRenderer()
                if settings.log_format == "json"
                else structlog.dev.ConsoleRenderer()
            ),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def build_alert_policies(settings: Settings) -> dict[str, AlertClassPolicy]:
    """Alert class policies with configured cooldowns applied."""
    policies = dict(DEFAULT_ALERT_POLICIES)
    for alert_class, cooldown in settings.notification_config.cooldowns.items():
        base = policies.get(alert_class, AlertClassPolicy())
        policies[alert_class] = AlertClassPolicy(
            cooldown=cooldown,
            value_change_bypasses_cooldown=base.value_change_bypasses_cooldown,
            inactivity_horizon=base.inactivity_horizon,
        )
    return policies


class SyncApp:
    """Main application class."""

    def __init__(
        self,
        settings: Settings | None = None,
        clock: Clock | None = None,
        snapshots: SnapshotStore | None = None,
        registry: JobRegistry | None = None,
        subscriptions: SubscriptionStore | None = None,
    ) -> None:
        """
        Initialize the application.

        Storage collaborators default to in-memory implementations.
        """
        self.settings = settings
        self.clock: Clock = clock or SystemClock()
        self.snapshots = snapshots
        self.registry = registry
        self.subscriptions = subscriptions
        self.context: SyncContext | None = None
        self.jobs: list[PollingJob[Any, Any, Any]] = []
        self.scheduler: JobScheduler | None = None
        self._shutdown_event = asyncio.Event()
        self._web_runner: web.AppRunner | None = None
        self._stopped = False

    async def initialize(self) -> None:
        """Build every shared component once."""
        if self.settings is None:
            self.settings = get_settings()
        settings = self.settings
        logger.info("Initializing Torn sync agent")

        rate_config = settings.rate_limit_config
        retry_config = settings.retry_config
        limiter = RateLimiter(
            capacity=rate_config.capacity,
            window_seconds=rate_config.window_seconds,
            clock=self.clock,
            min_spacing_seconds=rate_config.min_spacing_seconds,
            max_pending=rate_config.max_pending,
        )
        executor = RetryExecutor(
            limiter,
            self.clock,
            max_retries=retry_config.max_retries,
            base_delay=retry_config.base_delay_seconds,
            call_timeout=retry_config.call_timeout_seconds,
        )

        snapshots = self.snapshots or InMemorySnapshotStore()
        registry = self.registry or InMemoryJobRegistry(
            [JobDescriptor(name=name, enabled=False) for name in settings.job_config.disabled_jobs]
        )
        api_calls = ApiCallTracker(self.clock)

        self.context = SyncContext(
            settings=settings,
            clock=self.clock,
            limiter=limiter,
            executor=executor,
            cache=AdaptiveCache(snapshots, build_policies(settings.cache_config), self.clock),
            gate=NotificationGate(
                self.clock,
                build_alert_policies(settings),
                sweep_interval_seconds=settings.notification_config.sweep_interval_seconds,
            ),
            rotator=CredentialRotator(),
            client=TornClient(
                settings.torn_api_url,
                tracker=api_calls,
                timeout_seconds=retry_config.call_timeout_seconds,
            ),
            notifier=DiscordNotifier(settings.discord_config),
            vault=CredentialVault(settings.encryption_secret),
            snapshots=snapshots,
            registry=registry,
            subscriptions=self.subscriptions or InMemorySubscriptionStore(),
            api_calls=api_calls,
            job_metrics=JobMetrics(),
        )

        if not self.context.vault.configured:
            logger.warning("ENCRYPTION_SECRET is not set, stored API keys cannot be used")

        self.jobs = [
            ChainWatchJob(self.context),
            MarketPriceJob(self.context),
            ActivityStatusJob(self.context),
        ]
        self.scheduler = JobScheduler(self.jobs, self.clock)
        logger.info(
            "Initialization complete",
            jobs=[job.name for job in self.jobs],
            rate_limit_per_window=rate_config.capacity,
            min_spacing_seconds=rate_config.min_spacing_seconds,
        )

    async def start(self) -> None:
        """Start the health server and, when enabled, the background jobs."""
        if not self.context or not self.scheduler or not self.settings:
            raise RuntimeError("Application not initialized")

        await self._start_web_server()

        if not self.settings.job_config.enabled:
            logger.info("Background jobs disabled, serving health checks only")
            return

        await self.context.gate.start()
        await self.scheduler.start()
        logger.info("Background jobs started")

    async def stop(self) -> None:
        """Stop jobs, the sweeper, HTTP clients and the health server."""
        if self._stopped:
            return
        self._stopped = True
        logger.info("Stopping Torn sync agent")

        if self.scheduler:
            try:
                await self.scheduler.stop()
            except Exception as e:
                logger.error("Error stopping job scheduler", error=str(e))

        if self.context:
            await self.context.gate.stop()
            await self.context.client.close()
            await self.context.notifier.close()

        await self._stop_web_server()
        self._shutdown_event.set()
        logger.info("Torn sync agent stopped")

    def setup_signal_handlers(self) -> None:
        """Set up signal handlers for graceful shutdown."""
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(signum, self.request_shutdown, signum)

    def request_shutdown(self, signum: int | None = None) -> None:
        logger.info("Shutdown requested", signal=signum)
        self._shutdown_event.set()

    async def wait_for_shutdown(self) -> None:
        await self._shutdown_event.wait()

    async def health_check(self) -> dict[str, Any]:
        """
        Perform health check of all components.

        Returns:
            Health check results
        """
        health_data: dict[str, Any] = {"status": "healthy", "components": {}}
        if not self.context:
            health_data["status"] = "unhealthy"
            health_data["components"]["context"] = "not_initialized"
            return health_data

        try:
            store_ok = await self.context.snapshots.health_check()
        except Exception as e:
            store_ok = False
            health_data["error"] = str(e)
        health_data["components"]["snapshot_store"] = "healthy" if store_ok else "unhealthy"
        if not store_ok:
            health_data["status"] = "unhealthy"

        health_data["components"]["scheduler"] = (
            "running" if self.scheduler and self.scheduler.is_running() else "stopped"
        )
        return health_data

    def status(self) -> dict[str, Any]:
        """Limiter state, API usage, cache and gate statistics and job metrics."""
        if not self.context:
            return {"status": "not_initialized"}
        return {
            "rate_limiter": self.context.limiter.get_stats(),
            "api_calls": {
                "last_minute": self.context.api_calls.stats(),
                "last_hour": self.context.api_calls.stats(timedelta(hours=1)),
            },
            "cache": self.context.cache.get_stats(),
            "notifications": self.context.gate.get_stats(),
            "jobs": self.context.job_metrics.get_summary(),
        }

    def create_web_app(self) -> web.Application:
        """Create the web application for health checks."""
        app = web.Application()

        async def health_handler(request: web.Request) -> web.Response:
            try:
                health_data = await self.health_check()
                status_code = 200 if health_data["status"] == "healthy" else 503
                return web.json_response(health_data, status=status_code)
            except Exception as e:
                logger.error("Health check failed", error=str(e))
                return web.json_response({"status": "unhealthy", "error": str(e)}, status=503)

        async def status_handler(request: web.Request) -> web.Response:
            return web.json_response(self.status())

        app.router.add_get("/health", health_handler)
        app.router.add_get("/status", status_handler)
        return app

    async def _start_web_server(self) -> None:
        """Start the web server for health checks."""
        if not self.settings:
            raise RuntimeError("Settings not initialized")

        server = self.settings.server_config
        self._web_runner = web.AppRunner(self.create_web_app())
        await self._web_runner.setup()
        site = web.TCPSite(self._web_runner, server.host, server.port)
        await site.start()
        logger.info("Health check server started", host=server.host, port=server.port)

    async def _stop_web_server(self) -> None:
        if self._web_runner:
            await self._web_runner.cleanup()
            self._web_runner = None
            logger.info("Health check server stopped")


async def run() -> None:
    """Run the application until a shutdown signal arrives."""
    settings = get_settings()
    setup_logging(settings)
    app = SyncApp(settings)

    try:
        await app.initialize()
        app.setup_signal_handlers()
        await app.start()
        await app.wait_for_shutdown()
    except Exception as e:
        logger.error("Application failed", error=str(e))
        raise
    finally:
        await app.stop()
        logger.info("Application shutdown complete")


def main() -> None:
    """Console entry point."""
    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        pass
    except Exception:
        sys.exit(1)
