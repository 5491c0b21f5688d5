"""Builds the watcher's components and runs them as one unit."""

from __future__ import annotations

import asyncio

import httpx
import structlog

from .config import WatcherConfig
from .ingress.limiter import IngressLimiter
from .models import ErrorClass
from .notifications import BroadcastChannel, EmailChannel, Notifier
from .poller import Poller, Supervisor
from .scheduler import JobScheduler
from .state import StateStore, StateStoreError, StatusBoard
from .subscriptions import SubscriptionService


logger = structlog.get_logger(__name__)


class WatchCoordinator:
    """Owns the poller, notifier, subscription service and housekeeping jobs."""

    def __init__(self, config: WatcherConfig, client: httpx.AsyncClient | None = None):
        self.config = config
        self._client = client or httpx.AsyncClient(headers={"User-Agent": "etag-watch"})
        self._owns_client = client is None

        self.store = StateStore(config.state.path)
        self.board = StatusBoard()
        self.limiter = IngressLimiter(config.limits)
        self.subscriptions = SubscriptionService(
            self.board, self.limiter, config.limits, config.subscriptions
        )
        self.notifier = Notifier(
            [
                EmailChannel(config.email),
                BroadcastChannel(self.subscriptions),
            ]
        )
        self.poller = Poller(
            url=config.probe.url,
            client=self._client,
            store=self.store,
            board=self.board,
            emit=self.notifier.notify,
            timeout_seconds=config.probe.timeout_seconds,
            follow_redirects=config.probe.follow_redirects,
            suppress_first_notification=config.probe.suppress_first_notification,
        )
        self.supervisor = Supervisor(
            self.poller,
            self.board,
            self.notifier.notify,
            interval_seconds=config.probe.interval_seconds,
            restart_backoff_seconds=config.probe.restart_backoff_seconds,
        )
        self.scheduler: JobScheduler | None = None

    async def _seed_status(self) -> None:
        try:
            stored = await asyncio.to_thread(self.store.load)
        except StateStoreError as e:
            # The first cycle hits the same error and reports it as internal.
            logger.warning("Could not read stored state at startup", error=str(e))
            return
        if stored is not None:
            await self.board.finish_cycle(
                token=stored.token, observed_at=stored.observed_at, error_class=ErrorClass.NONE
            )
            logger.info("Loaded stored state", token=stored.token, observed_at=stored.observed_at)

    async def start(self) -> None:
        await self._seed_status()

        self.scheduler = JobScheduler()
        self.scheduler.add_interval_job(
            job_id="subscriber_heartbeat",
            func=self.subscriptions.heartbeat,
            seconds=self.config.subscriptions.heartbeat_interval_seconds,
            description="Ping subscribers and drop the unresponsive ones",
        )
        self.scheduler.add_interval_job(
            job_id="ingress_sweep",
            func=self.limiter.sweep,
            seconds=self.config.limits.sweep_interval_seconds,
            description="Evict expired ingress windows",
        )
        await self.scheduler.start()

        self.notifier.start()
        self.supervisor.start()
        logger.info("Watcher started", url=self.config.probe.url)

    async def stop(self, grace_seconds: float | None = None) -> None:
        """Stop in reverse start order, each step bounded by the grace period."""
        grace = self.config.server.shutdown_grace_seconds if grace_seconds is None else grace_seconds
        self.subscriptions.stop_accepting()

        if self.scheduler is not None:
            await self.scheduler.stop()
        await self.supervisor.stop(timeout=grace)
        await self.notifier.stop(timeout=grace)
        await self.subscriptions.shutdown(grace_seconds=grace)

        if self._owns_client:
            await self._client.aclose()
        logger.info("Watcher stopped")
