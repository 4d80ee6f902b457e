import asyncio
from typing import Dict, Set

from loguru import logger

from core.infrastructure.logging.context import LoggingContext

from ..domain.entities import DispatchSummary
from ..domain.exceptions import SchedulerTenantFailure
from .dispatcher import NotificationDispatcher
from .ports import TenantRegistry

NORMAL_CADENCE = "normal"
URGENT_CADENCE = "urgent"


class NotificationScheduler:
    """Background driver for notification processing passes.

    Runs two independent timers: a normal cadence that processes everything
    due and an urgent cadence restricted to high-priority notifications. On
    every tick each tenant reported by the tenant registry gets one pass;
    tenants are processed concurrently and a failing tenant never affects
    the others.

    Parameters
    ----------
    dispatcher : NotificationDispatcher
        Dispatcher running the per-tenant passes.
    tenant_registry : TenantRegistry
        Source of the tenant ids to process on each tick.
    interval_seconds : float
        Normal cadence.
    urgent_interval_seconds : float
        Urgent cadence.
    batch_size : int
        Pass limit on the normal cadence.
    urgent_batch_size : int
        Pass limit on the urgent cadence.
    """

    def __init__(
        self,
        dispatcher: NotificationDispatcher,
        tenant_registry: TenantRegistry,
        interval_seconds: float = 30.0,
        urgent_interval_seconds: float = 5.0,
        batch_size: int = 100,
        urgent_batch_size: int = 50,
    ) -> None:
        self.dispatcher = dispatcher
        self.tenant_registry = tenant_registry
        self.interval_seconds = interval_seconds
        self.urgent_interval_seconds = urgent_interval_seconds
        self.batch_size = batch_size
        self.urgent_batch_size = urgent_batch_size

        self._timers: Dict[str, asyncio.Task] = {}
        self._in_flight: Set[asyncio.Task] = set()
        self._active_ticks: Set[str] = set()

    @property
    def is_running(self) -> bool:
        return bool(self._timers)

    async def start(self) -> None:
        """Start both timers. Calling it on a running scheduler does nothing."""
        if self.is_running:
            logger.debug("Notification scheduler already running")
            return

        self._timers = {
            NORMAL_CADENCE: asyncio.create_task(
                self._run_timer(NORMAL_CADENCE, self.interval_seconds, False),
                name="notification-scheduler-normal",
            ),
            URGENT_CADENCE: asyncio.create_task(
                self._run_timer(URGENT_CADENCE, self.urgent_interval_seconds, True),
                name="notification-scheduler-urgent",
            ),
        }
        logger.info(
            f"🟢 Notification scheduler started "
            f"(normal every {self.interval_seconds}s, urgent every {self.urgent_interval_seconds}s) 🟢"
        )

    async def stop(self) -> None:
        """Cancel both timers. Passes already running are left to finish."""
        if not self.is_running:
            return

        timers, self._timers = list(self._timers.values()), {}
        for timer in timers:
            timer.cancel()
        logger.info("🔴 Notification scheduler stopped 🔴")

    async def run_tick(
        self, urgent_only: bool = False
    ) -> Dict[str, DispatchSummary | SchedulerTenantFailure]:
        """Run one pass for every known tenant concurrently.

        Returns
        -------
        Dict[str, DispatchSummary | SchedulerTenantFailure]
            Per-tenant outcome, keyed by tenant id.
        """
        cadence = URGENT_CADENCE if urgent_only else NORMAL_CADENCE
        self._active_ticks.add(cadence)
        try:
            try:
                tenant_ids = await self.tenant_registry.list_tenant_ids()
            except Exception as e:
                logger.error(f"Failed to list tenants for {cadence} tick: {e}")
                return {}

            outcomes = await asyncio.gather(
                *(
                    self._run_tenant_pass(tenant_id, urgent_only)
                    for tenant_id in tenant_ids
                )
            )
            return dict(zip(tenant_ids, outcomes))
        finally:
            self._active_ticks.discard(cadence)

    async def _run_timer(
        self, cadence: str, interval_seconds: float, urgent_only: bool
    ) -> None:
        while True:
            await asyncio.sleep(interval_seconds)

            if cadence in self._active_ticks:
                logger.debug(f"Skipping {cadence} tick, previous tick still running")
                continue

            tick = asyncio.create_task(self.run_tick(urgent_only=urgent_only))
            self._in_flight.add(tick)
            tick.add_done_callback(self._in_flight.discard)

    async def _run_tenant_pass(
        self, tenant_id: str, urgent_only: bool
    ) -> DispatchSummary | SchedulerTenantFailure:
        cadence = URGENT_CADENCE if urgent_only else NORMAL_CADENCE
        async with LoggingContext(tenant_id=tenant_id, cadence=cadence):
            try:
                return await self.dispatcher.process_tenant(
                    tenant_id,
                    limit=self.urgent_batch_size if urgent_only else self.batch_size,
                    urgent_only=urgent_only,
                )
            except Exception as e:
                failure = SchedulerTenantFailure(tenant_id, e)
                logger.opt(exception=e).error(str(failure))
                return failure
