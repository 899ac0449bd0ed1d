"""
Delivery Scheduler - periodically runs due subscriptions and delivers results.

Each execution covers the recordTime window [window start, now), where the
window start is the last execution time, else initialRecordTime, else the
subscription's creation time. Consecutive executions therefore never overlap
and never leave a gap.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
import logging
from typing import TYPE_CHECKING

from epcishub.core.clock import Clock, to_iso, utc_now
from epcishub.core.events import SubscriptionDeliveredEvent, SubscriptionFailedEvent
from epcishub.core.exceptions import DeliveryError, EPCISException
from epcishub.subscription.models import Subscription, SubscriptionStatus
from epcishub.subscription.schedule import is_recurring

if TYPE_CHECKING:
    from epcishub.core.events import EventBus
    from epcishub.query.executor import QueryExecutor
    from epcishub.subscription.dispatcher import WebhookDispatcher
    from epcishub.subscription.manager import SubscriptionManager

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_SECONDS = 60.0


def is_due(subscription: Subscription, now: datetime, interval: float = DEFAULT_INTERVAL_SECONDS) -> bool:
    """
    Decide whether a subscription should run on this tick.

    Due when active, not streaming, scheduled with a recurring expression, and
    either never executed or last executed at least ``interval`` seconds ago.
    """
    if subscription.status is not SubscriptionStatus.ACTIVE or subscription.stream:
        return False
    if not subscription.schedule or not is_recurring(subscription.schedule):
        return False
    if subscription.last_executed_at is None:
        return True
    return subscription.last_executed_at <= now - timedelta(seconds=interval)


@dataclass
class TickReport:
    """What one scheduler tick did, by subscription id."""

    now: datetime
    checked: int = 0
    delivered: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    @property
    def executed(self) -> int:
        return len(self.delivered) + len(self.skipped)


class SubscriptionScheduler:
    """
    Polls subscriptions and delivers the results of those that are due.

    ``tick`` never raises: every failure is turned into subscription state.

    Example:
        >>> scheduler = SubscriptionScheduler(manager, executor, dispatcher)
        >>> report = await scheduler.tick()
        >>> report.delivered
        ['7c0e...']
    """

    def __init__(
        self,
        manager: SubscriptionManager,
        executor: QueryExecutor,
        dispatcher: WebhookDispatcher,
        bus: EventBus | None = None,
        interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
        tick_seconds: float = 60.0,
        clock: Clock = utc_now,
    ):
        self.manager = manager
        self.executor = executor
        self.dispatcher = dispatcher
        self.bus = bus
        self.interval_seconds = interval_seconds
        self.tick_seconds = tick_seconds
        self._clock = clock
        self._stopped = asyncio.Event()

    async def tick(self, now: datetime | None = None) -> TickReport:
        now = now or self._clock()
        report = TickReport(now=now)

        try:
            subscriptions = await self.manager.subscriptions.list_subscriptions()
        except Exception:
            logger.exception("Scheduler could not list subscriptions")
            return report

        report.checked = len(subscriptions)
        for subscription in subscriptions:
            if not is_due(subscription, now, self.interval_seconds):
                continue
            try:
                await self._execute(subscription, now, report)
            except Exception as e:
                logger.exception(f"Subscription {subscription.id} execution failed unexpectedly")
                report.failed.append(subscription.id)
                await self._fail(subscription, f"Internal error: {e}")

        if report.checked:
            logger.debug(
                f"Scheduler tick at {to_iso(now)}: {report.checked} checked, "
                f"{len(report.delivered)} delivered, {len(report.skipped)} empty, "
                f"{len(report.failed)} failed"
            )
        return report

    async def _execute(self, subscription: Subscription, now: datetime, report: TickReport) -> None:
        definition = await self.manager.queries.get_query(subscription.query_name)
        if definition is None:
            report.failed.append(subscription.id)
            await self._fail(subscription, f"Query '{subscription.query_name}' no longer exists")
            return

        params = definition.query.merged(
            {
                "GE_recordTime": to_iso(subscription.window_start),
                "LT_recordTime": to_iso(now),
                "perPage": None,
                "nextPageToken": None,
            }
        )
        try:
            events = await self.executor.collect_all(params)
        except EPCISException as e:
            report.failed.append(subscription.id)
            await self._fail(subscription, f"Query execution failed: {e.detail or e.title}")
            return

        if events or subscription.report_if_empty:
            try:
                await self.dispatcher.deliver(subscription, events)
            except DeliveryError as e:
                report.failed.append(subscription.id)
                await self._fail(subscription, str(e))
                return
            report.delivered.append(subscription.id)
            await self._emit(
                SubscriptionDeliveredEvent(
                    correlation_id=subscription.id,
                    subscription_id=subscription.id,
                    query_name=subscription.query_name,
                    event_count=len(events),
                    destination=subscription.destination or "",
                )
            )
        else:
            report.skipped.append(subscription.id)

        await self.manager.mark_executed(subscription, now)

    async def _fail(self, subscription: Subscription, message: str) -> None:
        logger.warning(f"Subscription {subscription.id} failed: {message}")
        try:
            await self.manager.mark_error(subscription, message)
        except Exception:
            logger.exception(f"Could not record error state for subscription {subscription.id}")
        await self._emit(
            SubscriptionFailedEvent(
                correlation_id=subscription.id,
                subscription_id=subscription.id,
                query_name=subscription.query_name,
                error=message,
            )
        )

    async def _emit(self, event: SubscriptionDeliveredEvent | SubscriptionFailedEvent) -> None:
        if self.bus is not None:
            await self.bus.emit(event)

    async def run(self) -> None:
        """Tick every ``tick_seconds`` until ``stop`` is called."""
        self._stopped.clear()
        logger.info(f"Subscription scheduler started (tick every {self.tick_seconds}s)")
        while not self._stopped.is_set():
            await self.tick()
            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=self.tick_seconds)
            except TimeoutError:
                pass
        logger.info("Subscription scheduler stopped")

    def stop(self) -> None:
        self._stopped.set()
