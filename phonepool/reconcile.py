"""Reconciliation loop: poll the status service and drive the hand-off.

Each tick refreshes the registry, rebuilds the display state, and feeds
the snapshot to the hand-off state machine. While a hand-off is awaiting
acknowledgment a second task ticks the countdown once per second. Both
tasks are owned by the loop and cancelled together by ``stop()``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from phonepool.config import HANDOFF_SECONDS, POLL_INTERVAL, REQUEST_EXPIRY
from phonepool.handoff import (
    Acknowledge,
    CountdownTick,
    Effect,
    Event,
    Notify,
    ReleaseDevice,
    SnapshotObserved,
    StopMirroring,
    step,
)
from phonepool.models import Device, PoolError
from phonepool.occupancy import OccupancyController
from phonepool.registry import DeviceRegistry
from phonepool.session import ClientSession
from phonepool.views import DeviceView, build_views

logger = logging.getLogger("phonepool.reconcile")

UpdateCallback = Callable[[list[DeviceView], bool], None]
EffectCallback = Callable[[Effect], None]


def reconcile(
    session: ClientSession,
    devices: list[Device],
    now: datetime,
    handoff_seconds: int = HANDOFF_SECONDS,
    expiry: timedelta = REQUEST_EXPIRY,
) -> tuple[ClientSession, list[DeviceView], list[Effect]]:
    """Derive the next session, the display state and the effects of a snapshot."""
    views = build_views(devices, session.local_identity, now)
    session, effects = step(
        session, SnapshotObserved(devices), now,
        handoff_seconds=handoff_seconds, expiry=expiry,
    )
    return session, views, effects


class ReconciliationLoop:
    """Runs the poll and countdown timers for one client."""

    def __init__(
        self,
        registry: DeviceRegistry,
        occupancy: OccupancyController,
        session: ClientSession,
        interval: float = POLL_INTERVAL,
        handoff_seconds: int = HANDOFF_SECONDS,
        tick_interval: float = 1.0,
        on_update: UpdateCallback | None = None,
        on_effect: EffectCallback | None = None,
    ) -> None:
        self.registry = registry
        self.occupancy = occupancy
        self.interval = interval
        self.handoff_seconds = handoff_seconds
        self.tick_interval = tick_interval
        self.on_update = on_update
        self.on_effect = on_effect
        self.views: list[DeviceView] = []
        self._session = session
        self._reachable: bool | None = None
        self._poll_task: asyncio.Task | None = None
        self._countdown_task: asyncio.Task | None = None

    @property
    def session(self) -> ClientSession:
        return self._session

    @property
    def running(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    async def start(self) -> None:
        if self.running:
            return
        self._poll_task = asyncio.create_task(self._poll_loop())
        logger.info(
            "Reconciliation started for %s (every %.1fs)",
            self._session.local_identity, self.interval,
        )

    async def stop(self) -> None:
        """Cancel the poll and countdown timers together."""
        tasks = [t for t in (self._poll_task, self._countdown_task) if t is not None]
        current = asyncio.current_task()
        for task in tasks:
            if task is not current and not task.done():
                task.cancel()
        for task in tasks:
            if task is current:
                continue
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._poll_task = None
        self._countdown_task = None
        logger.info("Reconciliation stopped")

    async def poll_once(self) -> None:
        """Run one reconciliation tick."""
        devices, reachable = await self.registry.refresh()
        now = datetime.now(timezone.utc)
        self._report_connectivity(reachable)
        if not reachable:
            # A stale snapshot is for display only
            self.views = build_views(devices, self._session.local_identity, now)
            self._publish(reachable)
            return

        was_awaiting = self._session.awaiting_ack
        self._session, self.views, effects = reconcile(
            self._session, devices, now, handoff_seconds=self.handoff_seconds,
        )
        self._publish(reachable)
        self._sync_countdown(was_awaiting)
        await self._apply(effects)

    async def acknowledge(self) -> None:
        """The local user chose to keep the device they were asked to return."""
        await self._dispatch(Acknowledge())

    # ----------------------------------------------------------------
    # Internals
    # ----------------------------------------------------------------

    async def _poll_loop(self) -> None:
        while True:
            try:
                await self.poll_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Reconciliation tick failed")
            await asyncio.sleep(self.interval)

    async def _countdown_loop(self) -> None:
        while self._session.awaiting_ack:
            await asyncio.sleep(self.tick_interval)
            await self._dispatch(CountdownTick())

    async def _dispatch(self, event: Event) -> None:
        was_awaiting = self._session.awaiting_ack
        self._session, effects = step(
            self._session, event, datetime.now(timezone.utc),
            handoff_seconds=self.handoff_seconds,
        )
        self._sync_countdown(was_awaiting)
        await self._apply(effects)

    def _sync_countdown(self, was_awaiting: bool) -> None:
        task = self._countdown_task
        running = task is not None and not task.done()
        if self._session.awaiting_ack:
            if not running:
                self._countdown_task = asyncio.create_task(self._countdown_loop())
        elif was_awaiting and running and task is not asyncio.current_task():
            task.cancel()

    async def _apply(self, effects: list[Effect]) -> None:
        not_returned: set[str] = set()
        for effect in effects:
            if isinstance(effect, ReleaseDevice):
                try:
                    # A release in flight finishes even if the countdown is torn down
                    await asyncio.shield(self.occupancy.release(effect.device_id, effect.holder))
                except PoolError as e:
                    logger.warning("Release of %s (%s) failed: %s", effect.device_id, effect.reason, e)
                    not_returned.add(effect.device_id)
                    self._emit(Notify(
                        kind="error",
                        message=f"Failed to return {effect.device_id}: {e}",
                        device_id=effect.device_id,
                    ))
            elif (
                isinstance(effect, Notify)
                and effect.kind == "auto_returned"
                and effect.device_id in not_returned
            ):
                continue
            elif isinstance(effect, StopMirroring):
                if await self.occupancy.drop_session(effect.device_id):
                    self._emit(Notify(
                        kind="remote_release",
                        message=f"{effect.device_id} was released elsewhere; mirroring stopped",
                        device_id=effect.device_id,
                    ))
            else:
                self._emit(effect)

    def _publish(self, reachable: bool) -> None:
        if self.on_update is None:
            return
        try:
            self.on_update(self.views, reachable)
        except Exception:
            logger.exception("Update listener failed")

    def _emit(self, effect: Effect) -> None:
        if self.on_effect is None:
            return
        try:
            self.on_effect(effect)
        except Exception:
            logger.exception("Effect listener failed for %r", effect)

    def _report_connectivity(self, reachable: bool) -> None:
        previous = self._reachable
        self._reachable = reachable
        if previous == reachable or (previous is None and reachable):
            return
        message = "Status service reachable again" if reachable else "Status service unreachable"
        self._emit(Notify(kind="connectivity", message=message))
