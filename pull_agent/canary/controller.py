"""
Canary rollout controller.

Owns the registry of rollouts. Each active rollout has one analysis task and
one lock; ticks and control calls for the same rollout id are serialized
through that lock, while different rollouts proceed in parallel.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from pull_agent.audit import audit_canary_action
from pull_agent.canary.containers import CanaryContainers
from pull_agent.canary.metrics import MetricsProvider, analyze
from pull_agent.canary.traffic import TrafficRouter
from pull_agent.config.settings import CanaryConfigSettings
from pull_agent.events import EventBus
from pull_agent.exceptions import (
    CanaryAlreadyExistsError,
    CanaryError,
    CanaryNotFoundError,
    InvalidCanaryTransitionError,
)
from pull_agent.logging_config import log_canary_operation
from pull_agent.models.canary import (
    ANALYSIS_STATUSES,
    CanaryAnalysis,
    CanaryConfig,
    CanaryRollout,
)
from pull_agent.notifications.dispatcher import NotificationDispatcher

logger = logging.getLogger(__name__)

PROMOTABLE_STATUSES = frozenset({"progressing", "paused", "promoting"})
ROLLBACK_STATUSES = frozenset({"progressing", "paused", "promoting"})


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class CanaryController:
    """
    Progressive delivery of a canary image next to the stable one.

    Args:
        settings: Analysis interval and sample retention
        traffic: Applies the stable/canary traffic split
        containers: Starts, removes and promotes the canary container
        metrics: Source of MetricSamples
        notifier: Notification dispatcher
        event_bus: Live event stream
        clock: Returns the current time (timezone-aware)
        run_analysis: Start a background analysis task per rollout
    """

    def __init__(
        self,
        settings: CanaryConfigSettings,
        traffic: TrafficRouter,
        containers: CanaryContainers,
        metrics: MetricsProvider,
        notifier: NotificationDispatcher,
        event_bus: Optional[EventBus] = None,
        clock: Callable[[], datetime] = _utc_now,
        run_analysis: bool = True,
    ) -> None:
        self.settings = settings
        self.traffic = traffic
        self.containers = containers
        self.metrics = metrics
        self.notifier = notifier
        self.event_bus = event_bus
        self.clock = clock
        self.run_analysis = run_analysis

        self._rollouts: Dict[str, CanaryRollout] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._tasks: Dict[str, asyncio.Task] = {}

    # -- queries ------------------------------------------------------------

    def get(self, rollout_id: str) -> CanaryRollout:
        """
        Raises:
            CanaryNotFoundError: If no rollout has this id
        """
        rollout = self._rollouts.get(rollout_id)
        if rollout is None:
            raise CanaryNotFoundError(rollout_id)
        return rollout

    def list(self) -> List[CanaryRollout]:
        return list(self._rollouts.values())

    def is_analyzing(self, rollout_id: str) -> bool:
        task = self._tasks.get(rollout_id)
        return task is not None and not task.done()

    def _lock(self, rollout_id: str) -> asyncio.Lock:
        lock = self._locks.get(rollout_id)
        if lock is None:
            lock = self._locks[rollout_id] = asyncio.Lock()
        return lock

    def _is_locked(self, rollout_id: str) -> bool:
        lock = self._locks.get(rollout_id)
        return lock is not None and lock.locked()

    def _evict_finished(self, keep: int, replacing: Optional[str] = None) -> None:
        """Drop the oldest finished rollouts so at most ``keep`` remain."""
        finished = [
            r
            for r in self._rollouts.values()
            if r.is_terminal and r.id != replacing and not self._is_locked(r.id)
        ]
        finished.sort(key=lambda r: r.ended_at or "")
        for rollout in finished[: max(len(finished) - keep, 0)]:
            del self._rollouts[rollout.id]
            self._locks.pop(rollout.id, None)
            logger.debug(f"Evicted finished rollout {rollout.id}")

    # -- lifecycle ----------------------------------------------------------

    async def start(self, config: CanaryConfig, user: Optional[str] = None) -> CanaryRollout:
        """
        Start a rollout: deploy the canary, route initial traffic, begin analysis.

        An operational failure leaves the rollout registered as ``failed``.

        Raises:
            CanaryAlreadyExistsError: If a non-terminal rollout has the same id
        """
        existing = self._rollouts.get(config.deployment_id)
        if existing is not None and not existing.is_terminal:
            raise CanaryAlreadyExistsError(config.deployment_id)
        self._evict_finished(self.settings.max_finished_rollouts, replacing=config.deployment_id)

        rollout = CanaryRollout.from_config(config)
        rollout.started_at = self.clock().isoformat()
        self._rollouts[rollout.id] = rollout

        async with self._lock(rollout.id):
            log_canary_operation(
                "start",
                rollout.id,
                {
                    "canary_image": rollout.canary_image,
                    "stable_image": rollout.stable_image,
                    "initial_percent": config.initial_percent,
                },
            )
            self._publish("start", rollout)
            try:
                await self.containers.deploy_canary(rollout)
                await self.traffic.set_split(rollout.id, config.initial_percent)
            except Exception as e:
                self._mark_failed(rollout, f"Failed to start canary: {e}")
                audit_canary_action("start", rollout.id, {"error": rollout.error}, user, False)
                return rollout

            rollout.current_percent = config.initial_percent
            rollout.status = "progressing"
            audit_canary_action(
                "start", rollout.id, config.model_dump(), user=user, success=True
            )
            self.notifier.send(
                "Canary Deployment Started",
                f"Canary deployment {rollout.id} started with {rollout.current_percent}% traffic",
                severity="info",
            )
            if rollout.current_percent >= rollout.target_percent:
                self._mark_ready(rollout)
            else:
                self._start_analysis(rollout.id)
            self._publish("started", rollout)
        return rollout

    async def progress(self, rollout_id: str, user: Optional[str] = None) -> CanaryRollout:
        """
        Manually move to the next traffic increment.

        Raises:
            CanaryNotFoundError: Unknown rollout
            InvalidCanaryTransitionError: Rollout is not progressing
            CanaryError: Traffic split could not be applied
        """
        rollout = self.get(rollout_id)
        async with self._lock(rollout_id):
            if rollout.status != "progressing":
                raise InvalidCanaryTransitionError(rollout_id, rollout.status, "progress")
            await self._progress(rollout)
            audit_canary_action("progress", rollout_id, {"percent": rollout.current_percent}, user)
        return rollout

    async def pause(self, rollout_id: str, user: Optional[str] = None) -> CanaryRollout:
        """Stop acting on analysis; samples are still collected."""
        rollout = self.get(rollout_id)
        async with self._lock(rollout_id):
            if rollout.status != "progressing":
                raise InvalidCanaryTransitionError(rollout_id, rollout.status, "pause")
            rollout.status = "paused"
            log_canary_operation("pause", rollout_id, {"percent": rollout.current_percent})
            audit_canary_action("pause", rollout_id, user=user)
            self._publish("paused", rollout)
        return rollout

    async def resume(self, rollout_id: str, user: Optional[str] = None) -> CanaryRollout:
        rollout = self.get(rollout_id)
        async with self._lock(rollout_id):
            if rollout.status != "paused":
                raise InvalidCanaryTransitionError(rollout_id, rollout.status, "resume")
            rollout.status = "progressing"
            log_canary_operation("resume", rollout_id, {"percent": rollout.current_percent})
            audit_canary_action("resume", rollout_id, user=user)
            self._publish("resumed", rollout)
            if not self.is_analyzing(rollout_id):
                self._start_analysis(rollout_id)
        return rollout

    async def promote(self, rollout_id: str, user: Optional[str] = None) -> CanaryRollout:
        """
        Make the canary image the stable one and retire the canary.

        Raises:
            CanaryNotFoundError: Unknown rollout
            InvalidCanaryTransitionError: Rollout is not progressing, paused or promoting
        """
        rollout = self.get(rollout_id)
        async with self._lock(rollout_id):
            if rollout.status not in PROMOTABLE_STATUSES:
                raise InvalidCanaryTransitionError(rollout_id, rollout.status, "promote")
            self._stop_analysis(rollout_id)
            log_canary_operation("promote", rollout_id, {"image": rollout.canary_image})
            rollout.status = "promoting"
            try:
                await self.containers.promote(rollout)
                await self.traffic.set_split(rollout_id, 0)
                await self.containers.remove_canary(rollout)
            except Exception as e:
                self._mark_failed(rollout, f"Promotion failed: {e}")
                audit_canary_action("promote", rollout_id, {"error": rollout.error}, user, False)
                return rollout

            rollout.current_percent = 0
            rollout.status = "promoted"
            rollout.mark_ended()
            audit_canary_action("promote", rollout_id, user=user, success=True)
            self._publish("promoted", rollout)
            self.notifier.send(
                "Canary Promoted",
                f"Canary deployment {rollout_id} has been promoted to stable",
                severity="success",
            )
        return rollout

    async def rollback(
        self, rollout_id: str, reason: str = "Manual rollback", user: Optional[str] = None
    ) -> CanaryRollout:
        """
        Route all traffic back to stable and remove the canary.

        Rolling back a rollout that is already rolling back or rolled back is a
        no-op.

        Raises:
            CanaryNotFoundError: Unknown rollout
            InvalidCanaryTransitionError: Rollout was promoted or failed
        """
        rollout = self.get(rollout_id)
        async with self._lock(rollout_id):
            if rollout.status in ("rolling_back", "rolled_back"):
                logger.info(f"Canary {rollout_id} already {rollout.status}, ignoring rollback")
                return rollout
            if rollout.status not in ROLLBACK_STATUSES:
                raise InvalidCanaryTransitionError(rollout_id, rollout.status, "roll back")
            await self._rollback(rollout, reason, user)
        return rollout

    async def tick(self, rollout_id: str) -> Optional[CanaryAnalysis]:
        """
        Run one analysis cycle.

        Returns:
            The analysis, or None when the rollout is not being analyzed or
            metrics could not be collected
        """
        rollout = self._rollouts.get(rollout_id)
        if rollout is None:
            return None
        async with self._lock(rollout_id):
            if rollout.status not in ANALYSIS_STATUSES:
                return None

            try:
                sample = await self.metrics.collect(rollout)
            except Exception as e:
                logger.error(f"Canary {rollout_id}: metrics collection failed: {e}")
                return None
            rollout.record_sample(sample, self.settings.max_metric_samples)

            analysis = analyze(rollout, sample, self.clock())
            self._publish(
                "analysis",
                rollout,
                {
                    "analysis": analysis.model_dump(),
                    "error_rate": sample.canary.error_rate,
                    "avg_latency_ms": sample.canary.avg_latency_ms,
                },
            )

            if rollout.status == "paused":
                return analysis

            if analysis.should_rollback and rollout.auto_rollback_enabled:
                logger.warning(f"Canary {rollout_id}: {analysis.reason}")
                await self._rollback(rollout, analysis.reason, user="controller")
            elif analysis.should_rollback:
                logger.warning(
                    f"Canary {rollout_id}: {analysis.reason} (auto rollback disabled)"
                )
            elif analysis.should_progress:
                try:
                    await self._progress(rollout)
                except CanaryError as e:
                    logger.error(f"Canary {rollout_id}: failed to progress: {e}")
            return analysis

    async def stop(self) -> None:
        """Cancel every analysis task (service shutdown)."""
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self.metrics.close()

    # -- internals (caller holds the rollout lock) ---------------------------

    async def _progress(self, rollout: CanaryRollout) -> None:
        new_percent = min(
            rollout.current_percent + rollout.increment_percent, rollout.target_percent
        )
        log_canary_operation(
            "progress", rollout.id, {"from": rollout.current_percent, "to": new_percent}
        )
        await self.traffic.set_split(rollout.id, new_percent)
        rollout.current_percent = new_percent
        rollout.last_progress_at = self.clock().isoformat()
        self._publish("progress", rollout)

        if rollout.current_percent >= rollout.target_percent:
            self._mark_ready(rollout)

    def _mark_ready(self, rollout: CanaryRollout) -> None:
        rollout.status = "promoting"
        self._stop_analysis(rollout.id)
        log_canary_operation(
            "ready_for_promotion", rollout.id, {"percent": rollout.current_percent}
        )
        self.notifier.send(
            "Canary Ready for Promotion",
            f"Canary deployment {rollout.id} has reached {rollout.current_percent}% traffic "
            f"and is ready for promotion",
            severity="success",
        )

    async def _rollback(self, rollout: CanaryRollout, reason: str, user: Optional[str]) -> None:
        rollout.status = "rolling_back"
        rollout.rollback_reason = reason
        self._stop_analysis(rollout.id)
        log_canary_operation("rollback", rollout.id, {"reason": reason}, level="WARNING")
        self._publish("rolling_back", rollout)

        try:
            await self.traffic.set_split(rollout.id, 0)
            rollout.current_percent = 0
            await self.containers.remove_canary(rollout)
        except Exception as e:
            self._mark_failed(rollout, f"Rollback failed: {e}")
            audit_canary_action(
                "rollback", rollout.id, {"reason": reason, "error": str(e)}, user, False
            )
            return

        rollout.status = "rolled_back"
        rollout.mark_ended()
        audit_canary_action("rollback", rollout.id, {"reason": reason}, user=user, success=True)
        self._publish("rolled_back", rollout)
        self.notifier.send(
            "Canary Rolled Back",
            f"Canary deployment {rollout.id} was rolled back: {reason}",
            severity="warning",
        )

    def _mark_failed(self, rollout: CanaryRollout, error: str) -> None:
        self._stop_analysis(rollout.id)
        rollout.status = "failed"
        rollout.error = error
        rollout.mark_ended()
        log_canary_operation("failed", rollout.id, {"error": error}, level="ERROR")
        self._publish("failed", rollout)
        self.notifier.send(
            "Canary Deployment Failed", f"Canary deployment {rollout.id}: {error}", severity="error"
        )

    def _start_analysis(self, rollout_id: str) -> None:
        if not self.run_analysis:
            return
        task = asyncio.create_task(self._analysis_loop(rollout_id))
        self._tasks[rollout_id] = task
        task.add_done_callback(lambda t: self._forget_task(rollout_id, t))

    def _forget_task(self, rollout_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(rollout_id) is task:
            del self._tasks[rollout_id]

    def _stop_analysis(self, rollout_id: str) -> None:
        task = self._tasks.pop(rollout_id, None)
        # The loop notices the status change itself when it is the caller
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _analysis_loop(self, rollout_id: str) -> None:
        interval = self.settings.analysis_interval_seconds
        logger.info(f"Canary {rollout_id}: analysis every {interval:g}s")
        while True:
            rollout = self._rollouts.get(rollout_id)
            if rollout is None or rollout.status not in ANALYSIS_STATUSES:
                return
            try:
                await self.tick(rollout_id)
            except Exception as e:
                logger.error(f"Canary {rollout_id}: analysis error: {e}", exc_info=True)
            rollout = self._rollouts.get(rollout_id)
            if rollout is None or rollout.status not in ANALYSIS_STATUSES:
                return
            await asyncio.sleep(interval)

    def _publish(self, action: str, rollout: CanaryRollout, extra: Optional[dict] = None) -> None:
        if self.event_bus is None:
            return
        data = {"action": action, "rollout": rollout.summary()}
        if extra:
            data.update(extra)
        self.event_bus.publish("canary", data)
