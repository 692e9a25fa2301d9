"""Periodic driver for namespace rotation, reclamation and queue supervision."""

from __future__ import annotations

import functools
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import anyio

from .alerter import Alerter
from .config import MonitorConfig
from .database import Database, PermissionConflict
from .models import Namespace
from .monitor import QueueClassification, QueueMonitor, QueueVerdict
from .namespaces import NamespaceManager
from .rabbit import RabbitError

logger = logging.getLogger("pulse.scheduler")

DEFAULT_MAX_OVERLAPPING_TICKS = 2


class RepeatedTickFailure(RuntimeError):
    """Raised once too many consecutive ticks have failed."""

    def __init__(self, failures: int) -> None:
        super().__init__(
            f"Rotation halted after {failures} consecutive failed ticks; operator intervention required"
        )
        self.failures = failures


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class TickReport:
    """Outcome of a single scheduler tick."""

    started_at: datetime
    finished_at: Optional[datetime] = None
    operations: int = 0
    rotated: List[str] = field(default_factory=list)
    reclaimed: List[str] = field(default_factory=list)
    conflicts: List[str] = field(default_factory=list)
    orphans_removed: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    alerted: List[str] = field(default_factory=list)
    failures: Dict[str, str] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)

    @property
    def failed(self) -> bool:
        if self.errors:
            return True
        return len(self.failures) * 2 > self.operations

    def to_dict(self) -> Dict[str, object]:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "operations": self.operations,
            "rotated": list(self.rotated),
            "reclaimed": list(self.reclaimed),
            "conflicts": list(self.conflicts),
            "orphans_removed": list(self.orphans_removed),
            "deleted": list(self.deleted),
            "alerted": list(self.alerted),
            "failures": dict(self.failures),
            "errors": list(self.errors),
            "failed": self.failed,
        }


class RotationScheduler:
    """Cooperative ticker that fans per-namespace work out to worker threads.

    Two ticks may overlap when the broker is slow. No in-process lock guards a
    namespace: the store's rotation version check is the only exclusion.
    """

    def __init__(
        self,
        manager: NamespaceManager,
        monitor: QueueMonitor,
        alerter: Alerter,
        database: Database,
        config: MonitorConfig,
        *,
        clock: Callable[[], datetime] = _utcnow,
        on_fatal: Callable[[RepeatedTickFailure], None] | None = None,
        max_overlapping_ticks: int = DEFAULT_MAX_OVERLAPPING_TICKS,
    ) -> None:
        self._manager = manager
        self._monitor = monitor
        self._alerter = alerter
        self._database = database
        self._config = config
        self._clock = clock
        self._on_fatal = on_fatal
        self._max_overlapping_ticks = max(1, max_overlapping_ticks)
        self._limiter: anyio.CapacityLimiter | None = None
        self._consecutive_failures = 0
        self._halted = False
        self._stopping = False
        self._last_report: Optional[TickReport] = None

    @property
    def halted(self) -> bool:
        return self._halted

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    @property
    def last_report(self) -> Optional[TickReport]:
        return self._last_report

    def reset(self) -> None:
        """Re-arm a halted scheduler after the operator has fixed the cause."""

        if self._halted:
            logger.warning("Scheduler re-armed after %s failed ticks", self._consecutive_failures)
        self._halted = False
        self._consecutive_failures = 0

    def stop(self) -> None:
        self._stopping = True

    def status(self) -> Dict[str, object]:
        return {
            "halted": self._halted,
            "consecutive_failures": self._consecutive_failures,
            "failure_limit": self._config.iteration_failures,
            "last_tick": self._last_report.to_dict() if self._last_report else None,
        }

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------
    async def tick(self) -> TickReport:
        """Run one iteration: rotate, reclaim, sweep, then supervise queues."""

        if self._halted:
            raise RepeatedTickFailure(self._consecutive_failures)

        limiter = self._limiter or anyio.CapacityLimiter(self._config.max_workers)
        now = self._clock()
        report = TickReport(started_at=now)

        try:
            expired: List[Namespace] = await self._in_thread(
                limiter, self._database.list_namespaces_expiring_before, now
            )
        except Exception as exc:
            logger.exception("Failed to list namespaces due for rotation")
            report.errors.append(f"list namespaces: {exc}")
            expired = []

        due = [namespace for namespace in expired if not self._manager.is_reclaimable(namespace)]
        stale = [namespace for namespace in expired if self._manager.is_reclaimable(namespace)]

        async with anyio.create_task_group() as task_group:
            for namespace in due:
                task_group.start_soon(
                    self._operation, limiter, report, report.rotated, f"rotate:{namespace.name}",
                    self._manager.rotate, namespace,
                )
            for namespace in stale:
                task_group.start_soon(
                    self._operation, limiter, report, report.reclaimed, f"reclaim:{namespace.name}",
                    self._manager.reclaim, namespace,
                )

        removed = await self._operation(limiter, report, None, "sweep-orphans", self._manager.sweep_orphan_users)
        if removed:
            report.orphans_removed.extend(removed)

        try:
            verdicts: List[QueueVerdict] = await self._in_thread(limiter, self._monitor.scan)
        except RabbitError as exc:
            logger.warning("Queue scan failed: %s", exc)
            report.errors.append(f"scan: {exc}")
            verdicts = []
        except Exception as exc:
            logger.exception("Queue scan failed")
            report.errors.append(f"scan: {exc}")
            verdicts = []

        async with anyio.create_task_group() as task_group:
            for verdict in verdicts:
                if verdict.classification is QueueClassification.DELETE:
                    delete = (
                        self._manager.delete_queue if verdict.kind == "queue" else self._manager.delete_exchange
                    )
                    task_group.start_soon(
                        self._operation, limiter, report, report.deleted, f"delete:{verdict.name}",
                        delete, verdict.name,
                    )
                elif verdict.classification is QueueClassification.ALERT:
                    task_group.start_soon(
                        self._operation, limiter, report, report.alerted, f"alert:{verdict.name}",
                        self._alert, verdict,
                    )

        await self._operation(limiter, report, None, "expire-alerts", self._alerter.expire_records)

        report.finished_at = self._clock()
        self._record(report)
        return report

    async def _in_thread(self, limiter: anyio.CapacityLimiter, func: Callable[..., Any], *args: Any) -> Any:
        return await anyio.to_thread.run_sync(functools.partial(func, *args), limiter=limiter)

    async def _operation(
        self,
        limiter: anyio.CapacityLimiter,
        report: TickReport,
        done: Optional[List[str]],
        label: str,
        func: Callable[..., Any],
        *args: Any,
    ) -> Any:
        report.operations += 1
        try:
            result = await self._in_thread(limiter, func, *args)
        except PermissionConflict as exc:
            logger.info("Skipping %s: %s", label, exc)
            report.conflicts.append(label.split(":", 1)[-1])
            return None
        except RabbitError as exc:
            logger.warning("Broker operation %s failed: %s", label, exc)
            report.failures[label] = str(exc)
            return None
        except Exception as exc:
            logger.exception("Operation %s failed", label)
            report.failures[label] = str(exc)
            return None

        if done is not None and result is not False:
            done.append(label.split(":", 1)[-1])
        return result

    def _alert(self, verdict: QueueVerdict) -> bool:
        namespace = self._database.get_namespace(verdict.namespace)
        return self._alerter.notify(verdict, contact=namespace.contact if namespace else None)

    def _record(self, report: TickReport) -> None:
        self._last_report = report
        if not report.failed:
            if self._consecutive_failures:
                logger.info("Tick succeeded after %s failed ticks", self._consecutive_failures)
            self._consecutive_failures = 0
            return

        self._consecutive_failures += 1
        logger.warning(
            "Tick failed (%s of %s operations failed, errors=%s); %s consecutive failures",
            len(report.failures),
            report.operations,
            report.errors,
            self._consecutive_failures,
        )
        if self._consecutive_failures >= self._config.iteration_failures and not self._halted:
            self._halted = True
            error = RepeatedTickFailure(self._consecutive_failures)
            logger.critical("%s", error)
            if self._on_fatal is not None:
                self._on_fatal(error)

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------
    async def run(self) -> None:
        """Tick every ``iteration_gap`` seconds until stopped or halted.

        A tick gets ``iteration_length`` seconds before the loop stops waiting
        for it; its in-flight operations keep running while the next tick is
        scheduled, up to ``max_overlapping_ticks`` concurrent ticks.
        """

        if self._halted:
            raise RepeatedTickFailure(self._consecutive_failures)

        self._stopping = False
        self._limiter = anyio.CapacityLimiter(self._config.max_workers)
        slots = anyio.Semaphore(self._max_overlapping_ticks)
        logger.info(
            "Scheduler started (length=%ss, gap=%ss, workers=%s)",
            self._config.iteration_length,
            self._config.iteration_gap,
            self._config.max_workers,
        )

        try:
            async with anyio.create_task_group() as task_group:
                while not self._halted and not self._stopping:
                    await slots.acquire()
                    finished = anyio.Event()
                    task_group.start_soon(self._run_tick, slots, finished)
                    with anyio.move_on_after(self._config.iteration_length):
                        await finished.wait()
                    if not finished.is_set():
                        logger.warning(
                            "Tick still running after %ss; scheduling the next one",
                            self._config.iteration_length,
                        )
                    if self._halted or self._stopping:
                        break
                    await anyio.sleep(self._config.iteration_gap)
                task_group.cancel_scope.cancel()
        finally:
            self._limiter = None

        if self._halted:
            raise RepeatedTickFailure(self._consecutive_failures)
        logger.info("Scheduler stopped")

    async def _run_tick(self, slots: anyio.Semaphore, finished: anyio.Event) -> None:
        try:
            await self.tick()
        except RepeatedTickFailure:
            logger.debug("Skipped tick on a halted scheduler")
        except Exception as exc:
            logger.exception("Unexpected error during tick")
            self._record(TickReport(started_at=self._clock(), errors=[f"tick: {exc}"]))
        finally:
            finished.set()
            slots.release()


__all__ = ["RepeatedTickFailure", "RotationScheduler", "TickReport"]
