"""Deduplicated, rate-limited alerting on runaway queues."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, NamedTuple, Optional, Protocol

from .config import AlerterConfig, MonitorConfig
from .database import Database
from .monitor import QueueClassification, QueueVerdict

logger = logging.getLogger("pulse.alerter")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AlertKey(NamedTuple):
    namespace: str
    queue_name: str


@dataclass(frozen=True)
class QueueAlert:
    """An alert that should be delivered to the namespace contact."""

    namespace: str
    queue_name: str
    message_count: int
    rate: Optional[float]
    contact: Optional[str]
    raised_at: datetime


class AlertSink(Protocol):
    """Delivery transport for alerts (email, IRC, ...)."""

    def send(self, alert: QueueAlert) -> None:
        ...


class LoggingAlertSink:
    """Default sink that records alerts in the service log."""

    def send(self, alert: QueueAlert) -> None:
        logger.warning(
            "Queue %s in namespace %s has %s messages (rate=%s/s, contact=%s)",
            alert.queue_name,
            alert.namespace,
            alert.message_count,
            "unknown" if alert.rate is None else f"{alert.rate:.2f}",
            alert.contact or "<none>",
        )


class Alerter:
    """Decides whether an alert-worthy queue should actually alert now."""

    def __init__(
        self,
        database: Database,
        config: AlerterConfig,
        monitor_config: MonitorConfig,
        *,
        window: timedelta,
        sink: AlertSink | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._database = database
        self._config = config
        self._monitor_config = monitor_config
        self._window = window
        self._sink: AlertSink = sink or LoggingAlertSink()
        self._clock = clock

    def should_alert(self, key: AlertKey, classification: QueueClassification) -> bool:
        """Return ``True`` at most once per suppression window for ``key``.

        The check and the ``last_alert_at`` update happen in one conditional
        write, so a concurrent caller inside the window observes ``False``.
        """

        if classification is not QueueClassification.ALERT:
            return False
        return self._claim(key, self._clock())

    def _claim(self, key: AlertKey, now: datetime) -> bool:
        return self._database.claim_alert(
            key.namespace,
            key.queue_name,
            now=now,
            cutoff=now - self._window,
        )

    def is_tolerated(self, verdict: QueueVerdict) -> bool:
        count_tolerance = self._config.message_count_tolerance
        rate_tolerance = self._config.message_publish_rate_tolerance
        if count_tolerance is None or rate_tolerance is None:
            return False
        if verdict.rate is None:
            return False
        within_count = verdict.message_count < self._monitor_config.alert_threshold + count_tolerance
        return within_count and verdict.rate <= rate_tolerance

    def notify(self, verdict: QueueVerdict, *, contact: Optional[str] = None) -> bool:
        """Deliver an alert for ``verdict`` if its window is free.

        A delivery failure gives the window back so the next tick retries.
        """

        if verdict.classification is not QueueClassification.ALERT:
            return False
        if self.is_tolerated(verdict):
            logger.debug("Queue %s is within alert tolerances", verdict.name)
            return False
        key = AlertKey(verdict.namespace, verdict.name)
        now = self._clock()
        if not self._claim(key, now):
            return False
        alert = QueueAlert(
            namespace=verdict.namespace,
            queue_name=verdict.name,
            message_count=verdict.message_count,
            rate=verdict.rate,
            contact=contact,
            raised_at=now,
        )
        try:
            self._sink.send(alert)
        except Exception:
            logger.warning("Alert for queue %s was not delivered; releasing its window", verdict.name)
            self._database.release_alert(key.namespace, key.queue_name, claimed_at=now)
            raise
        return True

    def expire_records(self) -> int:
        return self._database.expire_alert_records(self._clock() - self._window)


__all__ = ["AlertKey", "AlertSink", "Alerter", "LoggingAlertSink", "QueueAlert"]
