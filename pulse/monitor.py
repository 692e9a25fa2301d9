"""Queue and exchange supervision for managed namespaces."""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional, Set

from .config import AppConfig, MonitorConfig
from .database import Database
from .permissions import validate_namespace_name
from .rabbit import RabbitManager

logger = logging.getLogger("pulse.monitor")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class QueueClassification(str, Enum):
    """What the monitor decided to do about a queue."""

    HEALTHY = "healthy"
    ALERT = "alert"
    DELETE = "delete"


@dataclass(frozen=True)
class QueueSnapshot:
    name: str
    namespace: str
    message_count: int
    observed_at: datetime


@dataclass(frozen=True)
class QueueVerdict:
    """Classification of one queue or exchange in a scan."""

    name: str
    kind: str
    namespace: str
    classification: QueueClassification
    message_count: int = 0
    rate: Optional[float] = None
    orphaned: bool = False
    reason: Optional[str] = None


def growth_rate(previous: Optional[QueueSnapshot], current: QueueSnapshot) -> Optional[float]:
    """Messages per second between two snapshots, or ``None`` if unknown."""

    if previous is None:
        return None
    elapsed = (current.observed_at - previous.observed_at).total_seconds()
    if elapsed <= 0:
        return None
    return (current.message_count - previous.message_count) / elapsed


class QueueMonitor:
    """Classifies queues/exchanges under the managed prefixes.

    Only resources whose names map to a valid managed namespace are ever
    reported; anything else on the shared virtual host is invisible here.
    """

    def __init__(
        self,
        rabbit: RabbitManager,
        database: Database,
        app_config: AppConfig,
        config: MonitorConfig,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._rabbit = rabbit
        self._database = database
        self._app_config = app_config
        self._config = config
        self._clock = clock
        self._snapshots: Dict[str, QueueSnapshot] = {}
        self._first_seen: Dict[str, datetime] = {}
        self._last_seen: Dict[str, datetime] = {}
        self._lock = threading.Lock()

    def namespace_for(self, name: str, prefix: str) -> Optional[str]:
        if not name.startswith(prefix):
            return None
        remainder = name[len(prefix):]
        candidate, separator, _ = remainder.partition("/")
        if not separator:
            return None
        try:
            return validate_namespace_name(candidate, self._app_config.namespace_prefix)
        except ValueError:
            return None

    def classify(
        self,
        message_count: int,
        *,
        orphaned: bool,
        age_exceeded: bool,
    ) -> tuple[QueueClassification, Optional[str]]:
        if orphaned and age_exceeded:
            return QueueClassification.DELETE, "orphaned"
        if message_count >= self._config.delete_threshold:
            return QueueClassification.DELETE, "delete-threshold"
        if message_count >= self._config.alert_threshold:
            return QueueClassification.ALERT, "alert-threshold"
        return QueueClassification.HEALTHY, None

    def scan(self) -> List[QueueVerdict]:
        """Read broker state once and classify every owned queue and exchange.

        Scans may overlap. Bookkeeping is updated under a lock, and a scan
        only forgets resources that no newer scan has observed.
        """

        now = self._clock()
        vhost = self._app_config.virtualhost
        queues = self._rabbit.queues(vhost)
        exchanges = self._rabbit.exchanges(vhost)
        known = {namespace.name for namespace in self._database.list_namespaces()}

        verdicts: List[QueueVerdict] = []
        seen: Set[str] = set()

        with self._lock:
            for queue in queues:
                name = str(queue.get("name", ""))
                namespace = self.namespace_for(name, self._config.queue_prefix)
                if namespace is None:
                    continue
                key = f"queue:{name}"
                seen.add(key)
                count = int(queue.get("messages") or 0)
                snapshot = QueueSnapshot(name=name, namespace=namespace, message_count=count, observed_at=now)
                previous = self._snapshots.get(key)
                rate = growth_rate(previous, snapshot)
                if previous is None or previous.observed_at <= now:
                    self._snapshots[key] = snapshot

                orphaned = namespace not in known
                classification, reason = self.classify(
                    count,
                    orphaned=orphaned,
                    age_exceeded=self._age_exceeded(key, now),
                )
                verdicts.append(
                    QueueVerdict(
                        name=name,
                        kind="queue",
                        namespace=namespace,
                        classification=classification,
                        message_count=count,
                        rate=rate,
                        orphaned=orphaned,
                        reason=reason,
                    )
                )

            for exchange in exchanges:
                name = str(exchange.get("name", ""))
                namespace = self.namespace_for(name, self._config.exchange_prefix)
                if namespace is None:
                    continue
                key = f"exchange:{name}"
                seen.add(key)
                orphaned = namespace not in known
                if orphaned and self._age_exceeded(key, now):
                    classification, reason = QueueClassification.DELETE, "orphaned"
                else:
                    classification, reason = QueueClassification.HEALTHY, None
                verdicts.append(
                    QueueVerdict(
                        name=name,
                        kind="exchange",
                        namespace=namespace,
                        classification=classification,
                        orphaned=orphaned,
                        reason=reason,
                    )
                )

            for key in set(self._last_seen) - seen:
                if self._last_seen[key] < now:
                    self._last_seen.pop(key, None)
                    self._first_seen.pop(key, None)
                    self._snapshots.pop(key, None)

        logger.debug("Scanned %s managed queues and exchanges", len(verdicts))
        return verdicts

    def _age_exceeded(self, key: str, now: datetime) -> bool:
        first_seen = self._first_seen.get(key)
        if first_seen is None or now < first_seen:
            first_seen = self._first_seen[key] = now
        self._last_seen[key] = max(self._last_seen.get(key, now), now)
        return now - first_seen >= self._config.connection_max_lifetime


__all__ = ["QueueClassification", "QueueMonitor", "QueueSnapshot", "QueueVerdict", "growth_rate"]
