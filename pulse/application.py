"""Wiring of the store, broker client and engine components from configuration."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

from fastapi import FastAPI

from .alerter import Alerter, AlertSink
from .config import PulseConfig, load_config, resolve_config_path
from .database import Database, resolve_database_path
from .monitor import QueueMonitor
from .namespaces import NamespaceManager
from .rabbit import RabbitManager
from .scheduler import RotationScheduler
from .security import ApiAuth
from .service import create_app

logger = logging.getLogger("pulse.application")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Components:
    """Everything a process needs to serve the API or run the scheduler."""

    config: PulseConfig
    database: Database
    rabbit: RabbitManager
    manager: NamespaceManager
    monitor: QueueMonitor
    alerter: Alerter
    scheduler: RotationScheduler

    def close(self) -> None:
        self.rabbit.close()


def resolve_store_path(config: PulseConfig, env_value: Optional[str] = None) -> Path:
    """``PULSE_DB_PATH`` wins over ``server.databasePath``, then the default."""

    if env_value:
        return resolve_database_path(env_value)
    if config.server.database_path is not None:
        return config.server.database_path
    return resolve_database_path(None)


def build_components(
    config: PulseConfig,
    *,
    database: Database | None = None,
    rabbit: RabbitManager | None = None,
    sink: AlertSink | None = None,
    clock: Callable[[], datetime] = _utcnow,
) -> Components:
    if database is None:
        database = Database(resolve_store_path(config, os.getenv("PULSE_DB_PATH")))
    database.initialize()

    if rabbit is None:
        rabbit = RabbitManager(
            config.rabbit.base_url,
            config.rabbit.username,
            config.rabbit.password,
            timeout=config.rabbit.timeout,
        )

    manager = NamespaceManager(rabbit, database, config.app, clock=clock)
    monitor = QueueMonitor(rabbit, database, config.app, config.monitor, clock=clock)
    alerter = Alerter(
        database,
        config.alerter,
        config.monitor,
        window=config.app.queue_expiration_delay,
        sink=sink,
        clock=clock,
    )
    scheduler = RotationScheduler(manager, monitor, alerter, database, config.monitor, clock=clock)
    return Components(
        config=config,
        database=database,
        rabbit=rabbit,
        manager=manager,
        monitor=monitor,
        alerter=alerter,
        scheduler=scheduler,
    )


def create_application(
    *,
    config_path: Optional[str] = None,
    profile: Optional[str] = None,
    run_scheduler: bool = True,
) -> FastAPI:
    """Create the ASGI application, running the rotation scheduler alongside it."""

    path = resolve_config_path(config_path or os.getenv("PULSE_CONFIG"))
    config = load_config(path, profile or os.getenv("PULSE_PROFILE"))
    components = build_components(config)

    auth = ApiAuth.load(config.server.api_tokens, config.server.read_tokens)
    app = create_app(
        database=components.database,
        manager=components.manager,
        scheduler=components.scheduler,
        auth=auth,
        run_scheduler=run_scheduler,
    )
    app.state.components = components
    logger.info("Loaded configuration from %s", path)
    return app


__all__ = ["Components", "build_components", "create_application", "resolve_store_path"]
