"""HTTP API for claiming namespaces and observing the rotation scheduler."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional

import anyio
from fastapi import Depends, FastAPI, HTTPException, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .database import Database, PermissionConflict
from .models import Namespace
from .namespaces import NamespaceManager
from .rabbit import RabbitError, TransientBrokerError
from .scheduler import RepeatedTickFailure, RotationScheduler
from .security import SCOPE_OPERATOR, SCOPE_READ, ApiAuth

logger = logging.getLogger("pulse.service")


class NamespaceView(BaseModel):
    name: str
    created: datetime
    expires: datetime
    rotation_version: int
    contact: Optional[str] = None


class NamespaceListResponse(BaseModel):
    namespaces: List[NamespaceView]


class NamespaceClaimRequest(BaseModel):
    contact: Optional[str] = Field(default=None, max_length=255)


class CredentialsResponse(BaseModel):
    namespace: str
    username: str
    password: str
    vhost: str
    expires: datetime
    connection_string: str


class SchedulerStatusResponse(BaseModel):
    halted: bool
    consecutive_failures: int
    failure_limit: int
    last_tick: Optional[Dict[str, Any]] = None


def _namespace_to_view(namespace: Namespace) -> NamespaceView:
    return NamespaceView(
        name=namespace.name,
        created=namespace.created,
        expires=namespace.expires,
        rotation_version=namespace.rotation_version,
        contact=namespace.contact,
    )


def _resolve_auth(auth: ApiAuth | None) -> ApiAuth | None:
    if auth is not None:
        return auth
    auth = ApiAuth.load()
    if auth is not None:
        return auth
    logger.warning(
        "No API tokens configured; the namespace API is unauthenticated. Only run it this way"
        " for local development."
    )
    return None


def register_api_routes(
    app: FastAPI,
    database: Database,
    manager: NamespaceManager,
    scheduler: RotationScheduler | None,
    *,
    read_dependencies: List[Any],
    operator_dependencies: List[Any],
) -> None:
    """Expose the JSON API endpoints on the provided FastAPI application.

    Reads accept any valid token; issuing credentials and resetting the
    scheduler need an operator token.
    """

    @app.get("/healthz")
    async def healthcheck():
        if scheduler is not None and scheduler.halted:
            return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content={"status": "halted"})
        return {"status": "ok"}

    @app.get("/v1/namespaces", response_model=NamespaceListResponse, dependencies=read_dependencies)
    async def list_namespaces() -> NamespaceListResponse:
        namespaces = await anyio.to_thread.run_sync(database.list_namespaces)
        return NamespaceListResponse(namespaces=[_namespace_to_view(namespace) for namespace in namespaces])

    @app.get("/v1/namespaces/{name}", response_model=NamespaceView, dependencies=read_dependencies)
    async def get_namespace(name: str) -> NamespaceView:
        namespace = await anyio.to_thread.run_sync(database.get_namespace, name)
        if namespace is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Namespace not found")
        return _namespace_to_view(namespace)

    @app.post("/v1/namespaces/{name}", response_model=CredentialsResponse, dependencies=operator_dependencies)
    async def claim_namespace(name: str, request: NamespaceClaimRequest) -> CredentialsResponse:
        try:
            credentials = await anyio.to_thread.run_sync(manager.claim, name, request.contact)
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        except PermissionConflict as exc:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
        except TransientBrokerError as exc:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
        except RabbitError as exc:
            raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc

        logger.info("Issued credentials for namespace %s", credentials.namespace)
        return CredentialsResponse(
            namespace=credentials.namespace,
            username=credentials.username,
            password=credentials.password,
            vhost=credentials.vhost,
            expires=credentials.expires,
            connection_string=credentials.connection_string,
        )

    @app.get("/v1/scheduler", response_model=SchedulerStatusResponse, dependencies=read_dependencies)
    async def scheduler_status() -> SchedulerStatusResponse:
        if scheduler is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Scheduler is not running")
        return SchedulerStatusResponse(**scheduler.status())

    @app.post("/v1/scheduler/reset", response_model=SchedulerStatusResponse, dependencies=operator_dependencies)
    async def reset_scheduler() -> SchedulerStatusResponse:
        if scheduler is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Scheduler is not running")
        scheduler.reset()
        _ensure_scheduler_task(app, scheduler)
        logger.warning("Scheduler reset by operator")
        return SchedulerStatusResponse(**scheduler.status())


async def _run_scheduler(scheduler: RotationScheduler) -> None:
    try:
        await scheduler.run()
    except RepeatedTickFailure as exc:
        logger.critical("Namespace rotation halted: %s", exc)


def _ensure_scheduler_task(app: FastAPI, scheduler: RotationScheduler) -> None:
    if not getattr(app.state, "run_scheduler", False):
        return
    task: asyncio.Task | None = getattr(app.state, "scheduler_task", None)
    if task is not None and not task.done():
        return
    app.state.scheduler_task = asyncio.get_running_loop().create_task(_run_scheduler(scheduler))


def create_app(
    *,
    database: Database,
    manager: NamespaceManager,
    scheduler: RotationScheduler | None = None,
    auth: ApiAuth | None = None,
    run_scheduler: bool = False,
) -> FastAPI:
    """Instantiate the FastAPI application for the namespace service."""

    database.initialize()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if scheduler is not None:
            _ensure_scheduler_task(app, scheduler)
        try:
            yield
        finally:
            task: asyncio.Task | None = getattr(app.state, "scheduler_task", None)
            if scheduler is not None and task is not None:
                scheduler.stop()
                task.cancel()
                with suppress(asyncio.CancelledError):
                    await task

    app = FastAPI(
        title="Pulse Namespace API",
        version="0.1.0",
        description="Issues rotating RabbitMQ credentials for tenant namespaces.",
        lifespan=lifespan,
    )
    app.state.database = database
    app.state.manager = manager
    app.state.scheduler = scheduler
    app.state.run_scheduler = run_scheduler
    app.state.scheduler_task = None

    resolved = _resolve_auth(auth)
    read_dependencies = [Depends(resolved.require(SCOPE_READ))] if resolved is not None else []
    operator_dependencies = [Depends(resolved.require(SCOPE_OPERATOR))] if resolved is not None else []
    register_api_routes(
        app,
        database,
        manager,
        scheduler,
        read_dependencies=read_dependencies,
        operator_dependencies=operator_dependencies,
    )

    return app


__all__ = ["create_app"]
