from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .core.config import Settings, settings
from .core.log import configure_logging

from .api.routes import router as api_router
import aqualuminus.api.routes as routes_module

from .domain.errors import DeviceNotFound, InvalidRecurrence, MalformedTime
from .domain.interfaces import DeviceApi, NotificationSink
from .drivers.device_http import AquaLuminusHttpClient
from .drivers.device_sim import SimulatedDeviceApi
from .services.cleaning_cycle import CleaningCycleExecutor
from .services.notifications import build_notifier
from .services.orchestrator import RecurrenceOrchestrator
from .services.poller import DevicePoller
from .services.reconciler import DeviceStateReconciler
from .services.work_engine import SQLiteWorkEngine
from .storage.sqlite_repo import SQLiteRepository


logger = logging.getLogger(__name__)


@dataclass
class Services:
    repo: SQLiteRepository
    device_api: DeviceApi
    notifier: NotificationSink
    engine: SQLiteWorkEngine
    reconciler: DeviceStateReconciler
    orchestrator: RecurrenceOrchestrator
    executor: CleaningCycleExecutor
    poller: DevicePoller

    async def init(self) -> None:
        await self.repo.init()
        await self.engine.init()
        await self.reconciler.load()
        self.executor.register()

    async def start(self) -> None:
        # Recompute every chain from persisted schedules so a rearm lost to a
        # crash cannot silence a schedule.
        await self.orchestrator.rearm_all()
        await self.engine.start()
        await self.poller.start()

    async def stop(self) -> None:
        await self.poller.stop()
        await self.engine.stop()


def build_device_api(cfg: Settings) -> DeviceApi:
    if cfg.device_mode.lower() == "sim":
        return SimulatedDeviceApi()
    return AquaLuminusHttpClient(timeout=cfg.device_timeout_seconds)


def build_services(cfg: Settings = settings) -> Services:
    repo = SQLiteRepository(cfg.sqlite_path)
    device_api = build_device_api(cfg)
    notifier = build_notifier(cfg.notify_webhook_url)
    engine = SQLiteWorkEngine(
        cfg.sqlite_path,
        poll_seconds=cfg.work_poll_seconds,
        max_attempts=cfg.work_max_attempts,
        backoff_seconds=cfg.work_backoff_seconds,
        max_backoff_seconds=cfg.work_max_backoff_seconds,
        concurrency=cfg.worker_concurrency,
    )
    reconciler = DeviceStateReconciler(api=device_api, store=repo, activity=repo)
    orchestrator = RecurrenceOrchestrator(
        engine=engine,
        schedules=repo,
        advance_notice=timedelta(minutes=cfg.advance_notice_minutes),
    )
    executor = CleaningCycleExecutor(
        reconciler=reconciler,
        orchestrator=orchestrator,
        engine=engine,
        notifier=notifier,
        schedules=repo,
    )
    poller = DevicePoller(
        reconciler=reconciler,
        history=repo,
        poll_seconds=cfg.poll_interval_seconds,
        history_seconds=cfg.history_interval_seconds,
    )
    return Services(
        repo=repo,
        device_api=device_api,
        notifier=notifier,
        engine=engine,
        reconciler=reconciler,
        orchestrator=orchestrator,
        executor=executor,
        poller=poller,
    )


def create_app(services: Optional[Services] = None) -> FastAPI:
    """Build the app. With ``services`` given, the caller owns their lifecycle."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging()
        logger.info("Starting %s (device_mode=%s)", settings.app_name, settings.device_mode)

        svc = build_services(settings)
        app.state.services = svc
        await svc.init()
        await svc.start()

        try:
            yield
        finally:
            await svc.stop()
            logger.info("Shutdown complete")

    app = FastAPI(title=settings.app_name, lifespan=None if services else lifespan)
    if services is not None:
        app.state.services = services

    # Make the dependency functions in routes resolve to the real ones
    app.dependency_overrides[routes_module.get_reconciler] = lambda: app.state.services.reconciler
    app.dependency_overrides[routes_module.get_orchestrator] = lambda: app.state.services.orchestrator
    app.dependency_overrides[routes_module.get_repo] = lambda: app.state.services.repo
    app.dependency_overrides[routes_module.get_engine] = lambda: app.state.services.engine
    app.dependency_overrides[routes_module.get_poller] = lambda: app.state.services.poller

    @app.exception_handler(DeviceNotFound)
    async def _not_found(request: Request, exc: DeviceNotFound):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(InvalidRecurrence)
    @app.exception_handler(MalformedTime)
    async def _bad_recurrence(request: Request, exc: ValueError):
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    app.include_router(api_router, prefix="/api")
    return app


app = create_app()
