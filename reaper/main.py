"""FastAPI probe app: runs the reaper in the background and reports its state."""

from collections.abc import Callable
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request, Response, status

from reaper.config import Settings, settings
from reaper.schemas import StatsResponse
from reaper.service import ReaperService
from reaper.workers.reaper import configure_logging

logger = structlog.get_logger()


def create_app(
    config: Settings = settings,
    service_factory: Callable[[Settings], ReaperService] = ReaperService,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        service = service_factory(config)
        app.state.service = service
        service.start()
        yield
        service.stop()

    app = FastAPI(title=config.app_name, debug=config.debug, lifespan=lifespan)

    @app.get("/health")
    def health(request: Request, response: Response):
        """Liveness probe: fails once the reaper stopped on an unrecoverable error."""
        if request.app.state.service.failed:
            response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
            return {"status": "failed"}
        return {"status": "ok"}

    @app.get("/ready")
    def ready(request: Request, response: Response):
        """Readiness probe: subscribed to expirations."""
        if not request.app.state.service.ready:
            response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
            return {"status": "not_ready"}
        return {"status": "ready"}

    @app.get("/stats", response_model=StatsResponse)
    def stats(request: Request):
        """Reclamation outcome counters since start."""
        return StatsResponse(**request.app.state.service.stats())

    return app


configure_logging(settings.debug)

app = create_app()
