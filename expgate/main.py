"""
expgate - FastAPI host owning the experiments manager for the process lifetime
"""
import time
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from fastapi import FastAPI, HTTPException, Request

from expgate.activation import ConditionalActivationService, DisposableRegistry
from expgate.config import ExperimentsOptions, config
from expgate.errors import ExperimentsNotReady
from expgate.fetcher import ManifestFetcher
from expgate.handlers import experiments_not_ready_handler, http_exception_handler
from expgate.logging_config import setup_logging
from expgate.manager import ExperimentsManager, create_experiments_manager
from expgate.routes import router
from expgate.store import InMemoryStore, JsonFileStore, PersistentStore
from expgate.telemetry import StatsdTelemetrySink, TelemetrySink

# Initialize structured logging
logger = setup_logging()

ActivationFactory = Callable[[ExperimentsManager, DisposableRegistry], ConditionalActivationService]


def default_store() -> PersistentStore:
    if config.EXPERIMENTS_CACHE_PATH:
        return JsonFileStore(Path(config.EXPERIMENTS_CACHE_PATH))
    return InMemoryStore()


def create_app(
    options: Optional[ExperimentsOptions] = None,
    store: Optional[PersistentStore] = None,
    telemetry: Optional[TelemetrySink] = None,
    fetcher: Optional[ManifestFetcher] = None,
    activations: Sequence[ActivationFactory] = (),
) -> FastAPI:
    """
    Build the application. The experiments manager is created in the
    lifespan hook and shut down with the app; nothing is module-global.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Lifecycle management for the application"""
        logger.info("Starting expgate")
        manager = await create_experiments_manager(
            options or config.experiments_options(),
            store if store is not None else default_store(),
            telemetry if telemetry is not None else StatsdTelemetrySink(),
            fetcher=fetcher,
        )

        with DisposableRegistry() as disposables:
            app.state.experiments = manager
            app.state.disposables = disposables
            try:
                await manager.report_assignments()
                services: List[ConditionalActivationService] = [
                    build(manager, disposables) for build in activations
                ]
                for service in services:
                    await service.activate()
                yield
            finally:
                logger.info("Shutting down expgate")
                await manager.shutdown()
                app.state.experiments = None

    app = FastAPI(
        title=config.APP_NAME,
        version=config.DD_VERSION,
        lifespan=lifespan
    )
    app.state.start_time = time.time()
    app.state.experiments = None

    @app.middleware("http")
    async def add_request_id(request: Request, call_next):
        """Add unique request ID to all requests for tracing"""
        request_id = str(uuid.uuid4())
        request.state.request_id = request_id

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id

        return response

    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(ExperimentsNotReady, experiments_not_ready_handler)
    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=config.APP_HOST, port=config.APP_PORT)
