import asyncio
from contextlib import asynccontextmanager
from typing import Optional

import httpx
import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from relay.controller import config
from relay.controller.api import metadata as metadata_routes
from relay.controller.api import routes, webhooks
from relay.controller.metadata.service import MetadataService
from relay.controller.scheduler.core import WorkflowScheduler
from relay.controller.store.database import RunStore
from relay.controller.triggers.dispatcher import TriggerDispatcher
from relay.controller.triggers.gateway import EventGateway
from relay.controller.utils.logger import log_buffer, logger
from relay.controller.workflows.engine import WorkflowManager
from relay.runner.sandbox.executor import StepExecutor
from relay.runner.sandbox.runtime import ContainerRuntime, DockerRuntime
from relay.runner.utils.logger import log_buffer as runner_log_buffer

security = HTTPBearer(auto_error=False)


async def verify_token(request: Request, credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)):
    token = credentials.credentials if credentials else request.query_params.get("token")
    if token != config.API_TOKEN:
        raise HTTPException(status_code=403, detail="Invalid authorization token")


async def archive_loop(manager: WorkflowManager, interval: float, retention: float):
    while True:
        await asyncio.sleep(interval)
        try:
            manager.archive_expired(retention)
        except Exception as e:
            logger.error(f"Run archival failed: {e}", extra={"event": "archive_failed"})


def create_app(store: Optional[RunStore] = None, runtime: Optional[ContainerRuntime] = None,
               metadata_url: str = config.METADATA_URL,
               webhook_transport: Optional[httpx.AsyncBaseTransport] = None) -> FastAPI:
    """Wires the controller components together. Tests pass their own store, runtime and transport."""
    store = store or RunStore(config.DB_PATH)
    runtime = runtime or DockerRuntime(config.DOCKER_BINARY, config.DOCKER_NETWORK)

    metadata = MetadataService(store)
    executor = StepExecutor(runtime, metadata_url)
    scheduler = WorkflowScheduler(store, metadata, executor)
    workflow_manager = WorkflowManager(scheduler, store)
    dispatcher = TriggerDispatcher(store, metadata, runtime, workflow_manager, metadata_url)
    gateway = EventGateway(dispatcher, timeout=config.WEBHOOK_TIMEOUT_SECONDS, transport=webhook_transport)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Relay controller online", extra={"event": "startup"})
        scheduler.start()
        await workflow_manager.recover()
        await dispatcher.restore()
        archiver = asyncio.create_task(
            archive_loop(workflow_manager, config.ARCHIVE_INTERVAL_SECONDS, config.RUN_RETENTION_SECONDS)
        )
        yield
        archiver.cancel()
        await dispatcher.shutdown()
        await scheduler.stop()
        await gateway.close()
        logger.info("Relay controller stopped", extra={"event": "shutdown"})

    app = FastAPI(title="Relay Controller", lifespan=lifespan)

    # Inject dependencies into routers
    routes.workflow_manager = workflow_manager
    routes.dispatcher = dispatcher
    routes.log_buffers = [log_buffer, runner_log_buffer]
    metadata_routes.metadata = metadata
    webhooks.gateway = gateway

    app.include_router(routes.router, dependencies=[Depends(verify_token)])
    app.include_router(metadata_routes.router)
    app.include_router(webhooks.router)

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "active_runs": len(scheduler.runs),
            "triggers": len(dispatcher.routes),
        }

    app.state.store = store
    app.state.scheduler = scheduler
    app.state.workflow_manager = workflow_manager
    app.state.dispatcher = dispatcher
    app.state.metadata = metadata
    return app


def serve(host: str = "0.0.0.0", port: int = config.PORT):
    uvicorn.run(create_app(), host=host, port=port, log_config=None)


if __name__ == "__main__":
    serve()
