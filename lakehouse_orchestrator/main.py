import asyncio
from contextlib import asynccontextmanager
import logging

import aiohttp
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette import status

from lakehouse_orchestrator.routes.deployments import router as deployments_router
from lakehouse_orchestrator.routes.workflows import router as workflows_router
from lakehouse_orchestrator.services.errors import OrchestratorError
from lakehouse_orchestrator.services.run_registry import DeploymentRunRegistry


def _ensure_logging() -> None:
    formatter = logging.Formatter("%(levelname)s: %(message)s")
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
    else:
        root.setLevel(logging.INFO)
        for handler in root.handlers:
            handler.setFormatter(formatter)


@asynccontextmanager
async def lifespan(app: FastAPI):
    _ensure_logging()
    app.state.run_registry = DeploymentRunRegistry()
    async with aiohttp.ClientSession() as session:
        app.state.http_session = session
        yield
        pending = [run.task for run in app.state.run_registry.list() if run.task is not None and not run.task.done()]
        for task in pending:
            task.cancel()
        # Let cancelled runs record their outcome before the session closes.
        await asyncio.gather(*pending, return_exceptions=True)


app = FastAPI(lifespan=lifespan)

app.include_router(deployments_router)
app.include_router(workflows_router)


@app.exception_handler(OrchestratorError)
async def orchestrator_error_handler(request: Request, exc: OrchestratorError) -> JSONResponse:
    """Map cloud/orchestration failures to a consistent HTTP response.

    Returns:
        502 Bad Gateway with a JSON body: {"detail": "..."}
    """
    return JSONResponse(
        status_code=status.HTTP_502_BAD_GATEWAY,
        content={"detail": str(exc)},
    )


@app.get("/")
async def root():
    return {"message": "Lakehouse provisioning orchestrator is running."}
