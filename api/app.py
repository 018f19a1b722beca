from dotenv import load_dotenv

# Load environment variables BEFORE any imports that read them (settings, Firebase)
load_dotenv()

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from api.dependencies import get_cloud_tasks_service, get_job_runner
from api.models.schemas import HealthResponse
from api.routers import webhook
from common.config import get_settings
from common.log_config import configure_logging

configure_logging(get_settings().log_level)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan context manager.

    Starts the in-process review workers when no Cloud Tasks worker is
    configured, and drains them on shutdown.
    """
    runner = None
    if get_cloud_tasks_service().is_enabled:
        logger.info("Review jobs are dispatched to Cloud Tasks")
    else:
        runner = get_job_runner()
        runner.start()
    yield
    if runner is not None:
        await runner.stop()


app = FastAPI(
    title="GitGuard Webhook API",
    description="""
    AI pull request reviews for GitHub App installations.

    ## Flow

    1. GitHub delivers a signed `pull_request` webhook to `/api/v1/webhook/github`
    2. The review job is enqueued, keyed by the delivery id
    3. A worker fetches the diff, reviews it with the LLM, scores the findings,
       applies the repository policy and posts the review back to the PR
    """,
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

app.include_router(
    webhook.router,
    prefix="/api/v1/webhook",
    tags=["Webhook"]
)


@app.get("/health", response_model=HealthResponse)
async def health():
    return HealthResponse(service="api")


def run_server():
    """
    Run the API server.

    This function is used as an entry point for the CLI command.
    """
    uvicorn.run(
        "api.app:app",
        host="0.0.0.0",
        port=8000,
    )


if __name__ == "__main__":
    run_server()
