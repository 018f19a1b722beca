
from dotenv import load_dotenv

load_dotenv()

from fastapi import FastAPI

from common.config import get_settings
from common.log_config import configure_logging
from review_worker.routers import health, review

configure_logging(get_settings().log_level)

app = FastAPI(title="GitGuard Review Worker", version="0.1.0")

app.include_router(health.router)
app.include_router(review.router)
