import logging
import os
import time
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException

if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

from reelpoints.core.config import settings, validate_config
from reelpoints.core.database import dispose_engine
from reelpoints.core.logging import configure_logging
from reelpoints.core.middleware.metrics import MetricsMiddleware
from reelpoints.core.middleware.request_id import RequestIdMiddleware
from reelpoints.core.validation import validate_env
from reelpoints.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from reelpoints.api import health, orders, points

configure_logging(settings.ENV)
validate_env()
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("reelpoints")
    logger.info("Starting reelpoints engine...")
    app.state.startup_time = time.time()
    try:
        yield
    finally:
        dispose_engine()
        logging.getLogger("reelpoints").info("Stopping reelpoints engine...")


app = FastAPI(title="reelpoints - entitlement and point ledger", lifespan=lifespan)

app.add_middleware(MetricsMiddleware)
app.add_middleware(RequestIdMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(HTTPException, http_error_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.include_router(health.router)
app.include_router(points.router)
# Family-scoped routes start with a path parameter, so they go last
app.include_router(orders.router)
