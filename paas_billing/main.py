import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI
from starlette.exceptions import HTTPException

from paas_billing.api import events, health, metrics, pricing
from paas_billing.core.config import Settings, validate_config
from paas_billing.core.database import create_all_tables, init_engine
from paas_billing.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from paas_billing.core.logging import configure_logging
from paas_billing.core.middleware.metrics import MetricsMiddleware
from paas_billing.core.middleware.request_id import RequestIdMiddleware
from paas_billing.features.context import BillingContext, build_context

logger = logging.getLogger("paas_billing")


def bootstrap(settings_obj: Settings) -> BillingContext:
    """Engine, schema, services and the configuration file, if there is one."""
    engine = init_engine(settings_obj)
    create_all_tables(engine)
    context = build_context(engine, settings_obj, with_collectors=settings_obj.COLLECTOR_ENABLED)
    if os.path.exists(settings_obj.BILLING_CONFIG_PATH):
        # An invalid or conflicting configuration aborts startup
        context.refresher.refresh_from_path(settings_obj.BILLING_CONFIG_PATH)
    else:
        logger.warning("config.not_found", extra={"path": settings_obj.BILLING_CONFIG_PATH})
    return context


@asynccontextmanager
async def lifespan(app: FastAPI):
    owned = getattr(app.state, "billing", None) is None
    if owned:
        app.state.billing = bootstrap(app.state.settings)
    context: BillingContext = app.state.billing

    stop = asyncio.Event()
    tasks = [asyncio.create_task(collector.run(stop)) for collector in context.collectors]
    logger.info("app.started", extra={"collectors": len(tasks)})
    try:
        yield
    finally:
        stop.set()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await context.aclose_clients()
        if owned:
            context.engine.dispose()
        logger.info("app.stopped")


def create_app(context: Optional[BillingContext] = None, settings_obj: Optional[Settings] = None) -> FastAPI:
    app = FastAPI(title="PaaS billing", lifespan=lifespan)
    app.state.settings = settings_obj or Settings()
    if context is not None:
        app.state.billing = context

    app.add_middleware(MetricsMiddleware)
    app.add_middleware(RequestIdMiddleware)

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(HTTPException, http_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(health.router)
    app.include_router(metrics.router)
    app.include_router(events.router)
    app.include_router(pricing.router)
    return app


def build_app(settings_obj: Optional[Settings] = None) -> FastAPI:
    """Load .env, configure logging and validate settings, then create the app."""
    if settings_obj is None:
        load_dotenv()
        settings_obj = Settings()
    configure_logging(settings_obj.ENV, settings_obj.LOG_LEVEL)
    validate_config(strict=settings_obj.CONFIG_STRICT, settings_obj=settings_obj)
    return create_app(settings_obj=settings_obj)
