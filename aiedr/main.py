"""
AiEDR API
FastAPI application exposing the threat detection and escalation engine
"""
import os
import logging
from pathlib import Path
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration

# Load environment variables from repo-local .env before importing app modules
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(BASE_DIR / ".env")

from aiedr.routers import security
from aiedr.logging_config import setup_logging
from aiedr.middleware.request_logging import RequestLoggingMiddleware
from aiedr.services.base import ConfigurationError, EngineSettings
from aiedr.services.edr_service import ThreatDetectionEngine
from aiedr.services.monitoring_scheduler import HostMonitoringScheduler
from aiedr.services.persistence import build_persistence

# Setup production logging with PII scrubbing and file rotation
setup_logging(app_name="aiedr")
logger = logging.getLogger(__name__)

# Request fields that carry analyzed prompts/responses
SENSITIVE_FIELDS = ("content", "conversation_context", "sanitized_content", "affected_content")


def scrub_analyzed_content(event, hint):
    """
    Scrub analyzed content from Sentry events

    Prompts, responses and alert excerpts can contain user data or the very
    credentials a response was flagged for, so none of it leaves the host.
    """
    request = event.get("request")
    if isinstance(request, dict) and "data" in request:
        request["data"] = "[REDACTED - analyzed content]"

    breadcrumbs = event.get("breadcrumbs")
    if isinstance(breadcrumbs, dict):
        breadcrumbs = breadcrumbs.get("values", [])
    for crumb in breadcrumbs or []:
        data = crumb.get("data")
        if isinstance(data, dict):
            for key in SENSITIVE_FIELDS:
                if key in data:
                    data[key] = "[REDACTED]"

    extra = event.get("extra")
    if isinstance(extra, dict):
        for key in SENSITIVE_FIELDS:
            extra.pop(key, None)

    return event


def init_sentry():
    """Initialize Sentry for error tracking (production only)"""
    sentry_dsn = os.getenv("SENTRY_DSN")
    environment = os.getenv("ENVIRONMENT", "development")
    if sentry_dsn and environment == "production":
        sentry_sdk.init(
            dsn=sentry_dsn,
            environment=environment,
            integrations=[FastApiIntegration(transaction_style="endpoint")],
            traces_sample_rate=0.1,
            send_default_pii=False,
            before_send=scrub_analyzed_content,
        )
        logger.info("✅ Sentry initialized for error tracking (analyzed content scrubbed)")
    else:
        logger.info(f"ℹ️ Sentry disabled ({environment} mode or missing DSN)")


async def build_engine(settings: EngineSettings) -> ThreatDetectionEngine:
    """Validate settings, build the engine and restore persisted state"""
    problems = settings.validate()
    if problems:
        for problem in problems:
            logger.error(f"Invalid configuration: {problem}")
        raise ConfigurationError("Invalid engine configuration", problems)

    engine = ThreatDetectionEngine(settings, persistence=build_persistence(settings))
    if await engine.load_state():
        logger.info("✅ Engine state restored")
    return engine


def create_app(
    settings: Optional[EngineSettings] = None,
    engine: Optional[ThreatDetectionEngine] = None,
) -> FastAPI:
    """
    Build the API.

    A pre-built engine is attached immediately; otherwise one is built from
    settings (default: environment) when the app starts.
    """
    settings = engine.settings if engine is not None else (settings or EngineSettings.from_env())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Manage application lifecycle"""
        logger.info("🚀 Starting AiEDR...")
        init_sentry()

        if getattr(app.state, "engine", None) is None:
            app.state.engine = await build_engine(settings)
            app.state.monitor = HostMonitoringScheduler(
                app.state.engine,
                interval_minutes=settings.monitoring_interval_minutes,
            )

        monitor: HostMonitoringScheduler = app.state.monitor
        if settings.background_monitoring_enabled:
            try:
                monitor.start()
            except Exception as e:
                logger.warning(f"Failed to start host monitoring: {e}")

        logger.info(f"📡 API running on port {os.getenv('PORT', '8000')}")
        yield

        logger.info("👋 Shutting down AiEDR...")
        try:
            monitor.stop()
        except Exception as e:
            logger.warning(f"Failed to stop host monitoring: {e}")

        await app.state.engine.close()
        logger.info("✅ Engine state saved")

    app = FastAPI(
        title="AiEDR API",
        description="Threat detection and escalation engine for conversational AI",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan
    )

    if engine is not None:
        app.state.engine = engine
        app.state.monitor = HostMonitoringScheduler(engine, interval_minutes=settings.monitoring_interval_minutes)

    # Add rate limiter to app state
    app.state.limiter = security.limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=os.getenv("CORS_ORIGINS", "http://localhost:3000").split(","),
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "Accept", "X-Requested-With", "X-Request-ID"],
    )

    # Request logging middleware with tracing
    app.add_middleware(RequestLoggingMiddleware)

    @app.middleware("http")
    async def add_sentry_context(request: Request, call_next):
        """Tag Sentry events with the service name"""
        if sentry_sdk.get_client().is_active():
            sentry_sdk.set_tag("service", "aiedr")
        return await call_next(request)

    app.include_router(security.router)

    @app.get("/")
    async def root():
        """Root endpoint"""
        return {
            "name": "AiEDR API",
            "version": "1.0.0",
            "status": "running",
            "docs": "/docs"
        }

    @app.get("/health")
    async def health(request: Request):
        engine = getattr(request.app.state, "engine", None)
        return {
            "status": "healthy" if engine is not None else "starting",
            "threat_level": engine.current_threat_level().value if engine is not None else None,
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "aiedr.main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", "8000")),
        reload=True
    )
