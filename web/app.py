"""
FastAPI application for the viewing workflow API.

Production deployment configuration via environment variables.
"""

import logging
import os
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from core.workflow import (
    ActivityLog,
    ApprovalOrchestrator,
    ArtifactStorage,
    InMemoryNotificationBus,
    LoggingNotificationBus,
    NotificationBus,
    RecordCache,
    ViewingTokenRepository,
    WebhookNotificationBus,
    WorkflowRepository,
    first_available_agent,
    no_default_assignment,
)
from reporting.agreement_renderer import ReportLabAgreementRenderer
from utils.config import Config
from web.agreement_routes import router as agreement_router
from web.viewing_routes import public_router, router as viewing_router

logger = logging.getLogger(__name__)

# =============================================================================
# Environment Configuration
# =============================================================================

IS_PRODUCTION = os.getenv("PRODUCTION", "").lower() == "true"

ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS", "").split(",") if os.getenv("ALLOWED_ORIGINS") else []
if not ALLOWED_ORIGINS and not IS_PRODUCTION:
    # Development fallback only
    ALLOWED_ORIGINS = ["http://localhost:8000", "http://127.0.0.1:8000"]


def build_notification_bus(config: Config) -> NotificationBus:
    """Webhook delivery when configured, otherwise log only."""
    if config.notification_webhook_url:
        return WebhookNotificationBus(
            config.notification_webhook_url,
            timeout=config.notification_timeout,
        )
    if config.debug:
        return InMemoryNotificationBus()
    return LoggingNotificationBus()


def build_orchestrator(config: Config) -> ApprovalOrchestrator:
    """Wire the orchestrator and its collaborators from configuration."""
    return ApprovalOrchestrator(
        repository=WorkflowRepository(config.repository_path),
        tokens=ViewingTokenRepository(
            config.tokens_path,
            expiry_days=config.token_expiry_days,
            public_base_url=config.public_base_url,
        ),
        renderer=ReportLabAgreementRenderer(brokerage_name=config.brokerage_name),
        artifacts=ArtifactStorage(config.artifacts_dir),
        notifications=build_notification_bus(config),
        activity_log=ActivityLog(config.activity_log_path),
        cache=RecordCache(),
        assignment_policy=(
            first_available_agent(config.default_agent_ids)
            if config.default_agent_ids
            else no_default_assignment
        ),
    )


def create_app(
    orchestrator: Optional[ApprovalOrchestrator] = None,
    config: Optional[Config] = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    config = config or Config.load()
    app = FastAPI(
        title="Viewing Workflow",
        description="Agreement signatures and viewing request approvals",
        version="0.1.0",
        docs_url=None if IS_PRODUCTION else "/docs",
        redoc_url=None if IS_PRODUCTION else "/redoc",
        openapi_url=None if IS_PRODUCTION else "/openapi.json",
        debug=config.debug and not IS_PRODUCTION,
    )

    # Healthcheck endpoints: no dependencies, no IO
    @app.get("/", include_in_schema=False)
    def root():
        return {"status": "ok"}

    @app.get("/health", include_in_schema=False)
    def health():
        return {"status": "healthy"}

    if ALLOWED_ORIGINS:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=ALLOWED_ORIGINS,
            allow_credentials=True,
            allow_methods=["GET", "POST", "PUT"],
            allow_headers=["*"],
        )

    app.state.orchestrator = orchestrator or build_orchestrator(config)

    app.include_router(agreement_router)
    app.include_router(viewing_router)
    app.include_router(public_router)

    logger.info("Viewing workflow app created (data dir %s)", config.data_dir)
    return app


app = create_app()
