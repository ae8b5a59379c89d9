"""
Starlette application exposing the session lifecycle over HTTP.

One SessionManager lives on ``app.state.session_manager``. It is built from
CONFIG on startup (unless one is injected) and any persisted session is
restored before the first request.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from branchgate import __version__
from branchgate.config import CONFIG, Config
from branchgate.logger import get_logger
from branchgate.routes.session_routes import (
    create_session,
    get_current_session,
    get_reauth_status,
    get_timeout_warning,
    list_policies,
    reconcile_sessions,
    record_activity,
    record_transaction,
    refresh_session,
    terminate_session,
    validate_session,
)
from branchgate.session.manager import SessionManager

logger = get_logger(__name__)


async def health_check(request: Request) -> JSONResponse:
    """Basic health check endpoint."""
    manager = getattr(request.app.state, "session_manager", None)
    return JSONResponse(
        {
            "status": "healthy" if manager else "starting",
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "pendingReconciliation": len(manager.pending_reconciliation) if manager else 0,
        }
    )


def create_app(
    config: Optional[Config] = None, manager: Optional[SessionManager] = None
) -> Starlette:
    """Build the ASGI app. Pass ``manager`` to inject a pre-built SessionManager."""
    config = config or CONFIG

    @asynccontextmanager
    async def lifespan(app: Starlette):
        session_manager = manager or SessionManager.from_config(config)
        app.state.session_manager = session_manager
        logger.info("Application startup - session manager ready")

        restored = await session_manager.restore_session()
        if restored:
            logger.info(f"Resumed persisted session for {restored.access_method}")

        try:
            yield
        finally:
            session_manager.close()
            logger.info("Application shutdown - session timers cancelled")

    return Starlette(
        routes=[
            Route("/health", health_check, methods=["GET"]),
            Route("/policies", list_policies, methods=["GET"]),
            Route("/sessions", create_session, methods=["POST"]),
            Route("/sessions/current", get_current_session, methods=["GET"]),
            Route("/sessions/current", terminate_session, methods=["DELETE"]),
            Route("/sessions/validate", validate_session, methods=["POST"]),
            Route("/sessions/refresh", refresh_session, methods=["POST"]),
            Route("/sessions/activity", record_activity, methods=["POST"]),
            Route("/sessions/transactions", record_transaction, methods=["POST"]),
            Route("/sessions/reauth", get_reauth_status, methods=["GET"]),
            Route("/sessions/warning", get_timeout_warning, methods=["GET"]),
            Route("/sessions/reconcile", reconcile_sessions, methods=["POST"]),
        ],
        lifespan=lifespan,
    )


if __name__ == "__main__":
    import uvicorn
    from dotenv import load_dotenv

    from branchgate.logger import setup_logging

    if load_dotenv():
        CONFIG.reload()
    setup_logging(level=CONFIG.log_level, log_file=CONFIG.log_file)
    uvicorn.run(create_app(CONFIG), host=CONFIG.host, port=CONFIG.port)
