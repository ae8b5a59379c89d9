"""
Session lifecycle API routes.

Provides:
- POST   /sessions               create a session (only response carrying the token)
- GET    /sessions/current       current session, state and remaining time
- DELETE /sessions/current       terminate (?reason=manual|expired|inactive|transaction_complete)
- POST   /sessions/validate      validate current or {"sessionId": ...}
- POST   /sessions/refresh       extend the current session
- POST   /sessions/activity      record user activity
- POST   /sessions/transactions  count a completed transaction
- GET    /sessions/reauth        whether re-authentication is due
- GET    /sessions/warning       expiring-soon data for the current session
- POST   /sessions/reconcile      retry unconfirmed terminal writes
- GET    /policies               the loaded policy table
"""

from typing import Optional

from pydantic import ValidationError
from starlette.requests import Request
from starlette.responses import JSONResponse

from branchgate.errors import SessionError
from branchgate.logger import get_logger
from branchgate.session.manager import SessionManager
from branchgate.session.models import BranchContext, CamelModel, DeviceInfo

logger = get_logger(__name__)


class CreateSessionRequest(CamelModel):
    """POST /sessions request body."""

    branch_context: BranchContext
    device_info: Optional[DeviceInfo] = None
    user_id: Optional[str] = None
    ip_address: Optional[str] = None


class SessionIdRequest(CamelModel):
    """Optional body naming a session other than the current one."""

    session_id: Optional[str] = None


def _get_session_manager(request: Request) -> Optional[SessionManager]:
    """Get SessionManager from app state."""
    return getattr(request.app.state, "session_manager", None)


def _not_ready() -> JSONResponse:
    return JSONResponse({"error": "Session manager not initialized"}, status_code=503)


async def _optional_body(request: Request) -> SessionIdRequest:
    raw = await request.body()
    if not raw.strip():
        return SessionIdRequest()
    return SessionIdRequest.model_validate_json(raw)


def _current_payload(manager: SessionManager) -> dict:
    session = manager.get_current_session()
    state = manager.get_session_state()
    return {
        "session": session.public_dict() if session else None,
        "state": state.value if state else None,
        "remainingTime": manager.get_remaining_time(),
    }


async def create_session(request: Request) -> JSONResponse:
    """POST /sessions — open a session for a branch context."""
    manager = _get_session_manager(request)
    if not manager:
        return _not_ready()

    try:
        body = CreateSessionRequest.model_validate_json(await request.body())
    except ValidationError as e:
        return JSONResponse({"error": str(e)}, status_code=400)

    client_ip = body.ip_address or (request.client.host if request.client else None)

    try:
        session = await manager.create_session(
            branch_context=body.branch_context,
            device_info=body.device_info,
            user_id=body.user_id,
            ip_address=client_ip,
        )
    except SessionError as e:
        return JSONResponse(e.to_dict(), status_code=400)

    payload = session.public_dict()
    payload["sessionToken"] = session.session_token
    return JSONResponse({"session": payload}, status_code=201)


async def get_current_session(request: Request) -> JSONResponse:
    """GET /sessions/current"""
    manager = _get_session_manager(request)
    if not manager:
        return _not_ready()
    return JSONResponse(_current_payload(manager))


async def terminate_session(request: Request) -> JSONResponse:
    """DELETE /sessions/current — idempotent termination."""
    manager = _get_session_manager(request)
    if not manager:
        return _not_ready()

    reason = request.query_params.get("reason", "manual")
    try:
        await manager.terminate_session(reason=reason)
    except SessionError as e:
        status = 502 if e.message == "terminate_unconfirmed" else 400
        return JSONResponse(e.to_dict(), status_code=status)

    return JSONResponse({"terminated": True, **_current_payload(manager)})


async def validate_session(request: Request) -> JSONResponse:
    """POST /sessions/validate"""
    manager = _get_session_manager(request)
    if not manager:
        return _not_ready()

    try:
        body = await _optional_body(request)
    except ValidationError as e:
        return JSONResponse({"error": str(e)}, status_code=400)

    valid = await manager.validate_session(body.session_id)
    return JSONResponse({"valid": valid, **_current_payload(manager)})


async def refresh_session(request: Request) -> JSONResponse:
    """POST /sessions/refresh"""
    manager = _get_session_manager(request)
    if not manager:
        return _not_ready()

    try:
        body = await _optional_body(request)
    except ValidationError as e:
        return JSONResponse({"error": str(e)}, status_code=400)

    try:
        session = await manager.refresh_session(body.session_id)
    except SessionError as e:
        status = 409 if e.message == "invalid_or_expired" else 502
        return JSONResponse(e.to_dict(), status_code=status)

    return JSONResponse({"session": session.public_dict()})


async def record_activity(request: Request) -> JSONResponse:
    """POST /sessions/activity"""
    manager = _get_session_manager(request)
    if not manager:
        return _not_ready()

    await manager.update_activity()
    return JSONResponse(_current_payload(manager))


async def record_transaction(request: Request) -> JSONResponse:
    """POST /sessions/transactions — may end single-use sessions."""
    manager = _get_session_manager(request)
    if not manager:
        return _not_ready()

    before = manager.get_current_session()
    try:
        await manager.increment_transaction_count()
    except SessionError as e:
        return JSONResponse(e.to_dict(), status_code=502)

    after = manager.get_current_session()
    return JSONResponse(
        {
            "transactionCount": after.transaction_count if after else None,
            "terminated": before is not None and after is None,
            **_current_payload(manager),
        }
    )


async def get_reauth_status(request: Request) -> JSONResponse:
    """GET /sessions/reauth"""
    manager = _get_session_manager(request)
    if not manager:
        return _not_ready()
    return JSONResponse({"requiresReauth": manager.requires_reauth()})


async def get_timeout_warning(request: Request) -> JSONResponse:
    """GET /sessions/warning"""
    manager = _get_session_manager(request)
    if not manager:
        return _not_ready()

    warning = manager.get_timeout_warning()
    if warning is None:
        return JSONResponse({"error": "No current session"}, status_code=404)
    return JSONResponse(warning.model_dump(mode="json", by_alias=True))


async def list_policies(request: Request) -> JSONResponse:
    """GET /policies"""
    manager = _get_session_manager(request)
    if not manager:
        return _not_ready()
    return JSONResponse({"policies": manager.registry.to_dict()})


async def reconcile_sessions(request: Request) -> JSONResponse:
    """POST /sessions/reconcile — retry terminal writes that were not confirmed."""
    manager = _get_session_manager(request)
    if not manager:
        return _not_ready()

    remaining = await manager.reconcile()
    return JSONResponse(
        {"pending": remaining, "sessionIds": manager.pending_reconciliation}
    )
