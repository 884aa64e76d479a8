"""FastAPI control surface for the vault and the execution pipeline.

Every ``/api`` route requires a signed-in session. Secret values are accepted
for storage but never returned.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse
from passlib.context import CryptContext
from starlette.middleware.httpsredirect import HTTPSRedirectMiddleware
from starlette.middleware.sessions import SessionMiddleware

from .audit import AuditLogWriter, read_audit_entries
from .automation import Action, ExecutionStatus
from .configuration import FrameSyncConfig
from .errors import VaultKeyNotFoundError, VaultLockedError, VaultUnlockError
from .service import FrameSyncService

logger = logging.getLogger(__name__)

_password_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


class AuthManager:
    """Handle authentication for the control surface."""

    def __init__(
        self,
        secret_key: str,
        users: Mapping[str, str],
        session_cookie_name: str = "framesync_session",
        https_only: bool = True,
    ) -> None:
        if not secret_key:
            raise ValueError("Authentication requires a non-empty secret key.")
        if not users:
            raise ValueError("At least one user must be configured.")
        self.secret_key = secret_key
        self.users = dict(users)
        self.session_cookie_name = session_cookie_name
        self.https_only = https_only

    @staticmethod
    def hash_password(password: str) -> str:
        return _password_context.hash(password)

    def authenticate(self, username: str, password: str) -> bool:
        hashed = self.users.get(username)
        if not hashed:
            return False
        try:
            return _password_context.verify(password, hashed)
        except ValueError:
            logger.warning("Stored password hash for %s is not recognised", username)
            return False


def _parse_positive_int(value: Optional[str], name: str, *, maximum: Optional[int] = None) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        parsed = int(value)
    except (TypeError, ValueError) as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"{name} must be an integer",
        ) from exc
    if parsed <= 0:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"{name} must be greater than zero",
        )
    if maximum is not None and parsed > maximum:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"{name} cannot exceed {maximum}",
        )
    return parsed


async def _json_object(request: Request, *, required: bool = True) -> Dict[str, Any]:
    if not required and request.headers.get("content-length") in (None, "0"):
        return {}
    try:
        payload = await request.json()
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON payload") from exc
    if not isinstance(payload, Mapping):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Payload must be an object")
    return dict(payload)


def create_app(
    config: FrameSyncConfig,
    *,
    service: Optional[FrameSyncService] = None,
    auth_manager: Optional[AuthManager] = None,
) -> FastAPI:
    if service is None:
        service = FrameSyncService.from_config(config)
    if config.auth is None and auth_manager is None:
        raise ValueError("FrameSync configuration must include authentication details for the web API.")
    if auth_manager is None and config.auth is not None:
        auth_manager = AuthManager(
            config.auth.secret_key,
            config.auth.users,
            session_cookie_name=config.auth.session_cookie_name,
            https_only=config.auth.https_only,
        )
    assert auth_manager is not None

    app = FastAPI(title="FrameSync")
    app.state.service = service
    app.state.auth_manager = auth_manager
    app.state.audit_logger = service.audit

    if auth_manager.https_only:
        app.add_middleware(HTTPSRedirectMiddleware)

    app.add_middleware(
        SessionMiddleware,
        secret_key=auth_manager.secret_key,
        session_cookie=auth_manager.session_cookie_name,
        https_only=auth_manager.https_only,
        same_site="lax",
    )

    def emit_audit(request: Request, action: str, details: Mapping[str, Any]) -> None:
        audit_logger: Optional[AuditLogWriter] = request.app.state.audit_logger
        if audit_logger is None:
            return
        actor = request.session.get("user") or "anonymous"
        audit_logger.log(action=action, actor=str(actor), details=dict(details))

    def get_service(request: Request) -> FrameSyncService:
        return request.app.state.service

    def require_user(request: Request) -> str:
        user = request.session.get("user")
        if not user:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED)
        return str(user)

    @app.post("/login", response_class=JSONResponse)
    async def login(request: Request) -> JSONResponse:
        payload = await _json_object(request)
        username = str(payload.get("username") or "")
        password = str(payload.get("password") or "")
        if not auth_manager.authenticate(username, password):
            logger.warning("Failed login attempt", extra={"username": username})
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid username or password."
            )
        request.session["user"] = username
        emit_audit(request, "auth.login", {"username": username})
        return JSONResponse({"user": username})

    @app.post("/logout", response_class=JSONResponse)
    async def logout(request: Request) -> JSONResponse:
        request.session.pop("user", None)
        return JSONResponse({"user": None})

    @app.get("/health", response_class=JSONResponse)
    async def health(fs: FrameSyncService = Depends(get_service)) -> JSONResponse:
        return JSONResponse(fs.health())

    @app.get("/api/vault/status", response_class=JSONResponse)
    async def vault_status(
        fs: FrameSyncService = Depends(get_service),
        _: str = Depends(require_user),
    ) -> JSONResponse:
        payload: Dict[str, Any] = {"state": fs.vault.state.value}
        if fs.vault.is_unlocked():
            payload["entries"] = len(fs.vault.keys())
        return JSONResponse(payload)

    @app.post("/api/vault/unlock", response_class=JSONResponse)
    async def vault_unlock(
        request: Request,
        fs: FrameSyncService = Depends(get_service),
        _: str = Depends(require_user),
    ) -> JSONResponse:
        payload = await _json_object(request)
        password = payload.get("password")
        if not isinstance(password, str) or not password:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Password is required")
        try:
            await fs.vault.unlock(password)
        except VaultUnlockError as exc:
            emit_audit(request, "vault.unlock_failed", {})
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc)) from None
        emit_audit(request, "vault.unlock", {})
        return JSONResponse({"state": fs.vault.state.value})

    @app.post("/api/vault/lock", response_class=JSONResponse)
    async def vault_lock(
        request: Request,
        fs: FrameSyncService = Depends(get_service),
        _: str = Depends(require_user),
    ) -> JSONResponse:
        fs.vault.lock()
        emit_audit(request, "vault.lock", {})
        return JSONResponse({"state": fs.vault.state.value})

    @app.get("/api/vault/secrets", response_class=JSONResponse)
    async def vault_keys(
        fs: FrameSyncService = Depends(get_service),
        _: str = Depends(require_user),
    ) -> JSONResponse:
        try:
            keys = fs.vault.keys()
        except VaultLockedError as exc:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from None
        return JSONResponse({"keys": keys})

    @app.put("/api/vault/secrets/{key}", response_class=JSONResponse)
    async def vault_set(
        key: str,
        request: Request,
        fs: FrameSyncService = Depends(get_service),
        _: str = Depends(require_user),
    ) -> JSONResponse:
        payload = await _json_object(request)
        if "value" not in payload:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Secret 'value' is required")
        try:
            await fs.vault.set(key, payload["value"])
        except VaultLockedError as exc:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from None
        emit_audit(request, "vault.set", {"key": key})
        return JSONResponse({"key": key, "stored": True})

    @app.delete("/api/vault/secrets/{key}", response_class=JSONResponse)
    async def vault_remove(
        key: str,
        request: Request,
        fs: FrameSyncService = Depends(get_service),
        _: str = Depends(require_user),
    ) -> JSONResponse:
        try:
            await fs.vault.remove(key)
        except VaultLockedError as exc:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from None
        except VaultKeyNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from None
        emit_audit(request, "vault.remove", {"key": key})
        return JSONResponse({"key": key, "removed": True})

    @app.post("/api/events/{event_type}", response_class=JSONResponse)
    async def post_event(
        event_type: str,
        request: Request,
        fs: FrameSyncService = Depends(get_service),
        _: str = Depends(require_user),
    ) -> JSONResponse:
        if event_type not in fs.controller.dispatcher.registered_events():
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND, detail=f"Unsupported event type '{event_type}'"
            )
        payload = await _json_object(request, required=False)
        handled = await fs.handle_event(event_type, payload)
        return JSONResponse(
            {"event_type": event_type, "handlers": handled, "pending": len(fs.controller.dispatcher)}
        )

    @app.post("/api/actions", response_class=JSONResponse)
    async def submit_action(
        request: Request,
        fs: FrameSyncService = Depends(get_service),
        _: str = Depends(require_user),
    ) -> JSONResponse:
        payload = await _json_object(request)
        try:
            action = Action.from_mapping(payload)
        except TypeError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from None
        if not action.action_type:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="'action_type' is required")
        action_id = fs.controller.enqueue(action)
        return JSONResponse({"action_id": action_id}, status_code=status.HTTP_201_CREATED)

    @app.get("/api/actions/queue", response_class=JSONResponse)
    async def list_queue(
        fs: FrameSyncService = Depends(get_service),
        _: str = Depends(require_user),
    ) -> JSONResponse:
        in_flight = fs.controller.dispatcher.in_flight
        return JSONResponse(
            {
                "pending": [queued.to_payload() for queued in fs.controller.pending_actions()],
                "in_flight": in_flight.to_payload() if in_flight else None,
            }
        )

    @app.delete("/api/actions/queue", response_class=JSONResponse)
    async def clear_queue(
        fs: FrameSyncService = Depends(get_service),
        _: str = Depends(require_user),
    ) -> JSONResponse:
        return JSONResponse({"removed": fs.controller.clear_action_queue()})

    @app.delete("/api/actions/{action_id}", response_class=JSONResponse)
    async def cancel_action(
        action_id: str,
        fs: FrameSyncService = Depends(get_service),
        _: str = Depends(require_user),
    ) -> JSONResponse:
        in_flight = fs.controller.dispatcher.in_flight
        if in_flight is not None and in_flight.action_id == action_id:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT, detail="Action is already in flight and cannot be cancelled"
            )
        if not fs.controller.cancel(action_id):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Action is not pending")
        return JSONResponse({"action_id": action_id, "cancelled": True})

    @app.post("/api/actions/process", response_class=JSONResponse)
    async def process_actions(
        fs: FrameSyncService = Depends(get_service),
        _: str = Depends(require_user),
    ) -> JSONResponse:
        records = await fs.controller.process_queue()
        return JSONResponse({"records": [record.to_payload() for record in records]})

    @app.get("/api/history", response_class=JSONResponse)
    async def history(
        request: Request,
        fs: FrameSyncService = Depends(get_service),
        _: str = Depends(require_user),
    ) -> JSONResponse:
        params = request.query_params
        status_filter = params.get("status") or None
        if status_filter is not None and status_filter not in {item.value for item in ExecutionStatus}:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST, detail=f"Unsupported status '{status_filter}'"
            )
        records = fs.controller.get_execution_history(
            action_id=params.get("action_id") or None,
            rule_id=params.get("rule_id") or None,
            status=status_filter,
            limit=_parse_positive_int(params.get("limit"), "limit", maximum=5000),
        )
        return JSONResponse({"records": [record.to_payload() for record in records]})

    @app.post("/api/rules/evaluate", response_class=JSONResponse)
    async def evaluate_rules_now(
        fs: FrameSyncService = Depends(get_service),
        _: str = Depends(require_user),
    ) -> JSONResponse:
        action_ids = await fs.evaluate_now()
        return JSONResponse({"enqueued": action_ids})

    @app.get("/api/triggers", response_class=JSONResponse)
    async def triggers(
        request: Request,
        fs: FrameSyncService = Depends(get_service),
        _: str = Depends(require_user),
    ) -> JSONResponse:
        hours = _parse_positive_int(request.query_params.get("hours"), "hours", maximum=24 * 365) or 24
        records = fs.recent_triggers(hours)
        return JSONResponse({"hours": hours, "triggers": [record.to_payload() for record in records]})

    @app.get("/api/triggers/stats", response_class=JSONResponse)
    async def trigger_stats(
        fs: FrameSyncService = Depends(get_service),
        _: str = Depends(require_user),
    ) -> JSONResponse:
        return JSONResponse(fs.trigger_statistics())

    @app.get("/api/history/stats", response_class=JSONResponse)
    async def history_stats(
        fs: FrameSyncService = Depends(get_service),
        _: str = Depends(require_user),
    ) -> JSONResponse:
        log = fs.controller.execution_log
        payload = log.stats()
        payload["lifecycle_violations"] = log.find_lifecycle_violations()
        payload["metrics"] = fs.controller.metrics.to_payload()
        return JSONResponse(payload)

    @app.get("/api/audit", response_class=JSONResponse)
    async def audit_entries(
        request: Request,
        _: str = Depends(require_user),
    ) -> JSONResponse:
        audit_logger: Optional[AuditLogWriter] = request.app.state.audit_logger
        if audit_logger is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Audit logging is not enabled.")
        params = request.query_params
        action_filter = params.get("action") or None
        actor_filter = params.get("actor") or None
        limit_raw = params.get("limit")
        limit_value = _parse_positive_int(limit_raw, "limit", maximum=5000) if limit_raw is not None else 200
        entries = read_audit_entries(
            audit_logger.log_path,
            action=action_filter,
            actor=actor_filter,
            limit=limit_value,
        )
        return JSONResponse(
            {
                "entries": list(reversed(entries)),
                "filters": {"action": action_filter, "actor": actor_filter, "limit": limit_value},
            }
        )

    @app.on_event("startup")
    async def startup() -> None:
        service.start()

    @app.on_event("shutdown")
    async def shutdown() -> None:  # pragma: no cover - FastAPI lifecycle
        service.stop()

    return app


__all__ = ["AuthManager", "create_app"]
