from __future__ import annotations

from datetime import datetime, timezone

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from ticketcore.core.actor import actor_context
from ticketcore.core.config import get_settings
from ticketcore.core.database import db
from ticketcore.core.errors import (
    ActorContextMissingError,
    ActorValidationError,
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    PermissionDeniedError,
    StorageError,
    TicketCoreError,
    TransactionTimeoutError,
    ValidationError,
)
from ticketcore.core.logging import configure_logging, log_error, log_info
from ticketcore.services import permissions as permission_service
from ticketcore.services.redis import close_redis_client
from ticketcore.services.scheduler import AutoCloseScheduler

settings = get_settings()

app = FastAPI(title=settings.app_name)

scheduler = AutoCloseScheduler()

# Most specific first; the handler walks this list with isinstance.
_STATUS_BY_ERROR: tuple[tuple[type[TicketCoreError], int], ...] = (
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (PermissionDeniedError, status.HTTP_403_FORBIDDEN),
    (ConflictError, status.HTTP_409_CONFLICT),
    (InvalidTransitionError, status.HTTP_409_CONFLICT),
    (ValidationError, 422),
    (ActorContextMissingError, status.HTTP_401_UNAUTHORIZED),
    (ActorValidationError, status.HTTP_400_BAD_REQUEST),
    (TransactionTimeoutError, status.HTTP_504_GATEWAY_TIMEOUT),
    (StorageError, status.HTTP_503_SERVICE_UNAVAILABLE),
)


def status_for_error(exc: TicketCoreError) -> int:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


@app.exception_handler(TicketCoreError)
async def ticketcore_error_handler(request: Request, exc: TicketCoreError) -> JSONResponse:
    status_code = status_for_error(exc)
    body: dict[str, object] = {"error": exc.code, "detail": exc.message}
    if isinstance(exc, PermissionDeniedError):
        body["permissions"] = exc.permission_names
    elif isinstance(exc, ValidationError) and exc.errors:
        body["errors"] = exc.errors
    elif isinstance(exc, InvalidTransitionError) and exc.current_status:
        body["current_status"] = exc.current_status
    if status_code >= 500:
        log_error("Request failed", path=request.url.path, code=exc.code)
    return JSONResponse(status_code=status_code, content=body)


@app.on_event("startup")
async def on_startup() -> None:
    configure_logging()
    await db.connect()
    await db.run_migrations()
    permission_service.get_resolver()
    await scheduler.start()
    log_info("Application started", environment=settings.environment)


@app.on_event("shutdown")
async def on_shutdown() -> None:
    await scheduler.stop()
    await close_redis_client()
    await db.disconnect()
    actor_context.install_resolver(None)
    log_info("Application shutdown")


@app.get("/health")
async def health_check():
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "database": "connected" if db.is_connected() else "disconnected",
        "scheduler": "running" if scheduler.started else "stopped",
    }
