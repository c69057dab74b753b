"""
GoalSync - Exception Handlers

Renders every GoalSyncError as ``{"detail": message, "error_code": code}``
with the status the error class declares.
"""

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from goalsync.errors import GoalSyncError
from goalsync.logging import get_logger


logger = get_logger(__name__)


def register_exception_handlers(app: FastAPI) -> None:
    """Install the handler for domain errors."""

    @app.exception_handler(GoalSyncError)
    async def handle_goalsync_error(request: Request, exc: GoalSyncError):
        # 4xx as warning, 5xx as error
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "request_failed",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
        )

        headers = {"WWW-Authenticate": "Bearer"} if exc.status_code == 401 else None
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.message, "error_code": exc.error_code},
            headers=headers,
        )
