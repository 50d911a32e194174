"""Exception handlers mapping the commerce error taxonomy to HTTP responses.

Every error body is `{"message": ...}`. Starlette picks the handler of the
most specific registered class, so the taxonomy below overrides Protean's
generic handlers for the same hierarchy.
"""

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from protean.exceptions import ExpectedVersionError, ObjectNotFoundError, ValidationError
from protean.integrations.fastapi import register_exception_handlers

from commerce.errors import (
    ConcurrencyConflict,
    ExternalGatewayError,
    InsufficientResource,
    InvalidStateTransition,
    PaymentVerificationFailed,
)

logger = structlog.get_logger(__name__)

_STATUS_CODES = [
    (ValidationError, 400),
    (InsufficientResource, 400),
    (InvalidStateTransition, 400),
    (PaymentVerificationFailed, 400),
    (ObjectNotFoundError, 404),
    (ConcurrencyConflict, 409),
    (ExpectedVersionError, 409),
    (ExternalGatewayError, 502),
]


def error_message(exc: Exception) -> str:
    message = getattr(exc, "message", None)
    if isinstance(message, str) and message:
        return message

    messages = getattr(exc, "messages", None)
    if isinstance(messages, dict) and messages:
        parts = []
        for field, errors in messages.items():
            for error in errors if isinstance(errors, list | tuple) else [errors]:
                parts.append(f"{field}: {error}" if field not in ("_entity", "_message") else str(error))
        return "; ".join(parts)
    return str(exc) or type(exc).__name__


def _handler(status_code: int):
    async def handle(request: Request, exc: Exception) -> JSONResponse:
        if status_code >= 500:
            logger.error("Upstream failure", path=request.url.path, error=error_message(exc))
        return JSONResponse(status_code=status_code, content={"message": error_message(exc)})

    return handle


def register_error_handlers(app: FastAPI) -> None:
    register_exception_handlers(app)
    for exc_class, status_code in _STATUS_CODES:
        app.add_exception_handler(exc_class, _handler(status_code))
