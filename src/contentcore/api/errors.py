"""Render entity access errors as localized JSON responses."""
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from contentcore.core.i18n import Localizer, MessageCatalog
from contentcore.core.logging import get_logger
from contentcore.repositories.port import PersistenceError
from contentcore.services.errors import (
    INTERNAL_SERVER_ERROR,
    EntityAccessError,
    InternalError,
    translate_persistence_error,
)

logger = get_logger(__name__)

_fallback_localizer = MessageCatalog()


def _localizer_for(request: Request) -> Localizer:
    return getattr(request.state, "localizer", None) or _fallback_localizer


def error_body(error: EntityAccessError, localizer: Localizer) -> dict[str, Any]:
    """Response body for ``error``. Internal errors expose no arguments."""
    if isinstance(error, InternalError) or error.message_key == INTERNAL_SERVER_ERROR:
        return {
            "message": localizer.translate(INTERNAL_SERVER_ERROR),
            "messageKey": INTERNAL_SERVER_ERROR,
            "args": {},
        }
    return {
        "message": localizer.translate(error.message_key, error.message_args),
        "messageKey": error.message_key,
        "args": error.message_args,
    }


async def entity_access_error_handler(request: Request, exc: EntityAccessError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("Request failed with internal error", path=request.url.path)
    return JSONResponse(status_code=exc.status_code, content=error_body(exc, _localizer_for(request)))


async def persistence_error_handler(request: Request, exc: PersistenceError) -> JSONResponse:
    """Store errors that escaped a service are translated here as a last resort."""
    translated = translate_persistence_error(exc, exc.entity_name or "Entity")
    return JSONResponse(
        status_code=translated.status_code,
        content=error_body(translated, _localizer_for(request)),
    )


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(EntityAccessError, entity_access_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(PersistenceError, persistence_error_handler)  # type: ignore[arg-type]
