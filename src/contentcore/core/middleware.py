"""Request context middleware: request IDs, locale selection and request spans."""
import re
import time
import uuid
from collections.abc import Awaitable, Callable
from contextvars import ContextVar

import structlog
from fastapi import Request, Response
from opentelemetry.trace.status import Status, StatusCode
from starlette.middleware.base import BaseHTTPMiddleware

from contentcore.core.config import settings
from contentcore.core.i18n import DEFAULT_MESSAGES, MessageCatalog
from contentcore.core.logging import get_logger
from contentcore.core.tracing import create_span, get_tracer

REQUEST_ID_HEADER = "X-Request-ID"

# Inbound IDs are echoed into headers and logs, so only safe tokens are kept
_VALID_REQUEST_ID = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")

request_id_var: ContextVar[str] = ContextVar("request_id", default="")

logger = get_logger(__name__)
tracer = get_tracer(__name__)

_catalog = MessageCatalog()


def resolve_request_id(request: Request) -> str:
    """Inbound ``X-Request-ID`` when it is well-formed, otherwise a new UUID4."""
    inbound = request.headers.get(REQUEST_ID_HEADER, "")
    if _VALID_REQUEST_ID.match(inbound):
        return inbound
    return str(uuid.uuid4())


def resolve_locale(request: Request) -> str:
    """First supported language of ``Accept-Language``, else the default locale."""
    header = request.headers.get("accept-language", "")
    for part in header.split(","):
        language = part.split(";", 1)[0].strip().lower()
        for candidate in (language, language.split("-", 1)[0]):
            if candidate in DEFAULT_MESSAGES:
                return candidate
    return settings.default_locale


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Attach a request ID and a localizer to every request.

    - Reuses a well-formed inbound ``X-Request-ID`` or generates one
    - Echoes it on the response and binds it to the structlog context
    - Stores a ``MessageCatalog`` for the negotiated locale on
      ``request.state.localizer`` for the error handlers
    - Wraps the request in an OpenTelemetry span when tracing is enabled
    """

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        request_id = resolve_request_id(request)
        locale = resolve_locale(request)

        request_id_var.set(request_id)
        request.state.request_id = request_id
        request.state.localizer = _catalog.for_locale(locale)
        structlog.contextvars.bind_contextvars(request_id=request_id)

        with create_span(
            tracer,
            f"{request.method} {request.url.path}",
            **{
                "http.method": request.method,
                "http.route": request.url.path,
                "request.id": request_id,
                "request.locale": locale,
            }
        ) as span:
            start_time = time.time()
            logger.debug("Request started", method=request.method, path=request.url.path, locale=locale)

            try:
                response = await call_next(request)
                response.headers[REQUEST_ID_HEADER] = request_id

                duration_ms = round((time.time() - start_time) * 1000, 2)
                span.set_attribute("http.status_code", response.status_code)
                span.set_attribute("request.duration_ms", duration_ms)
                if response.status_code >= 500:
                    span.set_status(Status(StatusCode.ERROR, f"HTTP {response.status_code}"))
                else:
                    span.set_status(Status(StatusCode.OK))

                logger.info(
                    "Request completed",
                    method=request.method,
                    path=request.url.path,
                    status_code=response.status_code,
                    duration_ms=duration_ms,
                )
                return response

            except Exception as exc:
                duration_ms = round((time.time() - start_time) * 1000, 2)
                span.record_exception(exc)
                span.set_status(Status(StatusCode.ERROR, type(exc).__name__))
                logger.error(
                    "Request failed",
                    error_type=type(exc).__name__,
                    duration_ms=duration_ms,
                    exc_info=True,
                )
                raise

            finally:
                structlog.contextvars.clear_contextvars()


def get_request_id() -> str:
    """The current request ID, or an empty string outside a request."""
    return request_id_var.get("")
