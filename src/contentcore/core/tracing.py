"""OpenTelemetry configuration and span decorators for the data access layer."""
import functools
import os
from typing import Any, Callable, TypeVar

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace.status import Status, StatusCode

from contentcore.core.config import settings

F = TypeVar("F", bound=Callable[..., Any])


def is_tracing_enabled() -> bool:
    """Check if tracing should be enabled.

    Tracing is disabled during tests and when explicitly disabled in config.
    """
    if "pytest" in os.environ.get("_", "") or os.environ.get("PYTEST_CURRENT_TEST"):
        return False

    return settings.otel_enabled


def configure_tracing() -> None:
    """Configure OpenTelemetry tracing if enabled."""
    if not is_tracing_enabled():
        return

    resource = Resource.create({
        "service.name": settings.otel_service_name,
        "service.version": "0.1.0",
        "deployment.environment": settings.environment,
        "service.namespace": "contentcore",
    })

    tracer_provider = TracerProvider(resource=resource)
    otlp_exporter = OTLPSpanExporter(
        endpoint=settings.otel_exporter_otlp_endpoint,
        insecure=not settings.is_production,
    )
    tracer_provider.add_span_processor(BatchSpanProcessor(otlp_exporter))
    trace.set_tracer_provider(tracer_provider)


def get_tracer(name: str) -> trace.Tracer:
    """Get a tracer instance for the given module name."""
    return trace.get_tracer(name)


def instrument_fastapi_app(app: Any) -> None:
    """Instrument FastAPI app with OpenTelemetry if tracing is enabled."""
    if not is_tracing_enabled():
        return

    FastAPIInstrumentor.instrument_app(app)


def create_span(tracer: trace.Tracer, name: str, **attributes: Any) -> Any:
    """Create a span if tracing is enabled, otherwise return a no-op context manager."""
    if not is_tracing_enabled():
        return _NoOpSpan()

    span = tracer.start_as_current_span(name)
    return _AttributedSpan(span, attributes)


def trace_async(
    span_name: str | None = None,
    tracer_name: str | None = None,
    entity_attribute: str | None = None,
    **span_attributes: Any,
) -> Callable[[F], F]:
    """Decorator to trace async functions and methods with OpenTelemetry spans.

    Args:
        span_name: Custom span name. If None, uses module.function_name
        tracer_name: Custom tracer name. If None, uses function's module
        entity_attribute: Name of an attribute on the bound instance (first
            positional argument) whose value is recorded as ``entity.name``
        **span_attributes: Additional span attributes to set

    Example:
        @trace_async("store.find_by_id", entity_attribute="entity_name")
        async def find_by_id(self, entity_id): ...
    """
    def decorator(func: F) -> F:
        if not is_tracing_enabled():
            return func

        @functools.wraps(func)
        async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
            tracer = get_tracer(tracer_name or func.__module__)
            name = span_name or f"{func.__module__}.{func.__name__}"

            with tracer.start_as_current_span(name) as span:
                for key, value in span_attributes.items():
                    if value is not None:
                        span.set_attribute(key, str(value))
                if entity_attribute and args:
                    entity = getattr(args[0], entity_attribute, None)
                    if entity is not None:
                        span.set_attribute("entity.name", str(entity))

                try:
                    result = await func(*args, **kwargs)
                    span.set_status(Status(StatusCode.OK))
                    return result
                except Exception as exc:
                    span.record_exception(exc)
                    span.set_status(Status(StatusCode.ERROR, type(exc).__name__))
                    raise

        return async_wrapper  # type: ignore
    return decorator


def trace_database(operation: str | None = None) -> Callable[[F], F]:
    """Specialized decorator for entity store operations.

    Example:
        @trace_database()
        async def find_and_count(self, options): ...
    """
    def decorator(func: F) -> F:
        op_name = operation or func.__name__
        return trace_async(
            span_name=f"db.{op_name}",
            entity_attribute="entity_name",
            **{
                "db.operation": op_name,
                "db.system": settings.database_dialect,
                "component": "database",
            },
        )(func)
    return decorator


def trace_cache(operation: str | None = None) -> Callable[[F], F]:
    """Specialized decorator for cache operations.

    Example:
        @trace_cache()
        async def delete_keys_by_pattern(self, pattern): ...
    """
    def decorator(func: F) -> F:
        op_name = operation or func.__name__
        return trace_async(
            span_name=f"cache.{op_name}",
            **{
                "cache.operation": op_name,
                "cache.system": "redis",
                "component": "cache",
            },
        )(func)
    return decorator


class _AttributedSpan:
    """Wraps a span context manager and applies attributes on entry."""

    def __init__(self, span_cm: Any, attributes: dict[str, Any]) -> None:
        self._span_cm = span_cm
        self._attributes = attributes

    def __enter__(self) -> Any:
        span = self._span_cm.__enter__()
        for key, value in self._attributes.items():
            if value is not None:
                span.set_attribute(key, str(value))
        return span

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> Any:
        return self._span_cm.__exit__(exc_type, exc_val, exc_tb)


class _NoOpSpan:
    """No-op span for when tracing is disabled."""

    def __enter__(self) -> "_NoOpSpan":
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        pass

    def set_attribute(self, key: str, value: Any) -> None:
        pass

    def set_status(self, status: Any) -> None:
        pass

    def record_exception(self, exception: Exception) -> None:
        pass
