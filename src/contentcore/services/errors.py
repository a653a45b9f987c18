"""Error taxonomy of the entity access layer and the persistence translator.

Every error carries a localization key and structured arguments. Rendering
the message text is left to the boundary, which owns the localizer.
"""

from typing import Any, Mapping

from contentcore.core.logging import get_logger
from contentcore.repositories.cursor import InvalidCursorError
from contentcore.repositories.port import (
    EntityId,
    InvalidQueryError,
    PersistenceConflict,
    PersistenceError,
)

logger = get_logger(__name__)

NOT_FOUND = "common.NOT_FOUND"
DUPLICATE = "common.DUPLICATE"
FK_CONSTRAINT = "common.FK_CONSTRAINT"
VALIDATION_ERROR = "common.VALIDATION_ERROR"
INTERNAL_SERVER_ERROR = "common.INTERNAL_SERVER_ERROR"


# ============================================================================
# ERROR TAXONOMY
# ============================================================================


class EntityAccessError(Exception):
    """Base exception for all entity access failures.

    Attributes:
        message_key: Localization key for the boundary to render
        message_args: Structured arguments for the message template
        status_code: HTTP status the boundary responds with

    Example:
        try:
            article = await articles.find_by_id(article_id)
        except EntityAccessError as e:
            return JSONResponse(status_code=e.status_code, content={"messageKey": e.message_key})
    """

    status_code = 500
    default_key = INTERNAL_SERVER_ERROR

    def __init__(self, message_key: str | None = None, args: Mapping[str, Any] | None = None) -> None:
        self.message_key = message_key or self.default_key
        self.message_args: dict[str, Any] = dict(args or {})
        super().__init__(self.message_key)


class NotFoundError(EntityAccessError):
    """The entity does not exist or is hidden by the soft-delete filter."""

    status_code = 404
    default_key = NOT_FOUND

    def __init__(self, entity: str, entity_id: EntityId | None = None) -> None:
        super().__init__(args={"entity": entity, "id": entity_id})


class ConflictError(EntityAccessError):
    """A write collided with existing data (unique or foreign-key constraint)."""

    status_code = 409
    default_key = DUPLICATE

    def __init__(
        self,
        entity: str,
        message_key: str = DUPLICATE,
        field: str | None = None,
    ) -> None:
        args: dict[str, Any] = {"entity": entity}
        if field is not None:
            args["field"] = field
        super().__init__(message_key, args)


class ValidationError(EntityAccessError):
    """Caller input was rejected before or instead of running a query."""

    status_code = 400
    default_key = VALIDATION_ERROR

    def __init__(self, field: str, reason: str, entity: str | None = None) -> None:
        args: dict[str, Any] = {"field": field, "reason": reason}
        if entity is not None:
            args["entity"] = entity
        super().__init__(args=args)


class InternalError(EntityAccessError):
    """Unexpected store failure. Carries no detail about the cause."""

    status_code = 500
    default_key = INTERNAL_SERVER_ERROR

    def __init__(self) -> None:
        super().__init__()


# ============================================================================
# TRANSLATION
# ============================================================================


def translate_persistence_error(
    exc: Exception,
    entity_name: str,
    entity_id: EntityId | None = None,
) -> EntityAccessError:
    """Map a store-level failure to the taxonomy.

    Errors already in the taxonomy pass through unchanged. Raw store text is
    never copied into the result.
    """
    if isinstance(exc, EntityAccessError):
        return exc
    if isinstance(exc, PersistenceConflict):
        key = FK_CONSTRAINT if exc.kind == "foreign_key" else DUPLICATE
        return ConflictError(entity_name, key)
    if isinstance(exc, InvalidCursorError):
        return ValidationError("cursor", "invalid-signature", entity_name)
    if isinstance(exc, InvalidQueryError):
        return ValidationError(exc.field, exc.reason, entity_name)
    if isinstance(exc, PersistenceError):
        logger.error(
            "Persistence failure translated to internal error",
            entity=entity_name,
            entity_id=entity_id,
            error_type=type(exc).__name__,
        )
        return InternalError()

    logger.error(
        "Unexpected failure during entity access",
        entity=entity_name,
        entity_id=entity_id,
        error_type=type(exc).__name__,
        exc_info=exc,
    )
    return InternalError()
