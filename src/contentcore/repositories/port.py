"""Persistence port: the narrow contract the entity services depend on.

The concrete relational backend stays behind ``EntityStore``. Failures leave
the port as ``PersistenceError`` subclasses and are translated into the
user-facing error taxonomy by ``contentcore.services.errors``.
"""

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Literal, Protocol, TypeVar, Union

from sqlalchemy.ext.asyncio import AsyncSession

if TYPE_CHECKING:
    from contentcore.repositories.predicates import Predicate

R = TypeVar("R")
ModelType = TypeVar("ModelType")

EntityId = Union[int, str]
SortOrder = Literal["ASC", "DESC"]

# A transaction handle is a session with an open transaction. Calls that
# receive one join that transaction instead of auto-committing.
TransactionHandle = AsyncSession


# ============================================================================
# PORT EXCEPTIONS
# ============================================================================


class PersistenceError(Exception):
    """Base exception for failures raised by an entity store.

    Attributes:
        entity_name: Entity type the failing operation targeted
    """

    def __init__(self, message: str, entity_name: str | None = None) -> None:
        super().__init__(message)
        self.entity_name = entity_name


class PersistenceConflict(PersistenceError):
    """A unique or foreign-key constraint rejected the write.

    Attributes:
        kind: "duplicate" for unique violations, "foreign_key" otherwise
    """

    def __init__(
        self,
        message: str,
        entity_name: str | None = None,
        kind: Literal["duplicate", "foreign_key"] = "duplicate",
    ) -> None:
        super().__init__(message, entity_name)
        self.kind = kind


class PersistenceUnavailable(PersistenceError):
    """The store could not be reached (connection refused, dropped, timed out)."""


class InvalidQueryError(ValueError):
    """A query referenced a field or shape the store cannot serve."""

    def __init__(self, field: str, reason: str) -> None:
        super().__init__(f"Invalid query on {field!r}: {reason}")
        self.field = field
        self.reason = reason


# ============================================================================
# OPTION OBJECTS
# ============================================================================


@dataclass(frozen=True)
class FindOptions:
    """Options for point lookups.

    Attributes:
        relations: Relationship names to eager-load
        select: Column names to load; the id is always included
        with_deleted: Include soft-deleted rows
    """

    relations: tuple[str, ...] = ()
    select: tuple[str, ...] = ()
    with_deleted: bool = False

    @property
    def is_default(self) -> bool:
        return not self.relations and not self.select and not self.with_deleted


@dataclass(frozen=True)
class FindAndCountOptions:
    """Options for windowed list queries.

    Attributes:
        where: Filter predicate (None for no filter)
        order: (column, "ASC"|"DESC") pairs, applied in sequence
        relations, select, with_deleted: As in FindOptions
        skip: Rows to skip (offset pagination)
        take: Maximum rows to return
        count: Run the total count query; cursor listings turn it off
    """

    where: "Predicate | None" = None
    order: tuple[tuple[str, SortOrder], ...] = ()
    relations: tuple[str, ...] = ()
    select: tuple[str, ...] = ()
    with_deleted: bool = False
    skip: int | None = None
    take: int | None = None
    count: bool = True


# ============================================================================
# PORT CONTRACT
# ============================================================================


class EntityStore(Protocol[ModelType]):
    """Contract for entity persistence.

    ``create`` builds a transient instance without I/O. Every other operation
    accepts an optional transaction handle; without one it runs in its own
    short transaction and commits on return.
    """

    entity_name: str
    model: type[ModelType]
    supports_soft_delete: bool

    def create(self, data: dict[str, Any]) -> ModelType:
        ...

    async def save(self, entity: ModelType, tx: TransactionHandle | None = None) -> ModelType:
        ...

    async def find_by_id(
        self,
        entity_id: EntityId,
        options: FindOptions | None = None,
        tx: TransactionHandle | None = None,
    ) -> ModelType | None:
        ...

    async def find_one(
        self,
        where: "Predicate",
        options: FindOptions | None = None,
        tx: TransactionHandle | None = None,
    ) -> ModelType | None:
        ...

    async def find_and_count(
        self,
        options: FindAndCountOptions,
        tx: TransactionHandle | None = None,
    ) -> tuple[list[ModelType], int]:
        ...

    async def update_by_id(
        self,
        entity_id: EntityId,
        patch: dict[str, Any],
        tx: TransactionHandle | None = None,
    ) -> int:
        ...

    async def delete_by_id(self, entity_id: EntityId, tx: TransactionHandle | None = None) -> int:
        ...

    async def soft_delete_by_id(self, entity_id: EntityId, tx: TransactionHandle | None = None) -> int:
        ...

    async def restore_by_id(self, entity_id: EntityId, tx: TransactionHandle | None = None) -> int:
        ...

    async def with_transaction(self, fn: Callable[[TransactionHandle], Awaitable[R]]) -> R:
        ...
