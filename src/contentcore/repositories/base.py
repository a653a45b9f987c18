"""SQLAlchemy implementation of the entity store port.

``SQLAlchemyEntityStore`` provides the persistence operations every entity
service is built on, for any mapped model with an ``id`` primary key.

Key Concepts:
- SESSION PER CALL: without a transaction handle each operation opens its own
  session from the factory and commits on return
- TRANSACTION HANDLES: passing ``tx`` joins an open transaction; flush only,
  the owner of the transaction commits
- SOFT DELETE: declared once with ``soft_delete=True``; the model must map a
  ``deleted_at`` column. Undeclared types hard-delete on soft delete and
  treat restore as a no-op
- TYPED FAILURES: constraint violations become ``PersistenceConflict``,
  connectivity problems ``PersistenceUnavailable``
- TRACING: @trace_database decorators integrate with OpenTelemetry

Usage Example:
    from contentcore.core.database import async_session_maker
    from contentcore.models import Article

    store = SQLAlchemyEntityStore(async_session_maker, Article, soft_delete=True)
    article = await store.save(store.create({"title": "Hello", "slug": "hello"}))
    rows, total = await store.find_and_count(FindAndCountOptions(take=10))
    await store.soft_delete_by_id(article.id)
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Generic, TypeVar

from sqlalchemy import delete, func, inspect, select, update
from sqlalchemy.exc import (
    DBAPIError,
    IntegrityError,
    InterfaceError,
    OperationalError,
    SQLAlchemyError,
)
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase, load_only, selectinload

from contentcore.core.logging import get_logger
from contentcore.core.tracing import trace_database
from contentcore.repositories.port import (
    EntityId,
    FindAndCountOptions,
    FindOptions,
    InvalidQueryError,
    PersistenceConflict,
    PersistenceError,
    PersistenceUnavailable,
    TransactionHandle,
)
from contentcore.repositories.predicates import Predicate, compile_predicate

ModelType = TypeVar("ModelType", bound=DeclarativeBase)
R = TypeVar("R")

logger = get_logger(__name__)

# SQLSTATE codes reported by PostgreSQL drivers
UNIQUE_VIOLATION = "23505"
FOREIGN_KEY_VIOLATION = "23503"


class SQLAlchemyEntityStore(Generic[ModelType]):
    """Entity store backed by an async SQLAlchemy session factory.

    Args:
        session_factory: Factory used for calls made without a transaction
        model: Mapped model class (e.g. Article, Tag)
        soft_delete: Whether the model supports soft delete
        entity_name: Name used in logs and errors (defaults to the class name)

    Raises:
        ValueError: If ``soft_delete`` is declared for a model without a
            ``deleted_at`` column
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        model: type[ModelType],
        *,
        soft_delete: bool = False,
        entity_name: str | None = None,
    ) -> None:
        mapper = inspect(model)
        self._column_names = frozenset(mapper.columns.keys())
        self._relationship_names = frozenset(mapper.relationships.keys())

        if "id" not in self._column_names:
            raise ValueError(f"{model.__name__} must map an 'id' column")
        if soft_delete and "deleted_at" not in self._column_names:
            raise ValueError(
                f"{model.__name__} is declared soft-deletable but maps no 'deleted_at' column"
            )

        self._session_factory = session_factory
        self.model = model
        self.entity_name = entity_name or model.__name__
        self.supports_soft_delete = soft_delete
        self._logger = get_logger(f"{__name__}.{self.entity_name}Store")

    @property
    def column_names(self) -> frozenset[str]:
        return self._column_names

    @property
    def relationship_names(self) -> frozenset[str]:
        return self._relationship_names

    # ========================================================================
    # SESSION AND FAILURE HANDLING
    # ========================================================================

    @asynccontextmanager
    async def _session(self, tx: TransactionHandle | None) -> AsyncIterator[AsyncSession]:
        if tx is not None:
            yield tx
            return
        async with self._session_factory() as session:
            async with session.begin():
                yield session

    def _failure(self, error: Exception, operation: str, **fields: Any) -> PersistenceError:
        """Classify a driver failure into a typed persistence error and log it once."""
        orig = getattr(error, "orig", None)
        detail = str(orig if orig is not None else error)
        code = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
        lowered = detail.lower()

        self._logger.error(
            f"Failed to {operation} entity",
            model=self.entity_name,
            error_type=type(error).__name__,
            error=detail,
            **fields,
        )

        message = f"Failed to {operation} {self.entity_name}"
        if isinstance(error, IntegrityError):
            if code == FOREIGN_KEY_VIOLATION or "foreign key" in lowered:
                return PersistenceConflict(message, self.entity_name, kind="foreign_key")
            if code == UNIQUE_VIOLATION or "unique" in lowered or "duplicate" in lowered:
                return PersistenceConflict(message, self.entity_name, kind="duplicate")
            return PersistenceError(message, self.entity_name)
        if isinstance(error, (OperationalError, InterfaceError, OSError)) or (
            isinstance(error, DBAPIError) and error.connection_invalidated
        ):
            return PersistenceUnavailable(message, self.entity_name)
        return PersistenceError(message, self.entity_name)

    def _check_fields(self, names: Any, reason: str = "unknown-field") -> None:
        for name in names:
            if name not in self._column_names:
                raise InvalidQueryError(name, reason)

    def _load_options(self, relations: tuple[str, ...], select_fields: tuple[str, ...]) -> list[Any]:
        options: list[Any] = []
        for name in relations:
            if name not in self._relationship_names:
                raise InvalidQueryError(name, "unknown-relation")
            options.append(selectinload(getattr(self.model, name)))
        if select_fields:
            self._check_fields(select_fields)
            columns = {"id", *select_fields}
            options.append(load_only(*(getattr(self.model, name) for name in sorted(columns))))
        return options

    def _visibility(self, with_deleted: bool) -> list[Any]:
        if self.supports_soft_delete and not with_deleted:
            return [getattr(self.model, "deleted_at").is_(None)]
        return []

    # ========================================================================
    # CREATE / SAVE
    # ========================================================================

    def create(self, data: dict[str, Any]) -> ModelType:
        """Build a transient instance from ``data`` without touching the database.

        Raises:
            InvalidQueryError: If ``data`` names an attribute the model does not map
        """
        for name in data:
            if name not in self._column_names and name not in self._relationship_names:
                raise InvalidQueryError(name, "unknown-field")
        return self.model(**data)

    @trace_database()
    async def save(self, entity: ModelType, tx: TransactionHandle | None = None) -> ModelType:
        """Persist ``entity`` and return it with generated fields populated.

        Raises:
            PersistenceConflict: If a unique or foreign-key constraint rejects it
            PersistenceError: For other database errors
        """
        try:
            async with self._session(tx) as session:
                session.add(entity)
                await session.flush()
                await session.refresh(entity)

            self._logger.info(
                "Entity saved",
                model=self.entity_name,
                entity_id=getattr(entity, "id", None),
                in_transaction=tx is not None,
            )
            return entity
        except (SQLAlchemyError, OSError) as e:
            raise self._failure(e, "save") from e

    # ========================================================================
    # READ OPERATIONS
    # ========================================================================

    @trace_database()
    async def find_by_id(
        self,
        entity_id: EntityId,
        options: FindOptions | None = None,
        tx: TransactionHandle | None = None,
    ) -> ModelType | None:
        """Get an entity by primary key, or None.

        Soft-deleted rows are excluded unless ``options.with_deleted`` is set.
        """
        options = options or FindOptions()
        query = (
            select(self.model)
            .where(getattr(self.model, "id") == entity_id, *self._visibility(options.with_deleted))
            .options(*self._load_options(options.relations, options.select))
            .execution_options(populate_existing=True)
        )
        try:
            async with self._session(tx) as session:
                entity = (await session.execute(query)).scalar_one_or_none()

            self._logger.debug(
                "Entity lookup by id",
                model=self.entity_name,
                entity_id=entity_id,
                found=entity is not None,
            )
            return entity
        except (SQLAlchemyError, OSError) as e:
            raise self._failure(e, "get", entity_id=entity_id) from e

    @trace_database()
    async def find_one(
        self,
        where: Predicate,
        options: FindOptions | None = None,
        tx: TransactionHandle | None = None,
    ) -> ModelType | None:
        """Return the first entity matching ``where``, or None."""
        options = options or FindOptions()
        query = (
            select(self.model)
            .where(compile_predicate(self.model, where), *self._visibility(options.with_deleted))
            .options(*self._load_options(options.relations, options.select))
            .order_by(getattr(self.model, "id"))
            .limit(1)
        )
        try:
            async with self._session(tx) as session:
                return (await session.execute(query)).scalars().first()
        except (SQLAlchemyError, OSError) as e:
            raise self._failure(e, "find") from e

    @trace_database()
    async def find_and_count(
        self,
        options: FindAndCountOptions,
        tx: TransactionHandle | None = None,
    ) -> tuple[list[ModelType], int]:
        """Run a windowed list query.

        Returns:
            (rows, total) where total counts every row matching the filter,
            ignoring skip/take. With ``options.count`` off, total is len(rows).
        """
        conditions = list(self._visibility(options.with_deleted))
        if options.where is not None:
            conditions.append(compile_predicate(self.model, options.where))

        self._check_fields(name for name, _ in options.order)
        query = select(self.model).where(*conditions).options(
            *self._load_options(options.relations, options.select)
        )
        for name, direction in options.order:
            column = getattr(self.model, name)
            query = query.order_by(column.desc() if direction == "DESC" else column.asc())
        if options.skip:
            query = query.offset(options.skip)
        if options.take is not None:
            query = query.limit(options.take)

        try:
            async with self._session(tx) as session:
                rows = list((await session.execute(query)).scalars().all())
                if options.count:
                    count_query = select(func.count()).select_from(self.model).where(*conditions)
                    total = int((await session.execute(count_query)).scalar() or 0)
                else:
                    total = len(rows)

            self._logger.debug(
                "Listed entities",
                model=self.entity_name,
                count=len(rows),
                total=total,
                skip=options.skip,
                take=options.take,
            )
            return rows, total
        except (SQLAlchemyError, OSError) as e:
            raise self._failure(e, "list") from e

    # ========================================================================
    # UPDATE
    # ========================================================================

    @trace_database()
    async def update_by_id(
        self,
        entity_id: EntityId,
        patch: dict[str, Any],
        tx: TransactionHandle | None = None,
    ) -> int:
        """Apply ``patch`` to a live (not soft-deleted) entity.

        ``updated_at`` is stamped when the model has it. Returns the number
        of rows changed (0 when the entity does not exist).

        Raises:
            InvalidQueryError: If the patch touches ``id`` or an unmapped column
        """
        if "id" in patch:
            raise InvalidQueryError("id", "immutable")
        self._check_fields(patch)

        values = dict(patch)
        if "updated_at" in self._column_names:
            values["updated_at"] = datetime.now(timezone.utc)

        query = (
            update(self.model)
            .where(getattr(self.model, "id") == entity_id, *self._visibility(False))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        try:
            async with self._session(tx) as session:
                result = await session.execute(query)
                changed = int(getattr(result, "rowcount", 0) or 0)

            self._logger.info(
                "Entity updated" if changed else "Entity not found for update",
                model=self.entity_name,
                entity_id=entity_id,
                fields=sorted(patch),
            )
            return changed
        except (SQLAlchemyError, OSError) as e:
            raise self._failure(e, "update", entity_id=entity_id) from e

    # ========================================================================
    # DELETE / SOFT DELETE / RESTORE
    # ========================================================================

    @trace_database()
    async def delete_by_id(self, entity_id: EntityId, tx: TransactionHandle | None = None) -> int:
        """Permanently remove the entity, soft-deleted or not. Returns rows removed."""
        query = (
            delete(self.model)
            .where(getattr(self.model, "id") == entity_id)
            .execution_options(synchronize_session=False)
        )
        try:
            async with self._session(tx) as session:
                result = await session.execute(query)
                removed = int(getattr(result, "rowcount", 0) or 0)

            self._logger.info(
                "Entity deleted" if removed else "Entity not found for deletion",
                model=self.entity_name,
                entity_id=entity_id,
                soft_delete=False,
            )
            return removed
        except (SQLAlchemyError, OSError) as e:
            raise self._failure(e, "delete", entity_id=entity_id) from e

    @trace_database()
    async def soft_delete_by_id(self, entity_id: EntityId, tx: TransactionHandle | None = None) -> int:
        """Stamp ``deleted_at`` on a live entity.

        Types without soft-delete support are hard-deleted instead.
        """
        if not self.supports_soft_delete:
            return await self.delete_by_id(entity_id, tx)

        now = datetime.now(timezone.utc)
        values: dict[str, Any] = {"deleted_at": now}
        if "updated_at" in self._column_names:
            values["updated_at"] = now

        query = (
            update(self.model)
            .where(getattr(self.model, "id") == entity_id, getattr(self.model, "deleted_at").is_(None))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        try:
            async with self._session(tx) as session:
                result = await session.execute(query)
                removed = int(getattr(result, "rowcount", 0) or 0)

            self._logger.info(
                "Entity deleted" if removed else "Entity not found for deletion",
                model=self.entity_name,
                entity_id=entity_id,
                soft_delete=True,
            )
            return removed
        except (SQLAlchemyError, OSError) as e:
            raise self._failure(e, "soft delete", entity_id=entity_id) from e

    @trace_database()
    async def restore_by_id(self, entity_id: EntityId, tx: TransactionHandle | None = None) -> int:
        """Clear ``deleted_at``. Returns rows matched; 0 without I/O for unsupported types."""
        if not self.supports_soft_delete:
            return 0

        values: dict[str, Any] = {"deleted_at": None}
        if "updated_at" in self._column_names:
            values["updated_at"] = datetime.now(timezone.utc)

        query = (
            update(self.model)
            .where(getattr(self.model, "id") == entity_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        try:
            async with self._session(tx) as session:
                result = await session.execute(query)
                restored = int(getattr(result, "rowcount", 0) or 0)

            self._logger.info(
                "Entity restored" if restored else "Entity not found for restore",
                model=self.entity_name,
                entity_id=entity_id,
            )
            return restored
        except (SQLAlchemyError, OSError) as e:
            raise self._failure(e, "restore", entity_id=entity_id) from e

    # ========================================================================
    # TRANSACTION MANAGEMENT
    # ========================================================================

    async def with_transaction(self, fn: Callable[[TransactionHandle], Awaitable[R]]) -> R:
        """Run ``fn`` inside a new transaction.

        Commits when ``fn`` returns, rolls back and re-raises when it raises,
        and always closes the session.

        Example:
            async def publish(tx):
                await store.update_by_id(article_id, {"status": "published"}, tx)
                return await store.find_by_id(article_id, tx=tx)

            article = await store.with_transaction(publish)
        """
        async with self._session_factory() as session:
            try:
                async with session.begin():
                    result = await fn(session)
            except (SQLAlchemyError, OSError) as e:
                self._logger.debug("Transaction rolled back", model=self.entity_name)
                raise self._failure(e, "commit") from e
            except Exception:
                self._logger.debug("Transaction rolled back", model=self.entity_name)
                raise

            self._logger.debug("Transaction committed", model=self.entity_name)
            return result
