"""Generic entity service: cached CRUD, pagination, transactions and hooks.

``EntityService`` composes an entity store, the cache-aside coordinator, the
access whitelist and the error translator behind one facade. Feature services
subclass it and override the lifecycle hooks to add their own rules.

Key Concepts:
- READ-THROUGH: default-shaped ``find_by_id`` calls and offset pages are
  served from the cache when present and populated on a miss
- WRITE-INVALIDATE: every successful mutation drops the entity's id key and
  all of its cached list pages, then runs the after-hook, then publishes.
  Inside ``run_in_transaction`` the same keys are dropped again on commit
- TIEBREAKS: both pagination modes order by ``(sort_by, id)``
- ERRORS: store failures are translated once here into NotFoundError,
  ConflictError, ValidationError or InternalError

Usage Example:
    class ArticleService(EntityService[Article]):
        default_search_field = "title"

        async def before_create(self, data, ctx):
            data.setdefault("status", "draft")
            return data

    articles = ArticleService(SQLAlchemyEntityStore(async_session_maker, Article, soft_delete=True),
                              RedisCacheStore(cache_client))
    page = await articles.list_offset(OffsetPageRequest(page=1, limit=10))
"""

from dataclasses import dataclass, field, replace
from functools import partial
from typing import Any, Awaitable, Callable, Generic, Iterable, Mapping, TypeVar, Union

from sqlalchemy import inspect

from contentcore.core.cache import RedisCacheStore
from contentcore.core.config import settings
from contentcore.core.i18n import Localizer
from contentcore.core.logging import get_logger
from contentcore.repositories.cursor import CursorCodec, InvalidCursorError, codec_from_settings
from contentcore.repositories.pagination import (
    CursorPage,
    CursorPageRequest,
    OffsetPage,
    OffsetPageRequest,
    build_cursor_page,
    cursor_window,
    tiebreak_order,
)
from contentcore.repositories.port import (
    EntityId,
    EntityStore,
    FindAndCountOptions,
    FindOptions,
    InvalidQueryError,
    PersistenceError,
    TransactionHandle,
)
from contentcore.repositories.predicates import (
    And,
    Predicate,
    build_conditions,
    conjoin,
    from_mapping,
    normalize_search_input,
)
from contentcore.services.cache_aside import (
    CacheAsideCoordinator,
    CacheOptions,
    KeyHasher,
    default_key_hasher,
)
from contentcore.services.errors import EntityAccessError, NotFoundError, translate_persistence_error
from contentcore.services.whitelist import AccessWhitelist

ModelType = TypeVar("ModelType")
R = TypeVar("R")

ListFilter = Union[Predicate, Mapping[str, Any], None]
ConditionBuilder = Callable[[Mapping[str, Any] | None, str], Predicate]
EventPublisher = Callable[[str, dict[str, Any]], Awaitable[None]]

# Failures raised below the facade that are translated into the error taxonomy
_STORE_ERRORS = (PersistenceError, InvalidQueryError, InvalidCursorError)


@dataclass(frozen=True)
class AccessContext:
    """Per-call context threaded through the facade and its hooks.

    Attributes:
        transaction: Open transaction to join; None auto-commits each call
        localizer: Translator for messages produced inside hooks
        actor_id: Who is acting, recorded on published events
        on_commit: Callbacks run after the enclosing transaction commits
    """

    transaction: TransactionHandle | None = None
    localizer: Localizer | None = None
    actor_id: str | None = None
    on_commit: list[Callable[[], Awaitable[Any]]] | None = field(default=None, compare=False, repr=False)


class EntityService(Generic[ModelType]):
    """Cache-aside CRUD facade over an entity store.

    Args:
        store: Persistence port for the entity
        cache: Key-value cache; None disables caching
        cache_options: TTL, prefix and stale-while-revalidate window
        whitelist: Relations and fields clients may request
        key_hasher: Hash function for list cache keys
        cursor_codec: Cursor encoding (configured codec by default)
        condition_builder: Turns raw list filters into a predicate
        event_publisher: Async callable receiving (event_name, payload)
        emit_events: Publish ``<entity>.created|updated|deleted|restored``
        max_limit: Largest page size accepted
    """

    default_search_field = "name"
    whitelist = AccessWhitelist()

    def __init__(
        self,
        store: EntityStore[ModelType],
        cache: RedisCacheStore | None = None,
        *,
        cache_options: CacheOptions | None = None,
        whitelist: AccessWhitelist | None = None,
        key_hasher: KeyHasher = default_key_hasher,
        cursor_codec: CursorCodec | None = None,
        condition_builder: ConditionBuilder = build_conditions,
        event_publisher: EventPublisher | None = None,
        emit_events: bool = False,
        max_limit: int | None = None,
    ) -> None:
        self.store = store
        self.entity_name = store.entity_name
        self.cache = CacheAsideCoordinator(
            cache,
            store.model,
            cache_options,
            entity_name=store.entity_name.lower(),
            key_hasher=key_hasher,
        )
        if whitelist is not None:
            self.whitelist = whitelist
        self._cursor_codec = cursor_codec or codec_from_settings()
        self._condition_builder = condition_builder
        self._event_publisher = event_publisher
        self._emit_events = emit_events
        self._max_limit = max_limit or settings.pagination_max_limit
        columns = inspect(store.model).columns
        self._sortable_fields = frozenset(columns.keys())
        self._keyset_fields = frozenset(name for name, column in columns.items() if not column.nullable)
        self._logger = get_logger(f"{__name__}.{self.entity_name}Service")

    # ========================================================================
    # LIFECYCLE HOOKS
    # ========================================================================
    # Feature services override these. Defaults pass data through unchanged.

    async def before_create(self, data: dict[str, Any], ctx: AccessContext) -> dict[str, Any]:
        return data

    async def after_create(self, entity: ModelType, ctx: AccessContext) -> None:
        pass

    async def before_update(
        self, entity_id: EntityId, patch: dict[str, Any], ctx: AccessContext
    ) -> dict[str, Any]:
        return patch

    async def after_update(self, entity: ModelType, ctx: AccessContext) -> None:
        pass

    async def before_delete(self, entity_id: EntityId, ctx: AccessContext) -> None:
        pass

    async def after_delete(self, entity_id: EntityId, ctx: AccessContext) -> None:
        pass

    def on_list_query_built(self, query: FindAndCountOptions, ctx: AccessContext) -> FindAndCountOptions:
        """Adjust a list query after filters, order and window are applied."""
        return query

    # ========================================================================
    # HELPERS
    # ========================================================================

    def _translate(self, exc: Exception, entity_id: EntityId | None = None) -> EntityAccessError:
        return translate_persistence_error(exc, self.entity_name, entity_id)

    def _check_access(self, options: FindOptions) -> None:
        self.whitelist.check(self.entity_name, options.relations, options.select)

    def _check_sort_field(self, sort_by: str, keyset: bool = False) -> None:
        if sort_by not in self._sortable_fields:
            raise InvalidQueryError(sort_by, "unknown-sort-field")
        # NULLs never satisfy the keyset window comparisons
        if keyset and sort_by not in self._keyset_fields:
            raise InvalidQueryError(sort_by, "nullable-sort-field")

    async def _invalidate(self, entity_id: EntityId, ctx: AccessContext) -> None:
        await self.cache.invalidate(entity_id)
        if ctx.on_commit is not None:
            ctx.on_commit.append(partial(self.cache.invalidate, entity_id))

    def _build_where(self, filters: Mapping[str, Any] | None, extra: ListFilter) -> Predicate | None:
        items: list[Predicate] = [self._condition_builder(filters, self.default_search_field)]
        if isinstance(extra, Mapping):
            items.append(from_mapping({k: normalize_search_input(v) for k, v in extra.items()}))
        elif extra is not None:
            items.append(extra)
        where = conjoin(*items)
        if isinstance(where, And) and not where.items:
            return None
        return where

    async def _publish(self, action: str, entity_id: EntityId, ctx: AccessContext) -> None:
        if not self._emit_events or self._event_publisher is None:
            return
        event = f"{self.cache.prefix}.{action}"
        payload = {"entity": self.entity_name, "id": entity_id, "actor_id": ctx.actor_id}
        try:
            await self._event_publisher(event, payload)
        except Exception as e:
            self._logger.warning("Event publish failed", event_name=event, entity_id=entity_id, error=str(e))

    async def _reload(self, entity_id: EntityId, ctx: AccessContext) -> ModelType:
        try:
            entity = await self.store.find_by_id(entity_id, FindOptions(), ctx.transaction)
        except _STORE_ERRORS as e:
            raise self._translate(e, entity_id) from e
        if entity is None:
            raise NotFoundError(self.entity_name, entity_id)
        return entity

    # ========================================================================
    # CREATE
    # ========================================================================

    async def create(self, data: Mapping[str, Any], ctx: AccessContext | None = None) -> ModelType:
        """Create an entity.

        Raises:
            ConflictError: If a unique or foreign-key constraint rejects it
            ValidationError: If ``data`` names an unknown attribute
        """
        ctx = ctx or AccessContext()
        payload = await self.before_create(dict(data), ctx)
        try:
            entity = await self.store.save(self.store.create(payload), ctx.transaction)
        except _STORE_ERRORS as e:
            raise self._translate(e) from e

        entity_id = getattr(entity, "id")
        await self._invalidate(entity_id, ctx)
        await self.after_create(entity, ctx)
        await self._publish("created", entity_id, ctx)
        return entity

    async def create_many(
        self, items: Iterable[Mapping[str, Any]], ctx: AccessContext | None = None
    ) -> list[ModelType]:
        """Create several entities atomically."""
        payloads = [dict(item) for item in items]

        async def create_all(tx_ctx: AccessContext) -> list[ModelType]:
            return [await self.create(payload, tx_ctx) for payload in payloads]

        return await self.run_in_transaction(create_all, ctx)

    # ========================================================================
    # READ
    # ========================================================================

    async def find_by_id(
        self,
        entity_id: EntityId,
        options: FindOptions | None = None,
        ctx: AccessContext | None = None,
    ) -> ModelType:
        """Get an entity by id.

        Raises:
            NotFoundError: If it does not exist or is soft-deleted (unless
                ``options.with_deleted``)
            ValidationError: If a relation or field is not whitelisted
        """
        options = options or FindOptions()
        ctx = ctx or AccessContext()
        self._check_access(options)

        cacheable = options.is_default and ctx.transaction is None
        if cacheable:
            cached = await self.cache.get_entity(entity_id)
            if cached is not None:
                return cached

        try:
            entity = await self.store.find_by_id(entity_id, options, ctx.transaction)
        except _STORE_ERRORS as e:
            raise self._translate(e, entity_id) from e
        if entity is None:
            raise NotFoundError(self.entity_name, entity_id)

        if cacheable:
            await self.cache.put_entity(entity)
        return entity

    async def find_one(
        self,
        where: Predicate | Mapping[str, Any],
        options: FindOptions | None = None,
        ctx: AccessContext | None = None,
    ) -> ModelType | None:
        """First entity matching ``where``, or None."""
        options = options or FindOptions()
        ctx = ctx or AccessContext()
        self._check_access(options)

        if isinstance(where, Mapping):
            where = from_mapping({k: normalize_search_input(v) for k, v in where.items()})
        try:
            return await self.store.find_one(where, options, ctx.transaction)
        except _STORE_ERRORS as e:
            raise self._translate(e) from e

    async def list_offset(
        self,
        request: OffsetPageRequest | None = None,
        extra_filter: ListFilter = None,
        options: FindOptions | None = None,
        ctx: AccessContext | None = None,
    ) -> OffsetPage[ModelType]:
        """Page-number listing with total counts.

        Pages without relations are cached under a hash of the normalized
        query. With stale-while-revalidate configured, a page close to expiry
        is served from the cache and refreshed in the background.
        """
        options = options or FindOptions()
        ctx = ctx or AccessContext()
        self._check_access(options)

        try:
            request = (request or OffsetPageRequest()).normalized(self._max_limit)
            self._check_sort_field(request.sort_by)
            query = self.on_list_query_built(
                FindAndCountOptions(
                    where=self._build_where(request.filters, extra_filter),
                    order=tiebreak_order(request.sort_by, request.order),  # type: ignore[arg-type]
                    relations=options.relations,
                    select=options.select,
                    with_deleted=options.with_deleted,
                    skip=request.skip,
                    take=request.take,
                ),
                ctx,
            )
        except _STORE_ERRORS as e:
            raise self._translate(e) from e

        shape = {
            "where": query.where.shape() if query.where is not None else None,
            "page": request.page,
            "limit": request.take,
            "sort_by": request.sort_by,
            "order": request.order,
            "select": sorted(query.select),
            "relations": sorted(query.relations),
            "with_deleted": query.with_deleted,
        }
        cacheable = self.cache.enabled and not query.relations and ctx.transaction is None

        if cacheable:
            cached, stale = await self.cache.get_page(shape)
            page = self._page_from_cache(cached, request) if cached is not None else None
            if page is not None:
                if stale:
                    self.cache.schedule_refresh(shape, lambda: self._refresh_page(shape, query))
                return page

        try:
            rows, total = await self.store.find_and_count(query, ctx.transaction)
        except _STORE_ERRORS as e:
            raise self._translate(e) from e

        if cacheable:
            await self.cache.put_page(shape, {"rows": [self.cache.snapshot(r) for r in rows], "total": total})
        return OffsetPage.build(rows, total, request.page, request.take)

    def _page_from_cache(self, cached: dict[str, Any], request: OffsetPageRequest) -> OffsetPage[ModelType] | None:
        try:
            rows = [self.cache.rehydrate(snapshot) for snapshot in cached["rows"]]
            total = int(cached["total"])
        except (KeyError, TypeError, ValueError) as e:
            self._logger.warning("Discarding unreadable cached page", error=str(e))
            return None
        return OffsetPage.build(rows, total, request.page, request.take)

    async def _refresh_page(self, shape: dict[str, Any], query: FindAndCountOptions) -> None:
        rows, total = await self.store.find_and_count(query)
        await self.cache.put_page(shape, {"rows": [self.cache.snapshot(r) for r in rows], "total": total})

    async def list_cursor(
        self,
        request: CursorPageRequest | None = None,
        extra_filter: ListFilter = None,
        options: FindOptions | None = None,
        ctx: AccessContext | None = None,
    ) -> CursorPage[ModelType]:
        """Keyset listing anchored on the ``(sort_by, id)`` pair in the cursor.

        Raises:
            ValidationError: For a tampered signed cursor or a cursor issued
                for another sort column
        """
        options = options or FindOptions()
        ctx = ctx or AccessContext()
        self._check_access(options)

        try:
            request = (request or CursorPageRequest()).normalized(self._max_limit)
            self._check_sort_field(request.sort_by, keyset=True)
            token = self._cursor_codec.decode(request.cursor) if request.cursor else None
            scan_order, window = cursor_window(request, token)

            select = options.select
            if select and request.sort_by not in select:
                select = (*select, request.sort_by)

            query = self.on_list_query_built(
                FindAndCountOptions(
                    where=conjoin(self._build_where(request.filters, extra_filter), window),
                    order=tiebreak_order(request.sort_by, scan_order),
                    relations=options.relations,
                    select=select,
                    with_deleted=options.with_deleted,
                    take=request.limit,
                    count=False,
                ),
                ctx,
            )
            rows, _ = await self.store.find_and_count(query, ctx.transaction)
        except _STORE_ERRORS as e:
            raise self._translate(e) from e

        return build_cursor_page(rows, request, scan_order, self._cursor_codec)

    # ========================================================================
    # UPDATE
    # ========================================================================

    async def update(
        self, entity_id: EntityId, patch: Mapping[str, Any], ctx: AccessContext | None = None
    ) -> ModelType:
        """Apply ``patch`` and return the updated entity.

        Raises:
            NotFoundError: If the entity does not exist or is soft-deleted
        """
        ctx = ctx or AccessContext()
        prepared = await self.before_update(entity_id, dict(patch), ctx)
        try:
            changed = await self.store.update_by_id(entity_id, prepared, ctx.transaction)
        except _STORE_ERRORS as e:
            raise self._translate(e, entity_id) from e
        if not changed:
            raise NotFoundError(self.entity_name, entity_id)

        await self._invalidate(entity_id, ctx)
        entity = await self._reload(entity_id, ctx)
        await self.after_update(entity, ctx)
        await self._publish("updated", entity_id, ctx)
        return entity

    async def update_many(
        self, patches: Mapping[EntityId, Mapping[str, Any]], ctx: AccessContext | None = None
    ) -> list[ModelType]:
        """Update several entities atomically; any missing id aborts the batch."""
        items = [(entity_id, dict(patch)) for entity_id, patch in patches.items()]

        async def update_all(tx_ctx: AccessContext) -> list[ModelType]:
            return [await self.update(entity_id, patch, tx_ctx) for entity_id, patch in items]

        return await self.run_in_transaction(update_all, ctx)

    # ========================================================================
    # DELETE / SOFT DELETE / RESTORE
    # ========================================================================

    async def remove(self, entity_id: EntityId, ctx: AccessContext | None = None) -> None:
        """Permanently delete an entity."""
        ctx = ctx or AccessContext()
        await self.before_delete(entity_id, ctx)
        try:
            removed = await self.store.delete_by_id(entity_id, ctx.transaction)
        except _STORE_ERRORS as e:
            raise self._translate(e, entity_id) from e
        if not removed:
            raise NotFoundError(self.entity_name, entity_id)

        await self._invalidate(entity_id, ctx)
        await self.after_delete(entity_id, ctx)
        await self._publish("deleted", entity_id, ctx)

    async def soft_delete(self, entity_id: EntityId, ctx: AccessContext | None = None) -> None:
        """Hide an entity from default reads; hard-deletes types without soft delete."""
        ctx = ctx or AccessContext()
        await self.before_delete(entity_id, ctx)
        try:
            removed = await self.store.soft_delete_by_id(entity_id, ctx.transaction)
        except _STORE_ERRORS as e:
            raise self._translate(e, entity_id) from e
        if not removed:
            raise NotFoundError(self.entity_name, entity_id)

        await self._invalidate(entity_id, ctx)
        await self.after_delete(entity_id, ctx)
        await self._publish("deleted", entity_id, ctx)

    async def restore(self, entity_id: EntityId, ctx: AccessContext | None = None) -> ModelType:
        """Bring a soft-deleted entity back. A no-op read for types without soft delete.

        No lifecycle hooks run for restore; subscribers observe it through
        the ``<entity>.restored`` event.
        """
        ctx = ctx or AccessContext()
        if not self.store.supports_soft_delete:
            return await self.find_by_id(entity_id, ctx=ctx)

        try:
            restored = await self.store.restore_by_id(entity_id, ctx.transaction)
        except _STORE_ERRORS as e:
            raise self._translate(e, entity_id) from e
        if not restored:
            raise NotFoundError(self.entity_name, entity_id)

        await self._invalidate(entity_id, ctx)
        entity = await self._reload(entity_id, ctx)
        await self._publish("restored", entity_id, ctx)
        return entity

    async def remove_many(self, entity_ids: Iterable[EntityId], ctx: AccessContext | None = None) -> None:
        ids = list(entity_ids)

        async def remove_all(tx_ctx: AccessContext) -> None:
            for entity_id in ids:
                await self.remove(entity_id, tx_ctx)

        await self.run_in_transaction(remove_all, ctx)

    async def soft_delete_many(self, entity_ids: Iterable[EntityId], ctx: AccessContext | None = None) -> None:
        ids = list(entity_ids)

        async def soft_delete_all(tx_ctx: AccessContext) -> None:
            for entity_id in ids:
                await self.soft_delete(entity_id, tx_ctx)

        await self.run_in_transaction(soft_delete_all, ctx)

    # ========================================================================
    # TRANSACTIONS
    # ========================================================================

    async def run_in_transaction(
        self,
        fn: Callable[[AccessContext], Awaitable[R]],
        ctx: AccessContext | None = None,
    ) -> R:
        """Run ``fn`` with a context bound to one transaction.

        Joins ``ctx.transaction`` when one is already open. Otherwise a new
        transaction commits when ``fn`` returns and rolls back when it raises.

        Example:
            async def publish_and_tag(tx_ctx):
                article = await articles.update(article_id, {"status": "published"}, tx_ctx)
                await tags.create({"name": "featured"}, tx_ctx)
                return article

            article = await articles.run_in_transaction(publish_and_tag)
        """
        base = ctx or AccessContext()
        if base.transaction is not None:
            return await fn(base)

        committed: list[Callable[[], Awaitable[Any]]] = []

        async def body(tx: TransactionHandle) -> R:
            return await fn(replace(base, transaction=tx, on_commit=committed))

        try:
            result = await self.store.with_transaction(body)
        except _STORE_ERRORS as e:
            raise self._translate(e) from e

        # Reads outside the transaction may have re-cached pre-commit rows
        for callback in committed:
            await callback()
        return result
