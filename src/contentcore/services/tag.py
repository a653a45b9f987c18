from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from contentcore.core.cache import RedisCacheStore
from contentcore.models.tag import Tag
from contentcore.repositories.base import SQLAlchemyEntityStore
from contentcore.repositories.port import EntityId
from contentcore.services.base import AccessContext, EntityService
from contentcore.services.whitelist import AccessWhitelist


class TagService(EntityService[Tag]):
    """Service for Tag entities. Tags have no soft delete."""

    default_search_field = "name"
    whitelist = AccessWhitelist(relations={"articles"}, fields={"id", "name", "created_at"})

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        cache: RedisCacheStore | None = None,
        **options: Any,
    ) -> None:
        super().__init__(SQLAlchemyEntityStore(session_factory, Tag), cache, **options)

    async def before_create(self, data: dict[str, Any], ctx: AccessContext) -> dict[str, Any]:
        if isinstance(data.get("name"), str):
            data["name"] = data["name"].strip().lower()
        return data

    async def before_update(
        self, entity_id: EntityId, patch: dict[str, Any], ctx: AccessContext
    ) -> dict[str, Any]:
        return await self.before_create(patch, ctx)
