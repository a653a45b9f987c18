import re
import unicodedata
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from contentcore.core.cache import RedisCacheStore
from contentcore.core.logging import get_logger
from contentcore.models.article import Article
from contentcore.repositories.base import SQLAlchemyEntityStore
from contentcore.repositories.port import EntityId, FindOptions
from contentcore.repositories.predicates import Eq
from contentcore.services.base import AccessContext, EntityService
from contentcore.services.errors import DUPLICATE, ConflictError, ValidationError
from contentcore.services.whitelist import AccessWhitelist

logger = get_logger(__name__)

ARTICLE_STATUSES = ("draft", "published", "archived")

_NON_SLUG_CHARS = re.compile(r"[^a-z0-9]+")


def slugify(text: str) -> str:
    """Lowercase ASCII slug: ``"Hello, World!"`` -> ``"hello-world"``."""
    ascii_text = unicodedata.normalize("NFKD", text).encode("ascii", "ignore").decode("ascii")
    slug = _NON_SLUG_CHARS.sub("-", ascii_text.lower()).strip("-")
    return slug or "article"


class ArticleService(EntityService[Article]):
    """Service for Article entities.

    Articles are soft-deletable. Creating one fills a unique slug from the
    title and rejects a title that is already taken.
    """

    default_search_field = "title"
    whitelist = AccessWhitelist(
        relations={"tags"},
        fields={"id", "title", "slug", "status", "author_id", "view_count", "created_at", "updated_at"},
    )

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        cache: RedisCacheStore | None = None,
        **options: Any,
    ) -> None:
        store = SQLAlchemyEntityStore(session_factory, Article, soft_delete=True)
        super().__init__(store, cache, **options)

    async def get_by_slug(self, slug: str, ctx: AccessContext | None = None) -> Article | None:
        return await self.find_one(Eq("slug", slug), ctx=ctx)

    async def _unique_slug(self, base: str, ctx: AccessContext) -> str:
        candidate, suffix = base, 2
        # Soft-deleted rows still hold their slug in the unique index
        while await self.find_one(Eq("slug", candidate), FindOptions(with_deleted=True), ctx) is not None:
            candidate = f"{base}-{suffix}"
            suffix += 1
        return candidate

    def _check_status(self, data: dict[str, Any]) -> None:
        status = data.get("status")
        if status is not None and status not in ARTICLE_STATUSES:
            raise ValidationError("status", "invalid-status", self.entity_name)

    async def before_create(self, data: dict[str, Any], ctx: AccessContext) -> dict[str, Any]:
        title = str(data.get("title") or "").strip()
        if not title:
            raise ValidationError("title", "required", self.entity_name)
        data["title"] = title
        self._check_status(data)

        if await self.find_one(Eq("title", title), ctx=ctx) is not None:
            logger.info("Rejected duplicate article title", title=title)
            raise ConflictError(self.entity_name, DUPLICATE, field="title")

        data["slug"] = await self._unique_slug(slugify(data.get("slug") or title), ctx)
        data.setdefault("status", "draft")
        if ctx.actor_id is not None:
            data.setdefault("author_id", ctx.actor_id)
        return data

    async def before_update(
        self, entity_id: EntityId, patch: dict[str, Any], ctx: AccessContext
    ) -> dict[str, Any]:
        self._check_status(patch)
        if "slug" in patch:
            patch["slug"] = slugify(patch["slug"])
        return patch
