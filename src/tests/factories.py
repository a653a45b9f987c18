"""Model factory functions for testing.

Each factory accepts optional kwargs to override defaults and an optional
db_session to persist the instance (flush only; the caller commits).

Example:
    article = await create_article(db_session=session, title="Hello")
    await session.commit()
"""

import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from contentcore.models import Article, Tag

# Shared creation time for rows whose order must come from the id tiebreaker
FIXED_CREATED_AT = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


async def create_article(
    db_session: AsyncSession | None = None,
    **kwargs: Any,
) -> Article:
    """Create an Article instance for testing."""
    suffix = uuid.uuid4().hex[:8]
    defaults: dict[str, Any] = {
        "title": f"Article {suffix}",
        "slug": f"article-{suffix}",
        "body": "Lorem ipsum",
        "status": "draft",
        "view_count": 0,
    }
    defaults.update(kwargs)

    article = Article(**defaults)

    if db_session:
        db_session.add(article)
        await db_session.flush()

    return article


async def create_tag(
    db_session: AsyncSession | None = None,
    **kwargs: Any,
) -> Tag:
    """Create a Tag instance for testing."""
    defaults: dict[str, Any] = {"name": f"tag-{uuid.uuid4().hex[:8]}"}
    defaults.update(kwargs)

    tag = Tag(**defaults)

    if db_session:
        db_session.add(tag)
        await db_session.flush()

    return tag


async def create_numbered_articles(
    db_session: AsyncSession,
    count: int,
    created_at: datetime = FIXED_CREATED_AT,
) -> list[Article]:
    """Persist ``count`` articles with ids 1..count and one shared created_at."""
    articles = []
    for number in range(1, count + 1):
        articles.append(
            await create_article(
                db_session,
                id=number,
                title=f"Article {number:02d}",
                slug=f"article-{number:02d}",
                created_at=created_at,
                updated_at=created_at,
            )
        )
    await db_session.commit()
    return articles
