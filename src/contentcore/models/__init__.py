"""Database models."""

from contentcore.models.article import Article, article_tags
from contentcore.models.base import (
    Base,
    IntegerIDMixin,
    SoftDeleteMixin,
    TimestampMixin,
)
from contentcore.models.tag import Tag

__all__ = [
    "Base",
    "IntegerIDMixin",
    "SoftDeleteMixin",
    "TimestampMixin",
    "Article",
    "Tag",
    "article_tags",
]
