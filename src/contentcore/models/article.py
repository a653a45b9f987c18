"""Article model for published content."""

from typing import TYPE_CHECKING

from sqlalchemy import Column, ForeignKey, Index, Integer, String, Table, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from contentcore.models.base import (
    Base,
    IntegerIDMixin,
    SoftDeleteMixin,
    TimestampMixin,
    generate_repr,
)

if TYPE_CHECKING:
    from contentcore.models.tag import Tag


article_tags = Table(
    "article_tags",
    Base.metadata,
    Column("article_id", ForeignKey("articles.id", ondelete="CASCADE"), primary_key=True),
    Column("tag_id", ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True),
)


class Article(Base, IntegerIDMixin, TimestampMixin, SoftDeleteMixin):
    """Represents an article authored on the platform.

    Attributes:
        id: Primary key
        title: Article title
        slug: URL slug, unique across articles
        body: Article content
        status: Publication status ("draft", "published", "archived")
        author_id: Identifier of the authoring user
        view_count: Number of recorded views
        created_at: Record creation timestamp
        updated_at: Record last update timestamp
        deleted_at: Soft delete marker
        tags: Related tag records
    """

    __tablename__ = "articles"

    title: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(300), nullable=False, unique=True)
    body: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="draft")
    author_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    view_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    tags: Mapped[list["Tag"]] = relationship(
        "Tag",
        secondary=article_tags,
        back_populates="articles",
    )

    __table_args__ = (Index("idx_articles_status_created", "status", "created_at"),)

    __repr__ = generate_repr("id", "slug")
