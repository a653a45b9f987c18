"""Tag model. Tags are hard-deleted; they carry no deleted_at column."""

from typing import TYPE_CHECKING

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from contentcore.models.base import Base, IntegerIDMixin, TimestampMixin, generate_repr

if TYPE_CHECKING:
    from contentcore.models.article import Article


class Tag(Base, IntegerIDMixin, TimestampMixin):
    """A label attached to articles.

    Attributes:
        id: Primary key
        name: Unique tag name
        articles: Articles carrying this tag
    """

    __tablename__ = "tags"

    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)

    articles: Mapped[list["Article"]] = relationship(
        "Article",
        secondary="article_tags",
        back_populates="tags",
    )

    __repr__ = generate_repr("id", "name")
