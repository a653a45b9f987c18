"""Test the SQLAlchemy entity store."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import String
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import Mapped, mapped_column

from contentcore.models import Article, Base, IntegerIDMixin, Tag
from contentcore.repositories.base import SQLAlchemyEntityStore
from contentcore.repositories.port import (
    FindAndCountOptions,
    FindOptions,
    InvalidQueryError,
    PersistenceConflict,
    PersistenceError,
    PersistenceUnavailable,
)
from contentcore.repositories.predicates import Eq, In
from factories import create_article, create_tag


class NoIdTestModel(Base):
    """Model without an id column, used to test store construction."""

    __tablename__ = "store_test_no_id"

    code: Mapped[str] = mapped_column(String(20), primary_key=True)


class PlainTestModel(Base, IntegerIDMixin):
    """Model without deleted_at, used to test soft delete declarations."""

    __tablename__ = "store_test_plain"

    name: Mapped[str] = mapped_column(String(50))


@pytest.fixture
def article_store(session_factory: async_sessionmaker[AsyncSession]) -> SQLAlchemyEntityStore[Article]:
    return SQLAlchemyEntityStore(session_factory, Article, soft_delete=True)


@pytest.fixture
def tag_store(session_factory: async_sessionmaker[AsyncSession]) -> SQLAlchemyEntityStore[Tag]:
    return SQLAlchemyEntityStore(session_factory, Tag)


class TestConstruction:
    """Test the capability flags declared at construction."""

    def test_soft_delete_requires_deleted_at(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        with pytest.raises(ValueError, match="deleted_at"):
            SQLAlchemyEntityStore(session_factory, PlainTestModel, soft_delete=True)

    def test_id_column_required(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        with pytest.raises(ValueError, match="'id'"):
            SQLAlchemyEntityStore(session_factory, NoIdTestModel)

    def test_entity_name_defaults_to_model_name(self, tag_store: SQLAlchemyEntityStore[Tag]) -> None:
        assert tag_store.entity_name == "Tag"
        assert tag_store.supports_soft_delete is False


class TestCreateAndSave:
    """Test create() and save()."""

    def test_create_builds_transient_instance(self, article_store: SQLAlchemyEntityStore[Article]) -> None:
        article = article_store.create({"title": "Hello", "slug": "hello"})

        assert isinstance(article, Article)
        assert article.id is None

    def test_create_rejects_unknown_attribute(self, article_store: SQLAlchemyEntityStore[Article]) -> None:
        with pytest.raises(InvalidQueryError):
            article_store.create({"title": "Hello", "password": "x"})

    async def test_save_assigns_generated_fields(self, article_store: SQLAlchemyEntityStore[Article]) -> None:
        article = await article_store.save(article_store.create({"title": "Hello", "slug": "hello"}))

        assert article.id is not None
        assert article.created_at is not None
        assert article.status == "draft"
        assert article.deleted_at is None

    async def test_duplicate_slug_is_a_conflict(self, article_store: SQLAlchemyEntityStore[Article]) -> None:
        await article_store.save(article_store.create({"title": "One", "slug": "same"}))

        with pytest.raises(PersistenceConflict) as exc_info:
            await article_store.save(article_store.create({"title": "Two", "slug": "same"}))

        assert exc_info.value.kind == "duplicate"
        assert exc_info.value.entity_name == "Article"


class TestRead:
    """Test find_by_id(), find_one() and find_and_count()."""

    async def test_find_by_id(
        self, article_store: SQLAlchemyEntityStore[Article], db_session: AsyncSession
    ) -> None:
        article = await create_article(db_session, title="Found")
        await db_session.commit()

        found = await article_store.find_by_id(article.id)

        assert found is not None
        assert found.title == "Found"

    async def test_find_by_id_missing(self, article_store: SQLAlchemyEntityStore[Article]) -> None:
        assert await article_store.find_by_id(999) is None

    async def test_find_by_id_loads_relations(
        self, article_store: SQLAlchemyEntityStore[Article], db_session: AsyncSession
    ) -> None:
        tag = await create_tag(db_session, name="python")
        article = await create_article(db_session, tags=[tag])
        await db_session.commit()

        found = await article_store.find_by_id(article.id, FindOptions(relations=("tags",)))

        assert [t.name for t in found.tags] == ["python"]

    async def test_unknown_relation_rejected(self, article_store: SQLAlchemyEntityStore[Article]) -> None:
        with pytest.raises(InvalidQueryError, match="unknown-relation"):
            await article_store.find_by_id(1, FindOptions(relations=("author",)))

    async def test_find_one(
        self, article_store: SQLAlchemyEntityStore[Article], db_session: AsyncSession
    ) -> None:
        await create_article(db_session, slug="first")
        await create_article(db_session, slug="second")
        await db_session.commit()

        found = await article_store.find_one(Eq("slug", "second"))

        assert found is not None and found.slug == "second"
        assert await article_store.find_one(Eq("slug", "third")) is None

    async def test_find_and_count_windows_and_counts(
        self, article_store: SQLAlchemyEntityStore[Article], db_session: AsyncSession
    ) -> None:
        for i in range(7):
            await create_article(db_session, view_count=i, status="published" if i % 2 else "draft")
        await db_session.commit()

        rows, total = await article_store.find_and_count(
            FindAndCountOptions(
                where=Eq("status", "published"),
                order=(("view_count", "DESC"), ("id", "DESC")),
                skip=1,
                take=2,
            )
        )

        assert total == 3
        assert [row.view_count for row in rows] == [3, 1]

    async def test_find_and_count_without_count(
        self, article_store: SQLAlchemyEntityStore[Article], db_session: AsyncSession
    ) -> None:
        for _ in range(4):
            await create_article(db_session)
        await db_session.commit()

        rows, total = await article_store.find_and_count(FindAndCountOptions(take=3, count=False))

        assert len(rows) == 3
        assert total == 3

    async def test_select_loads_requested_columns(
        self, article_store: SQLAlchemyEntityStore[Article], db_session: AsyncSession
    ) -> None:
        article = await create_article(db_session, title="Partial")
        await db_session.commit()

        rows, _ = await article_store.find_and_count(FindAndCountOptions(select=("title",), where=In("id", [article.id])))

        assert rows[0].id == article.id
        assert rows[0].title == "Partial"

    async def test_unknown_order_column_rejected(self, article_store: SQLAlchemyEntityStore[Article]) -> None:
        with pytest.raises(InvalidQueryError):
            await article_store.find_and_count(FindAndCountOptions(order=(("nope", "ASC"),)))


class TestUpdate:
    """Test update_by_id()."""

    async def test_update_returns_rowcount_and_stamps_updated_at(
        self, article_store: SQLAlchemyEntityStore[Article], db_session: AsyncSession
    ) -> None:
        article = await create_article(db_session, title="Before")
        await db_session.commit()
        before = article.updated_at

        changed = await article_store.update_by_id(article.id, {"title": "After"})

        found = await article_store.find_by_id(article.id)
        assert changed == 1
        assert found.title == "After"
        assert found.updated_at.replace(tzinfo=None) >= before.replace(tzinfo=None)

    async def test_update_missing_returns_zero(self, article_store: SQLAlchemyEntityStore[Article]) -> None:
        assert await article_store.update_by_id(404, {"title": "x"}) == 0

    async def test_update_rejects_id(self, article_store: SQLAlchemyEntityStore[Article]) -> None:
        with pytest.raises(InvalidQueryError, match="immutable"):
            await article_store.update_by_id(1, {"id": 2})

    async def test_update_skips_soft_deleted(
        self, article_store: SQLAlchemyEntityStore[Article], db_session: AsyncSession
    ) -> None:
        article = await create_article(db_session)
        await db_session.commit()
        await article_store.soft_delete_by_id(article.id)

        assert await article_store.update_by_id(article.id, {"title": "x"}) == 0


class TestDeleteAndRestore:
    """Test hard delete, soft delete and restore."""

    async def test_soft_delete_hides_row(
        self, article_store: SQLAlchemyEntityStore[Article], db_session: AsyncSession
    ) -> None:
        article = await create_article(db_session)
        await db_session.commit()

        assert await article_store.soft_delete_by_id(article.id) == 1

        assert await article_store.find_by_id(article.id) is None
        hidden = await article_store.find_by_id(article.id, FindOptions(with_deleted=True))
        assert hidden is not None and hidden.deleted_at is not None
        _, total = await article_store.find_and_count(FindAndCountOptions())
        assert total == 0

    async def test_soft_delete_twice_returns_zero(
        self, article_store: SQLAlchemyEntityStore[Article], db_session: AsyncSession
    ) -> None:
        article = await create_article(db_session)
        await db_session.commit()

        await article_store.soft_delete_by_id(article.id)

        assert await article_store.soft_delete_by_id(article.id) == 0

    async def test_restore(
        self, article_store: SQLAlchemyEntityStore[Article], db_session: AsyncSession
    ) -> None:
        article = await create_article(db_session)
        await db_session.commit()
        await article_store.soft_delete_by_id(article.id)

        assert await article_store.restore_by_id(article.id) == 1

        restored = await article_store.find_by_id(article.id)
        assert restored is not None and restored.deleted_at is None

    async def test_soft_delete_without_support_hard_deletes(
        self, tag_store: SQLAlchemyEntityStore[Tag], db_session: AsyncSession
    ) -> None:
        tag = await create_tag(db_session)
        await db_session.commit()

        assert await tag_store.soft_delete_by_id(tag.id) == 1

        assert await tag_store.find_by_id(tag.id) is None
        assert await tag_store.find_by_id(tag.id, FindOptions(with_deleted=True)) is None

    async def test_restore_without_support_is_a_no_op(self, tag_store: SQLAlchemyEntityStore[Tag]) -> None:
        assert await tag_store.restore_by_id(1) == 0

    async def test_hard_delete_removes_soft_deleted_row(
        self, article_store: SQLAlchemyEntityStore[Article], db_session: AsyncSession
    ) -> None:
        article = await create_article(db_session)
        await db_session.commit()
        await article_store.soft_delete_by_id(article.id)

        assert await article_store.delete_by_id(article.id) == 1
        assert await article_store.find_by_id(article.id, FindOptions(with_deleted=True)) is None


class TestTransactions:
    """Test with_transaction() and calls joining a transaction."""

    async def test_commit_on_success(self, article_store: SQLAlchemyEntityStore[Article]) -> None:
        async def work(tx: AsyncSession) -> int:
            first = await article_store.save(article_store.create({"title": "A", "slug": "a"}), tx)
            await article_store.save(article_store.create({"title": "B", "slug": "b"}), tx)
            return first.id

        first_id = await article_store.with_transaction(work)

        _, total = await article_store.find_and_count(FindAndCountOptions())
        assert total == 2
        assert await article_store.find_by_id(first_id) is not None

    async def test_rollback_on_failure(self, article_store: SQLAlchemyEntityStore[Article]) -> None:
        async def work(tx: AsyncSession) -> None:
            await article_store.save(article_store.create({"title": "A", "slug": "a"}), tx)
            raise RuntimeError("abort")

        with pytest.raises(RuntimeError, match="abort"):
            await article_store.with_transaction(work)

        _, total = await article_store.find_and_count(FindAndCountOptions())
        assert total == 0

    async def test_conflict_inside_transaction_rolls_back(
        self, article_store: SQLAlchemyEntityStore[Article]
    ) -> None:
        async def work(tx: AsyncSession) -> None:
            await article_store.save(article_store.create({"title": "A", "slug": "same"}), tx)
            await article_store.save(article_store.create({"title": "B", "slug": "same"}), tx)

        with pytest.raises(PersistenceConflict):
            await article_store.with_transaction(work)

        _, total = await article_store.find_and_count(FindAndCountOptions())
        assert total == 0


class TestErrorClassification:
    """Test mapping of driver errors to typed persistence errors."""

    @pytest.fixture
    def failing_store(self) -> SQLAlchemyEntityStore[Article]:
        session = MagicMock(spec=AsyncSession)
        session.__aenter__ = AsyncMock(return_value=session)
        session.__aexit__ = AsyncMock(return_value=False)
        transaction = MagicMock()
        transaction.__aenter__ = AsyncMock(return_value=transaction)
        transaction.__aexit__ = AsyncMock(return_value=False)
        session.begin = MagicMock(return_value=transaction)
        session.execute = AsyncMock()
        factory = MagicMock(return_value=session)
        store = SQLAlchemyEntityStore(factory, Article, soft_delete=True)
        store._test_session = session  # type: ignore[attr-defined]
        return store

    @pytest.mark.parametrize(
        ("error", "expected", "kind"),
        [
            (IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed: articles.slug")), PersistenceConflict, "duplicate"),
            (IntegrityError("INSERT", {}, Exception('duplicate key value violates unique constraint "x"')), PersistenceConflict, "duplicate"),
            (IntegrityError("INSERT", {}, Exception("FOREIGN KEY constraint failed")), PersistenceConflict, "foreign_key"),
            (OperationalError("SELECT", {}, Exception("connection refused")), PersistenceUnavailable, None),
            (SQLAlchemyError("boom"), PersistenceError, None),
        ],
    )
    async def test_classification(
        self,
        failing_store: SQLAlchemyEntityStore[Article],
        error: Exception,
        expected: type,
        kind: str | None,
    ) -> None:
        failing_store._test_session.execute.side_effect = error  # type: ignore[attr-defined]

        with pytest.raises(expected) as exc_info:
            await failing_store.update_by_id(1, {"title": "x"})

        assert type(exc_info.value) is expected
        if kind is not None:
            assert exc_info.value.kind == kind
        assert "constraint" not in str(exc_info.value)

    async def test_sqlstate_codes(self, failing_store: SQLAlchemyEntityStore[Article]) -> None:
        orig = Exception("opaque")
        orig.pgcode = "23503"  # type: ignore[attr-defined]
        failing_store._test_session.execute.side_effect = IntegrityError("DELETE", {}, orig)  # type: ignore[attr-defined]

        with pytest.raises(PersistenceConflict) as exc_info:
            await failing_store.delete_by_id(1)

        assert exc_info.value.kind == "foreign_key"
