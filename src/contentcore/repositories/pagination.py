"""Offset and keyset pagination: request objects, windows and page results.

Both modes order by ``(sort_by, id)`` so rows sharing a sort value still come
back in a stable order.
"""

import math
from dataclasses import dataclass, field, replace
from typing import Any, Generic, Mapping, TypeVar

from contentcore.core.config import settings
from contentcore.repositories.cursor import CursorCodec, CursorToken
from contentcore.repositories.port import InvalidQueryError, SortOrder
from contentcore.repositories.predicates import And, Eq, Or, Predicate, Range

T = TypeVar("T")


def normalize_order(order: str) -> SortOrder:
    normalized = str(order).upper()
    if normalized not in ("ASC", "DESC"):
        raise InvalidQueryError("order", "must-be-asc-or-desc")
    return normalized  # type: ignore[return-value]


def invert(order: SortOrder) -> SortOrder:
    return "ASC" if order == "DESC" else "DESC"


def _check_limit(limit: int | None, max_limit: int | None) -> int:
    if limit is None:
        limit = settings.pagination_default_limit
    if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
        raise InvalidQueryError("limit", "must-be-positive")
    if limit > (max_limit or settings.pagination_max_limit):
        raise InvalidQueryError("limit", "exceeds-maximum")
    return limit


def tiebreak_order(sort_by: str, order: SortOrder) -> tuple[tuple[str, SortOrder], ...]:
    """Order clause for ``sort_by`` with the id appended as tiebreaker."""
    if sort_by == "id":
        return (("id", order),)
    return ((sort_by, order), ("id", order))


# ============================================================================
# OFFSET PAGINATION
# ============================================================================


@dataclass(frozen=True)
class OffsetPageRequest:
    """Page-number request. ``limit=None`` means the configured default."""

    page: int = 1
    limit: int | None = None
    sort_by: str = "created_at"
    order: str = "DESC"
    filters: Mapping[str, Any] = field(default_factory=dict)

    def normalized(self, max_limit: int | None = None) -> "OffsetPageRequest":
        """Validated copy with the default limit applied and ``order`` upper-cased.

        Raises:
            InvalidQueryError: For a page below 1, a non-positive limit or one
                above the maximum, or an unknown order
        """
        if isinstance(self.page, bool) or not isinstance(self.page, int) or self.page < 1:
            raise InvalidQueryError("page", "must-be-positive")
        return replace(
            self,
            limit=_check_limit(self.limit, max_limit),
            order=normalize_order(self.order),
        )

    @property
    def skip(self) -> int:
        return (self.page - 1) * (self.limit or settings.pagination_default_limit)

    @property
    def take(self) -> int:
        return self.limit or settings.pagination_default_limit


@dataclass
class OffsetPage(Generic[T]):
    rows: list[T]
    current_page: int
    page_size: int
    total_records: int
    total_pages: int
    has_next_page: bool

    @classmethod
    def build(cls, rows: list[T], total_records: int, page: int, limit: int) -> "OffsetPage[T]":
        total_pages = math.ceil(total_records / limit) if total_records else 0
        return cls(
            rows=rows,
            current_page=page,
            page_size=limit,
            total_records=total_records,
            total_pages=total_pages,
            has_next_page=page < total_pages,
        )

    @property
    def meta_data(self) -> dict[str, Any]:
        return {
            "currentPage": self.current_page,
            "pageSize": self.page_size,
            "totalRecords": self.total_records,
            "totalPages": self.total_pages,
            "hasNextPage": self.has_next_page,
        }


# ============================================================================
# CURSOR (KEYSET) PAGINATION
# ============================================================================


@dataclass(frozen=True)
class CursorPageRequest:
    """Keyset request. ``cursor`` is an opaque token from a previous page."""

    limit: int | None = None
    sort_by: str = "created_at"
    order: str = "DESC"
    cursor: str | None = None
    filters: Mapping[str, Any] = field(default_factory=dict)

    def normalized(self, max_limit: int | None = None) -> "CursorPageRequest":
        return replace(
            self,
            limit=_check_limit(self.limit, max_limit),
            order=normalize_order(self.order),
            cursor=self.cursor or None,
        )


@dataclass
class CursorPage(Generic[T]):
    rows: list[T]
    next_cursor: str | None
    prev_cursor: str | None
    take: int
    sort_by: str
    order: SortOrder

    @property
    def meta_data(self) -> dict[str, Any]:
        meta: dict[str, Any] = {"take": self.take, "sortBy": self.sort_by, "order": self.order}
        if self.next_cursor is not None:
            meta["nextCursor"] = self.next_cursor
        if self.prev_cursor is not None:
            meta["prevCursor"] = self.prev_cursor
        return meta


def keyset_predicate(token: CursorToken) -> Predicate:
    """Rows strictly after ``token`` when scanning in ``token.sort_order``.

    ASC: ``field > v OR (field = v AND id > t)``; DESC inverts both comparators.
    ``token.sort_field`` must be a non-nullable column.
    """
    ascending = token.sort_order == "ASC"
    after_id = Range("id", gt=token.tiebreak_value) if ascending else Range("id", lt=token.tiebreak_value)
    if token.sort_field == "id":
        return after_id
    after_value = (
        Range(token.sort_field, gt=token.sort_value)
        if ascending
        else Range(token.sort_field, lt=token.sort_value)
    )
    return Or(after_value, And(Eq(token.sort_field, token.sort_value), after_id))


def cursor_window(request: CursorPageRequest, token: CursorToken | None) -> tuple[SortOrder, Predicate | None]:
    """Scan direction and window predicate for ``request`` positioned at ``token``.

    Raises:
        InvalidQueryError: If the cursor was issued for another sort column
    """
    if token is None:
        return normalize_order(request.order), None
    if token.sort_field != request.sort_by:
        raise InvalidQueryError("cursor", "sort-field-mismatch")
    return token.sort_order, keyset_predicate(token)


def build_cursor_page(
    rows: list[T],
    request: CursorPageRequest,
    scan_order: SortOrder,
    codec: CursorCodec,
) -> CursorPage[T]:
    """Assemble a page from rows read in ``scan_order``.

    ``next_cursor`` continues in the requested order from the last row and
    ``prev_cursor`` scans back from the first row. A cursor is only emitted
    when rows may exist in that direction; an empty page carries neither.
    """
    order = normalize_order(request.order)
    limit = request.limit or settings.pagination_default_limit
    backward = scan_order != order
    if backward:
        rows = list(reversed(rows))

    next_cursor = prev_cursor = None
    if rows:
        full = len(rows) >= limit
        has_next = True if backward else full
        has_prev = full if backward else request.cursor is not None
        if has_next:
            next_cursor = codec.encode(_token_for(rows[-1], request.sort_by, order))
        if has_prev:
            prev_cursor = codec.encode(_token_for(rows[0], request.sort_by, invert(order)))

    return CursorPage(
        rows=rows,
        next_cursor=next_cursor,
        prev_cursor=prev_cursor,
        take=limit,
        sort_by=request.sort_by,
        order=order,
    )


def _token_for(row: Any, sort_by: str, order: SortOrder) -> CursorToken:
    return CursorToken(
        sort_field=sort_by,
        sort_order=order,
        sort_value=getattr(row, sort_by),
        tiebreak_value=getattr(row, "id"),
    )
