"""Typed filter predicates and the default condition builder.

Filters travel through the access layer as a small tree of tagged variants
instead of loose dictionaries:

- ``Eq(field, value)``            field = value
- ``Range(field, gt=, gte=, lt=, lte=)``
- ``In(field, values)``           field IN (...)
- ``Like(field, pattern, case_sensitive=False)``
- ``IsNull(field, negate=False)``
- ``And(*items)`` / ``Or(*items)``

Each node exposes ``shape()``, a JSON-friendly canonical form used for cache
key hashing, and is compiled to SQLAlchemy by ``compile_predicate``.
"""

import unicodedata
from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from typing import Any, Iterable, Mapping, Union

from sqlalchemy import and_, false, inspect, or_, true
from sqlalchemy.sql.elements import ColumnElement

from contentcore.core.serialization import to_json_value
from contentcore.repositories.port import InvalidQueryError

# Multi-valued filters accept at most this many entries
MAX_FILTER_VALUES = 3


@dataclass(frozen=True)
class Eq:
    field: str
    value: Any

    def shape(self) -> Any:
        return ["eq", self.field, to_json_value(self.value)]


@dataclass(frozen=True)
class Range:
    field: str
    gt: Any = None
    gte: Any = None
    lt: Any = None
    lte: Any = None

    def __post_init__(self) -> None:
        if self.gt is None and self.gte is None and self.lt is None and self.lte is None:
            raise ValueError(f"Range on {self.field!r} needs at least one bound")

    def shape(self) -> Any:
        bounds = {
            name: to_json_value(getattr(self, name))
            for name in ("gt", "gte", "lt", "lte")
            if getattr(self, name) is not None
        }
        return ["range", self.field, bounds]


@dataclass(frozen=True)
class In:
    field: str
    values: tuple[Any, ...]

    def __init__(self, field: str, values: Iterable[Any]) -> None:
        object.__setattr__(self, "field", field)
        object.__setattr__(self, "values", tuple(values))

    def shape(self) -> Any:
        return ["in", self.field, sorted((to_json_value(v) for v in self.values), key=repr)]


@dataclass(frozen=True)
class Like:
    field: str
    pattern: str
    case_sensitive: bool = False

    def shape(self) -> Any:
        return ["like", self.field, self.pattern, self.case_sensitive]


@dataclass(frozen=True)
class IsNull:
    field: str
    negate: bool = False

    def shape(self) -> Any:
        return ["notnull" if self.negate else "isnull", self.field]


@dataclass(frozen=True)
class And:
    items: tuple["Predicate", ...]

    def __init__(self, *items: "Predicate") -> None:
        object.__setattr__(self, "items", tuple(items))

    def shape(self) -> Any:
        return ["and", [item.shape() for item in self.items]]


@dataclass(frozen=True)
class Or:
    items: tuple["Predicate", ...]

    def __init__(self, *items: "Predicate") -> None:
        object.__setattr__(self, "items", tuple(items))

    def shape(self) -> Any:
        return ["or", [item.shape() for item in self.items]]


Predicate = Union[Eq, Range, In, Like, IsNull, And, Or]


def from_mapping(filters: Mapping[str, Any]) -> And:
    """Equality filters from a plain mapping; list values become ``In``."""
    items: list[Predicate] = []
    for name in sorted(filters):
        value = filters[name]
        if isinstance(value, (Eq, Range, In, Like, IsNull, And, Or)):
            items.append(value)
        elif isinstance(value, (list, tuple, set, frozenset)):
            items.append(In(name, value))
        elif value is None:
            items.append(IsNull(name))
        else:
            items.append(Eq(name, value))
    return And(*items)


def conjoin(*predicates: Predicate | None) -> Predicate:
    """AND together the given predicates, dropping empties."""
    items = [p for p in predicates if p is not None and not (isinstance(p, And) and not p.items)]
    if len(items) == 1:
        return items[0]
    return And(*items)


def referenced_fields(predicate: Predicate) -> set[str]:
    """Every column name mentioned anywhere in the tree."""
    if isinstance(predicate, (And, Or)):
        names: set[str] = set()
        for item in predicate.items:
            names |= referenced_fields(item)
        return names
    return {predicate.field}


def compile_predicate(model: type[Any], predicate: Predicate) -> ColumnElement[bool]:
    """Compile a predicate tree to a SQLAlchemy boolean expression for ``model``.

    Raises:
        InvalidQueryError: If the tree references a column the model does not map
    """
    if isinstance(predicate, And):
        if not predicate.items:
            return true()
        return and_(*(compile_predicate(model, item) for item in predicate.items))
    if isinstance(predicate, Or):
        if not predicate.items:
            return false()
        return or_(*(compile_predicate(model, item) for item in predicate.items))

    column = _column(model, predicate.field)

    if isinstance(predicate, Eq):
        return column == predicate.value
    if isinstance(predicate, In):
        return column.in_(predicate.values)
    if isinstance(predicate, IsNull):
        return column.is_not(None) if predicate.negate else column.is_(None)
    if isinstance(predicate, Like):
        if predicate.case_sensitive:
            return column.like(predicate.pattern)
        return column.ilike(predicate.pattern)
    if isinstance(predicate, Range):
        clauses = []
        if predicate.gt is not None:
            clauses.append(column > predicate.gt)
        if predicate.gte is not None:
            clauses.append(column >= predicate.gte)
        if predicate.lt is not None:
            clauses.append(column < predicate.lt)
        if predicate.lte is not None:
            clauses.append(column <= predicate.lte)
        return and_(*clauses)

    raise InvalidQueryError("where", "unsupported-predicate")


def _column(model: type[Any], name: str) -> Any:
    columns = inspect(model).columns
    if name not in columns:
        raise InvalidQueryError(name, "unknown-field")
    return getattr(model, name)


# ============================================================================
# DEFAULT CONDITION BUILDER
# ============================================================================


def normalize_search_input(value: Any) -> Any:
    """NFKC-normalize and strip strings; other values pass through."""
    if isinstance(value, str):
        return unicodedata.normalize("NFKC", value).strip()
    return value


def _as_list(value: Any, name: str) -> list[Any]:
    if isinstance(value, str):
        items = [part.strip() for part in value.split(",") if part.strip()]
    elif isinstance(value, (list, tuple, set, frozenset)):
        items = list(value)
    else:
        items = [value]
    if len(items) > MAX_FILTER_VALUES:
        raise InvalidQueryError(name, "too-many-values")
    return items


def _day_bound(value: Any, end: bool) -> datetime:
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value)
        except ValueError as e:
            raise InvalidQueryError("date", "invalid") from e
    if isinstance(value, datetime):
        day = value.date()
        tzinfo = value.tzinfo or timezone.utc
    elif isinstance(value, date):
        day = value
        tzinfo = timezone.utc
    else:
        raise InvalidQueryError("date", "invalid")
    return datetime.combine(day, time.max if end else time.min, tzinfo=tzinfo)


_RESERVED_FILTER_KEYS = {
    "status", "ids", "from_date", "to_date", "date_filter_field",
    "query", "fields", "case_sensitive",
}


def build_conditions(
    raw_filters: Mapping[str, Any] | None,
    default_search_field: str = "name",
) -> Predicate:
    """Build a predicate tree from caller-supplied list filters.

    Recognized keys:
        status, ids: scalar, list or comma-separated string (max 3 values)
        from_date, to_date: day bounds applied to ``date_filter_field``
            (default ``created_at``), widened to start and end of day
        query: substring search over ``fields`` (max 3, OR-ed) or
            ``default_search_field``; ``case_sensitive`` switches LIKE/ILIKE

    Any other key becomes an equality filter (lists become ``In``).

    Example:
        build_conditions({"status": "published,draft", "query": "py"}, "title")
    """
    filters = {k: normalize_search_input(v) for k, v in (raw_filters or {}).items() if v is not None}
    items: list[Predicate] = []

    if "status" in filters:
        statuses = _as_list(filters["status"], "status")
        items.append(Eq("status", statuses[0]) if len(statuses) == 1 else In("status", statuses))

    if "ids" in filters:
        ids = _as_list(filters["ids"], "ids")
        items.append(Eq("id", ids[0]) if len(ids) == 1 else In("id", ids))

    date_field = filters.get("date_filter_field") or "created_at"
    from_date = filters.get("from_date")
    to_date = filters.get("to_date")
    if from_date is not None or to_date is not None:
        items.append(Range(
            date_field,
            gte=_day_bound(from_date, end=False) if from_date is not None else None,
            lte=_day_bound(to_date, end=True) if to_date is not None else None,
        ))

    query = filters.get("query")
    if query:
        case_sensitive = str(filters.get("case_sensitive", "0")).lower() in ("1", "true")
        pattern = f"%{query}%"
        search_fields = _as_list(filters["fields"], "fields") if filters.get("fields") else [default_search_field]
        likes = [Like(name, pattern, case_sensitive) for name in search_fields]
        items.append(likes[0] if len(likes) == 1 else Or(*likes))

    for name in sorted(set(filters) - _RESERVED_FILTER_KEYS):
        value = filters[name]
        if isinstance(value, (list, tuple, set, frozenset)):
            items.append(In(name, value))
        else:
            items.append(Eq(name, value))

    return conjoin(*items)
