"""Persistence layer for entity access.

This module provides the entity store port, its SQLAlchemy adapter, the typed
filter predicates and the pagination primitives the services build on.
"""

from contentcore.repositories.base import SQLAlchemyEntityStore
from contentcore.repositories.cursor import (
    CursorToken,
    InvalidCursorError,
    PlainCursorCodec,
    SignedCursorCodec,
    codec_from_settings,
)
from contentcore.repositories.pagination import (
    CursorPage,
    CursorPageRequest,
    OffsetPage,
    OffsetPageRequest,
)
from contentcore.repositories.port import (
    EntityStore,
    FindAndCountOptions,
    FindOptions,
    InvalidQueryError,
    PersistenceConflict,
    PersistenceError,
    PersistenceUnavailable,
)

__all__ = [
    "SQLAlchemyEntityStore",
    "CursorToken",
    "InvalidCursorError",
    "PlainCursorCodec",
    "SignedCursorCodec",
    "codec_from_settings",
    "CursorPage",
    "CursorPageRequest",
    "OffsetPage",
    "OffsetPageRequest",
    "EntityStore",
    "FindAndCountOptions",
    "FindOptions",
    "InvalidQueryError",
    "PersistenceConflict",
    "PersistenceError",
    "PersistenceUnavailable",
]
