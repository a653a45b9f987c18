"""Entity services built on the generic cache-aside facade.

Feature services subclass ``EntityService`` and customize behavior through
its lifecycle hooks.
"""

from contentcore.services.base import AccessContext, EntityService
from contentcore.services.cache_aside import CacheAsideCoordinator, CacheOptions
from contentcore.services.errors import (
    ConflictError,
    EntityAccessError,
    InternalError,
    NotFoundError,
    ValidationError,
    translate_persistence_error,
)
from contentcore.services.whitelist import AccessWhitelist

__all__ = [
    "AccessContext",
    "EntityService",
    "CacheAsideCoordinator",
    "CacheOptions",
    "ConflictError",
    "EntityAccessError",
    "InternalError",
    "NotFoundError",
    "ValidationError",
    "translate_persistence_error",
    "AccessWhitelist",
]
