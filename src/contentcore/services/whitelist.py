"""Per-entity whitelist of relations and fields callers may request."""

from dataclasses import dataclass
from typing import Iterable

from contentcore.services.errors import ValidationError


@dataclass(frozen=True)
class AccessWhitelist:
    """Relations and fields a feature allows clients to ask for.

    An empty whitelist allows no relations and no field selection.

    Example:
        AccessWhitelist(relations={"tags"}, fields={"id", "title", "slug"})
    """

    relations: frozenset[str] = frozenset()
    fields: frozenset[str] = frozenset()

    def __init__(self, relations: Iterable[str] = (), fields: Iterable[str] = ()) -> None:
        object.__setattr__(self, "relations", frozenset(relations))
        object.__setattr__(self, "fields", frozenset(fields))

    def check(
        self,
        entity: str,
        relations: Iterable[str] = (),
        fields: Iterable[str] = (),
    ) -> None:
        """Raise ValidationError for the first requested name not allowed.

        Names are checked in sorted order so the reported field is stable.
        """
        for name in sorted(set(relations) - self.relations):
            raise ValidationError(name, "relation-not-allowed", entity)
        for name in sorted(set(fields) - self.fields):
            raise ValidationError(name, "field-not-allowed", entity)
