"""Message catalog used to render localized error messages at the boundary."""

from typing import Any, Mapping, Protocol

from contentcore.core.config import settings
from contentcore.core.logging import get_logger

logger = get_logger(__name__)


class Localizer(Protocol):
    """Anything that turns a message key plus arguments into text."""

    def translate(self, key: str, args: Mapping[str, Any] | None = None) -> str:
        ...


DEFAULT_MESSAGES: dict[str, dict[str, str]] = {
    "en": {
        "common.NOT_FOUND": "{entity} with id {id} was not found",
        "common.DUPLICATE": "{entity} conflicts with an existing record",
        "common.FK_CONSTRAINT": "{entity} references a record that does not exist",
        "common.VALIDATION_ERROR": "Invalid value for {field}: {reason}",
        "common.INTERNAL_SERVER_ERROR": "An unexpected error occurred",
    },
}


class MessageCatalog:
    """Localizer backed by per-locale ``str.format`` templates.

    Unknown keys and templates missing an argument fall back to the key
    itself so a rendering problem never masks the original error.
    """

    def __init__(
        self,
        messages: Mapping[str, Mapping[str, str]] | None = None,
        locale: str | None = None,
    ) -> None:
        self._messages = messages or DEFAULT_MESSAGES
        self.locale = locale or settings.default_locale

    def for_locale(self, locale: str) -> "MessageCatalog":
        """Return a catalog sharing these templates but rendering another locale."""
        return MessageCatalog(self._messages, locale)

    def translate(self, key: str, args: Mapping[str, Any] | None = None) -> str:
        templates = self._messages.get(self.locale) or self._messages.get(settings.default_locale, {})
        template = templates.get(key)
        if template is None:
            return key
        try:
            return template.format(**(args or {}))
        except (KeyError, IndexError, ValueError):
            logger.warning("Message template could not be rendered", key=key, locale=self.locale)
            return key
