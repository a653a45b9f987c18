"""Tests for the JSON error boundary."""
import json

import pytest
from fastapi import FastAPI, Request
from fastapi.testclient import TestClient

from contentcore.api.errors import (
    entity_access_error_handler,
    error_body,
    persistence_error_handler,
    register_error_handlers,
)
from contentcore.core.i18n import MessageCatalog
from contentcore.core.middleware import RequestIDMiddleware
from contentcore.repositories.port import PersistenceConflict, PersistenceUnavailable
from contentcore.services.errors import InternalError, NotFoundError, ValidationError


@pytest.fixture
def client() -> TestClient:
    app = FastAPI()
    app.add_middleware(RequestIDMiddleware)
    register_error_handlers(app)

    @app.get("/articles/{article_id}")
    async def get_article(article_id: int) -> None:
        raise NotFoundError("Article", article_id)

    @app.get("/invalid")
    async def invalid() -> None:
        raise ValidationError("limit", "exceeds-maximum", "Article")

    @app.get("/internal")
    async def internal() -> None:
        raise InternalError()

    @app.get("/conflict")
    async def conflict() -> None:
        raise PersistenceConflict("duplicate key value violates unique constraint", "Tag", kind="duplicate")

    @app.get("/unavailable")
    async def unavailable() -> None:
        raise PersistenceUnavailable("could not connect to server at 10.0.0.5", "Tag")

    return TestClient(app)


class TestErrorHandlers:
    def test_not_found(self, client: TestClient) -> None:
        response = client.get("/articles/7")

        assert response.status_code == 404
        assert response.json() == {
            "message": "Article with id 7 was not found",
            "messageKey": "common.NOT_FOUND",
            "args": {"entity": "Article", "id": 7},
        }
        assert "x-request-id" in response.headers

    def test_validation(self, client: TestClient) -> None:
        response = client.get("/invalid")

        assert response.status_code == 400
        body = response.json()
        assert body["messageKey"] == "common.VALIDATION_ERROR"
        assert body["message"] == "Invalid value for limit: exceeds-maximum"

    def test_internal_error_is_generic(self, client: TestClient) -> None:
        response = client.get("/internal")

        assert response.status_code == 500
        assert response.json() == {
            "message": "An unexpected error occurred",
            "messageKey": "common.INTERNAL_SERVER_ERROR",
            "args": {},
        }

    def test_escaped_conflict_is_translated(self, client: TestClient) -> None:
        response = client.get("/conflict")

        assert response.status_code == 409
        body = response.json()
        assert body["messageKey"] == "common.DUPLICATE"
        assert "constraint" not in body["message"]

    def test_escaped_unavailable_leaks_nothing(self, client: TestClient) -> None:
        response = client.get("/unavailable")

        assert response.status_code == 500
        assert "10.0.0.5" not in response.text


class TestErrorBody:
    def test_uses_given_localizer(self) -> None:
        catalog = MessageCatalog({"en": {"common.NOT_FOUND": "No {entity} #{id}"}}, locale="en")

        body = error_body(NotFoundError("Tag", 3), catalog)

        assert body["message"] == "No Tag #3"


class TestHandlersCalledDirectly:
    @staticmethod
    def _request() -> Request:
        return Request({"type": "http", "method": "GET", "path": "/tags/3", "headers": [], "query_string": b""})

    async def test_entity_access_error_handler(self) -> None:
        response = await entity_access_error_handler(self._request(), NotFoundError("Tag", 3))

        assert response.status_code == 404
        assert json.loads(response.body)["messageKey"] == "common.NOT_FOUND"

    async def test_persistence_error_handler(self) -> None:
        error = PersistenceConflict("duplicate key value", "Tag", kind="duplicate")

        response = await persistence_error_handler(self._request(), error)

        assert response.status_code == 409
        assert json.loads(response.body)["messageKey"] == "common.DUPLICATE"
