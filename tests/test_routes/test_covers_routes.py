"""Tests for POST /api/v1/books/{book_id}/cover."""

import uuid
from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient

from chronicle.main import app


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def cover_service():
    with patch("chronicle.routes.covers.CoverService") as service_cls:
        service = service_cls.return_value
        service.generate_for_book = AsyncMock(return_value=None)
        yield service


class TestRequestCover:
    def test_queues_generation(self, client, cover_service):
        """
        GIVEN a book without a cover
        WHEN a cover is requested
        THEN 202 is returned and generation runs as a background task
        """
        book_id = uuid.uuid4()
        cover_service.request_cover = AsyncMock(return_value="queued")

        response = client.post(f"/api/v1/books/{book_id}/cover")

        assert response.status_code == 202
        assert response.json() == {"status": "queued", "book_id": str(book_id)}
        cover_service.request_cover.assert_awaited_once_with(book_id, regenerate=False)
        cover_service.generate_for_book.assert_awaited_once_with(book_id, False)

    def test_regenerate_flag_is_forwarded(self, client, cover_service):
        book_id = uuid.uuid4()
        cover_service.request_cover = AsyncMock(return_value="queued")

        response = client.post(f"/api/v1/books/{book_id}/cover", json={"regenerate": True})

        assert response.status_code == 202
        cover_service.request_cover.assert_awaited_once_with(book_id, regenerate=True)
        cover_service.generate_for_book.assert_awaited_once_with(book_id, True)

    @pytest.mark.parametrize("outcome", ["ready", "in_progress"])
    def test_noop_outcomes_return_200(self, client, cover_service, outcome):
        book_id = uuid.uuid4()
        cover_service.request_cover = AsyncMock(return_value=outcome)

        response = client.post(f"/api/v1/books/{book_id}/cover")

        assert response.status_code == 200
        assert response.json() == {"status": outcome, "book_id": str(book_id)}
        cover_service.generate_for_book.assert_not_called()

    def test_unknown_book_returns_404(self, client, cover_service):
        cover_service.request_cover = AsyncMock(side_effect=LookupError("Book not found"))

        response = client.post(f"/api/v1/books/{uuid.uuid4()}/cover")

        assert response.status_code == 404
        cover_service.generate_for_book.assert_not_called()
