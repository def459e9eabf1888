"""Unit tests for the thread API mounted under /api/v1."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from coach_stream.api.app import app
from coach_stream.core.threads import (
    ChatThread,
    Message,
    MessageRole,
    ThreadManager,
    TodoItem,
)


@pytest.fixture
def client():
    """Test client for FastAPI app."""
    return TestClient(app)


@pytest.fixture
def seeded_redis(fake_redis):
    tm = ThreadManager(redis_client=fake_redis)
    for i, thread_id in enumerate(["older", "newer"]):
        thread = ChatThread(
            id=thread_id,
            messages=[Message(id=f"{thread_id}-1", role=MessageRole.HUMAN, content=f"Question {i}")],
            todos=[TodoItem(id="1", content="Check pace zones")],
            files={"plan.md": "# Plan"},
            updated_at=1000 + i,
        )
        asyncio.run(tm.save_thread(thread))
    return fake_redis


class TestThreadsAPI:
    def test_list_threads(self, client, seeded_redis):
        with patch("coach_stream.api.threads.get_redis_client", return_value=seeded_redis):
            resp = client.get("/api/v1/threads")

        assert resp.status_code == 200
        data = resp.json()
        assert [t["id"] for t in data] == ["newer", "older"]
        assert data[0]["title"] == "Question 1"
        assert data[0]["message_count"] == 1

    def test_list_threads_error(self, client):
        with patch("coach_stream.api.threads.get_redis_client") as mock_get:
            mock_get.side_effect = Exception("Redis connection failed")
            resp = client.get("/api/v1/threads")
        assert resp.status_code == 500
        assert resp.json()["detail"] == "Failed to list threads"

    def test_get_thread_snapshot(self, client, seeded_redis):
        with patch("coach_stream.api.threads.get_redis_client", return_value=seeded_redis):
            resp = client.get("/api/v1/threads/newer")

        assert resp.status_code == 200
        data = resp.json()
        assert set(data) == {"todos", "files", "messages"}
        assert data["messages"][0]["type"] == "human"
        assert data["messages"][0]["content"] == "Question 1"
        assert data["todos"][0]["content"] == "Check pace zones"
        assert data["files"] == {"plan.md": "# Plan"}

    def test_get_missing_thread_is_empty(self, client, fake_redis):
        with patch("coach_stream.api.threads.get_redis_client", return_value=fake_redis):
            resp = client.get("/api/v1/threads/nope")
        assert resp.status_code == 200
        assert resp.json() == {"todos": [], "files": {}, "messages": []}

    def test_get_thread_error(self, client):
        mock_tm = MagicMock()
        mock_tm.get_snapshot = AsyncMock(side_effect=Exception("boom"))
        with (
            patch("coach_stream.api.threads.get_redis_client"),
            patch("coach_stream.api.threads.ThreadManager", return_value=mock_tm),
        ):
            resp = client.get("/api/v1/threads/t1")
        assert resp.status_code == 500
        assert resp.json()["detail"] == "boom"

    def test_delete_thread(self, client, seeded_redis):
        with patch("coach_stream.api.threads.get_redis_client", return_value=seeded_redis):
            resp = client.delete("/api/v1/threads/older")
            remaining = client.get("/api/v1/threads").json()

        assert resp.status_code == 204
        assert resp.text == ""
        assert [t["id"] for t in remaining] == ["newer"]

    def test_delete_thread_failure(self, client):
        mock_tm = MagicMock()
        mock_tm.delete_thread = AsyncMock(return_value=False)
        with (
            patch("coach_stream.api.threads.get_redis_client"),
            patch("coach_stream.api.threads.ThreadManager", return_value=mock_tm),
        ):
            resp = client.delete("/api/v1/threads/t1")
        assert resp.status_code == 500

    def test_clear_threads(self, client, seeded_redis):
        with patch("coach_stream.api.threads.get_redis_client", return_value=seeded_redis):
            resp = client.delete("/api/v1/threads")
        assert resp.status_code == 200
        assert resp.json() == {"deleted": 2}


class TestHealth:
    def test_root(self, client):
        resp = client.get("/")
        assert resp.status_code == 200
        assert "is running" in resp.text

    def test_health_ok(self, client):
        with patch(
            "coach_stream.api.health.test_redis_connection", AsyncMock(return_value=True)
        ):
            resp = client.get("/api/v1/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "healthy"

    def test_health_redis_down(self, client):
        with patch(
            "coach_stream.api.health.test_redis_connection", AsyncMock(return_value=False)
        ):
            resp = client.get("/api/v1/health")
        assert resp.status_code == 503
        assert resp.json()["components"]["redis_connection"] == "unavailable"
