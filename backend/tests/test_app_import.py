"""Tests that import main.py, covering app creation, CORS, and router registration."""

from __future__ import annotations

from fastapi.middleware.cors import CORSMiddleware


class TestAppSetup:
    def test_app_exists(self):
        from main import app
        assert app is not None
        assert app.title == "MedMind Conversation API"

    def test_routers_registered(self):
        from main import app

        route_paths = {r.path for r in app.routes if hasattr(r, "path")}
        for path in (
            "/api/v1/conversations/",
            "/api/v1/conversations/{conversation_id}/",
            "/api/v1/conversations/{conversation_id}/messages/",
            "/api/v1/conversations/{conversation_id}/archive/",
            "/api/v1/conversations/limits/",
            "/api/v1/conversations/stats/",
            "/api/v1/assistants/",
            "/health",
        ):
            assert path in route_paths

    def test_limits_route_declared_before_detail(self):
        """/limits/ must not be captured by /{conversation_id}/."""
        from main import app

        paths = [r.path for r in app.routes if hasattr(r, "path")]
        assert paths.index("/api/v1/conversations/limits/") < paths.index("/api/v1/conversations/{conversation_id}/")

    def test_cors_middleware_installed(self):
        from main import app

        assert any(m.cls is CORSMiddleware for m in app.user_middleware)
