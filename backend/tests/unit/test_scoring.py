"""
Unit tests for the scoring hook client.
"""

import aiohttp
import pytest
from aiohttp import test_utils, web

from labrange.core.config import Settings
from labrange.infrastructure.orchestrator.models import FlagType
from labrange.infrastructure.orchestrator.services.scoring import (
    HttpScoringHook,
    NullScoringHook,
    create_scoring_hook,
)


@pytest.fixture
async def scoring_server():
    received = []

    async def score(request: web.Request) -> web.Response:
        received.append((await request.json(), request.headers.get("Authorization")))
        if request.query.get("fail"):
            return web.json_response({"detail": "down"}, status=503)
        return web.json_response({"new_badges": ["root-hunter"], "ranking": 3})

    app = web.Application()
    app.router.add_post("/score", score)
    server = test_utils.TestServer(app)
    await server.start_server()
    server.received = received
    yield server
    await server.close()


class TestHttpScoringHook:
    """Test the HTTP scoring client."""

    async def test_posts_accepted_flag(self, scoring_server):
        hook = HttpScoringHook(str(scoring_server.make_url("/score")), secret="hook-token")

        result = await hook.on_flag_accepted("alice", "lab-web-101", FlagType.ROOT, 50)

        assert result.new_badges == ["root-hunter"]
        assert result.ranking == 3
        payload, authorization = scoring_server.received[0]
        assert payload == {
            "user_id": "alice",
            "lab_id": "lab-web-101",
            "flag_type": "root",
            "points": 50,
        }
        assert authorization == "Bearer hook-token"

    async def test_error_status_raises(self, scoring_server):
        hook = HttpScoringHook(str(scoring_server.make_url("/score?fail=1")))

        with pytest.raises(aiohttp.ClientResponseError):
            await hook.on_flag_accepted("alice", "lab-web-101", FlagType.USER, 25)


class TestHookSelection:
    """Test hook construction from settings."""

    def test_null_hook_without_url(self):
        settings = Settings(secret_key="test-secret-key-with-at-least-32-chars")

        assert isinstance(create_scoring_hook(settings), NullScoringHook)

    def test_http_hook_with_url(self):
        settings = Settings(
            secret_key="test-secret-key-with-at-least-32-chars",
            scoring_hook_url="http://scoring.internal/api/flags",
        )

        hook = create_scoring_hook(settings)

        assert isinstance(hook, HttpScoringHook)
        assert hook.url == "http://scoring.internal/api/flags"

    async def test_null_hook_result(self):
        result = await NullScoringHook().on_flag_accepted("alice", "lab", FlagType.USER, 25)

        assert result.new_badges == []
        assert result.ranking is None
