"""Tests for login_server.py."""
import asyncio
import sys
from pathlib import Path
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest
from starlette.responses import PlainTextResponse
from starlette.testclient import TestClient

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from login_server import _periodic_purge, create_app
from oauth2_config import build_config
from oauth2_login import TokenValidationService
from oauth2_state import StateTokenManager

ACCESS_TOKEN = "server-test-access-token"


@pytest.fixture
def config():
    return build_config({
        "authorization_endpoint": "https://idp.example.com/authorize",
        "token_endpoint": "https://idp.example.com/token",
        "userinfo_endpoint": "https://idp.example.com/userinfo",
        "client_id": "app",
        "client_secret": "shh",
        "redirect_uri": "https://app.example.com/callback",
    })


def _idp(request: httpx.Request) -> httpx.Response:
    if request.url.path == "/token":
        return httpx.Response(200, json={"access_token": ACCESS_TOKEN})
    if request.headers.get("authorization") != f"Bearer {ACCESS_TOKEN}":
        return httpx.Response(401)
    return httpx.Response(200, json={"username": "<alice>", "groups": ["ops"]})


@pytest.fixture
def token_service(config):
    return TokenValidationService(config, transport=httpx.MockTransport(_idp))


def _state_from(response) -> str:
    location = response.headers["location"]
    return parse_qs(urlsplit(location).query)["state"][0]


# ---------------------------------------------------------------------------
# /login and /callback
# ---------------------------------------------------------------------------

class TestRoutes:
    def test_login_redirects_to_idp(self, config, token_service):
        with TestClient(create_app(config, token_service)) as client:
            response = client.get("/login", follow_redirects=False)
        assert response.status_code == 302
        assert response.headers["location"].startswith("https://idp.example.com/authorize?")
        assert response.headers["cache-control"] == "no-store"
        assert _state_from(response)

    def test_callback_success(self, config, token_service):
        with TestClient(create_app(config, token_service)) as client:
            state = _state_from(client.get("/login", follow_redirects=False))
            response = client.get("/callback", params={"state": state, "code": "c"})
        assert response.status_code == 200
        assert "&lt;alice&gt;" in response.text
        assert ACCESS_TOKEN not in response.text

    def test_callback_replay_rejected(self, config, token_service):
        with TestClient(create_app(config, token_service)) as client:
            state = _state_from(client.get("/login", follow_redirects=False))
            assert client.get("/callback", params={"state": state, "code": "c"}).status_code == 200
            response = client.get("/callback", params={"state": state, "code": "c"})
        assert response.status_code == 401
        assert "Authentication failed" in response.text

    def test_callback_without_state(self, config, token_service):
        with TestClient(create_app(config, token_service)) as client:
            response = client.get("/callback", params={"code": "c"})
        assert response.status_code == 401
        assert response.headers["cache-control"] == "no-store"

    def test_failure_page_hides_detail(self, config, token_service):
        with TestClient(create_app(config, token_service)) as client:
            response = client.get("/callback", params={"state": "forged", "code": "c"})
        assert response.status_code == 401
        assert "not_found" not in response.text
        assert "forged" not in response.text

    def test_custom_identity_handler(self, config, token_service):
        seen = []

        def on_identity(request, identity):
            seen.append(identity)
            return PlainTextResponse(f"session for {identity.username}")

        app = create_app(config, token_service, on_identity=on_identity)
        with TestClient(app) as client:
            state = _state_from(client.get("/login", follow_redirects=False))
            response = client.get("/callback", params={"state": state, "code": "c"})
        assert response.text == "session for <alice>"
        assert seen[0].groups == frozenset({"ops"})

    def test_registry_closed_on_shutdown(self, config, token_service):
        app = create_app(config, token_service)
        with TestClient(app) as client:
            client.get("/login", follow_redirects=False)
            states = app.state.flow.states
            assert len(states) == 1
        assert len(states) == 0
        with pytest.raises(RuntimeError):
            states.issue()


# ---------------------------------------------------------------------------
# Background purge
# ---------------------------------------------------------------------------

class TestPeriodicPurge:
    @pytest.mark.asyncio
    async def test_purge_loop_drops_expired(self):
        now = [0.0]
        states = StateTokenManager(max_validity=5, clock=lambda: now[0])
        states.issue()
        now[0] = 10.0

        task = asyncio.create_task(_periodic_purge(states, interval=0.01))
        await asyncio.sleep(0.05)
        task.cancel()

        assert len(states) == 0

    @pytest.mark.asyncio
    async def test_purge_loop_survives_errors(self):
        calls = []

        class Flaky:
            def purge(self):
                calls.append(1)
                raise RuntimeError("boom")

        task = asyncio.create_task(_periodic_purge(Flaky(), interval=0.01))
        await asyncio.sleep(0.05)
        task.cancel()

        assert len(calls) >= 2
