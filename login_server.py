#!/usr/bin/env python3
"""
login_server.py — minimal ASGI host for the OAuth2 login flow.

  GET /login     302 to the identity provider with a fresh state token
  GET /callback  validate the callback, exchange the code, fetch userinfo

The browser only ever sees the redirect and a success or generic failure
page; status codes, missing claims and CSRF reasons go to the server log.
The state registry lives for the lifetime of the app and is purged in the
background.
"""

import argparse
import asyncio
import html as html_mod
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Callable

from starlette.applications import Starlette
from starlette.concurrency import run_in_threadpool
from starlette.requests import Request
from starlette.responses import HTMLResponse, RedirectResponse, Response
from starlette.routing import Route

from oauth2_config import OAuth2Config, load_config
from oauth2_errors import ConfigurationError
from oauth2_login import IdentityAssertion, OAuth2LoginFlow, TokenValidationService
from oauth2_state import PURGE_INTERVAL, StateTokenManager

logger = logging.getLogger("oauth2-login")

IdentityHandler = Callable[[Request, IdentityAssertion], Response]


async def _periodic_purge(states: StateTokenManager, interval: float = PURGE_INTERVAL) -> None:
    """Background loop that drops expired state tokens."""
    while True:
        await asyncio.sleep(interval)
        try:
            states.purge()
        except Exception:
            logger.exception("periodic state purge failed")


def _no_store(response: Response) -> Response:
    response.headers["Cache-Control"] = "no-store"
    return response


def _welcome(request: Request, identity: IdentityAssertion) -> Response:
    """Default hand-off: confirm the login. Hosts replace this with session setup."""
    return _no_store(HTMLResponse(_success_page(identity.username)))


def create_app(config: OAuth2Config,
               token_service: TokenValidationService | None = None,
               on_identity: IdentityHandler | None = None,
               purge_interval: float = PURGE_INTERVAL) -> Starlette:
    """Build the login app. The state registry is created on startup."""
    handler = on_identity or _welcome

    @asynccontextmanager
    async def lifespan(app: Starlette):
        states = StateTokenManager(max_validity=config.max_state_validity_seconds)
        app.state.flow = OAuth2LoginFlow(config, states, token_service)
        purge_task = asyncio.create_task(_periodic_purge(states, purge_interval))
        logger.info("oauth2-login: ready (state validity %d min)", config.max_state_validity)
        try:
            yield
        finally:
            purge_task.cancel()
            states.close()
            logger.info("oauth2-login: state registry closed")

    async def login(request: Request) -> Response:
        flow: OAuth2LoginFlow = request.app.state.flow
        redirect = flow.begin()
        return _no_store(RedirectResponse(redirect.url, status_code=302))

    async def callback(request: Request) -> Response:
        flow: OAuth2LoginFlow = request.app.state.flow
        params = dict(request.query_params)
        result = await run_in_threadpool(flow.complete, params)
        if not result.authenticated:
            logger.warning("login failed: %s", result.error)
            return _no_store(HTMLResponse(
                _error_page("Authentication failed",
                            "We could not sign you in. Please start the login again."),
                status_code=401,
            ))
        return handler(request, result.identity)

    return Starlette(
        routes=[
            Route("/login", login, methods=["GET"]),
            Route("/callback", callback, methods=["GET"]),
        ],
        lifespan=lifespan,
    )


# ---------------------------------------------------------------------------
# HTML templates
# ---------------------------------------------------------------------------

_STYLE = """
        body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', sans-serif;
            background: #f4f5f7; color: #222;
            display: flex; justify-content: center; align-items: center;
            min-height: 100vh; margin: 0; }
        .card { background: #fff; border: 1px solid #ddd; border-radius: 12px;
            padding: 2rem; max-width: 400px; width: 90%; text-align: center;
            box-shadow: 0 4px 24px rgba(0, 0, 0, 0.08); }
        h1 { font-size: 1.3rem; margin: 0 0 1rem 0; }
        a { color: #0366d6; }
"""


def _success_page(username: str) -> str:
    safe_name = html_mod.escape(username)
    return f"""<!DOCTYPE html>
<html>
<head>
    <title>Signed in</title>
    <meta name="viewport" content="width=device-width, initial-scale=1">
    <style>{_STYLE}</style>
</head>
<body>
    <div class="card">
        <h1>Signed in</h1>
        <p>Welcome, <strong>{safe_name}</strong>.</p>
    </div>
</body>
</html>"""


def _error_page(title: str, message: str) -> str:
    safe_title = html_mod.escape(title)
    safe_msg = html_mod.escape(message)
    return f"""<!DOCTYPE html>
<html>
<head>
    <title>{safe_title}</title>
    <meta name="viewport" content="width=device-width, initial-scale=1">
    <style>{_STYLE}</style>
</head>
<body>
    <div class="card">
        <h1>{safe_title}</h1>
        <p>{safe_msg}</p>
        <p style="margin-top:1.5rem"><a href="/login">Sign in again</a></p>
    </div>
</body>
</html>"""


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )

    # Audit logger — JSON-lines to ~/.oauth2-login/audit.log
    audit_log_path = Path.home() / ".oauth2-login" / "audit.log"
    audit_log_path.parent.mkdir(parents=True, exist_ok=True)
    audit_handler = logging.FileHandler(audit_log_path)
    audit_handler.setFormatter(logging.Formatter("%(message)s"))
    audit_logger = logging.getLogger("oauth2-audit")
    audit_logger.addHandler(audit_handler)
    audit_logger.setLevel(logging.INFO)
    audit_logger.propagate = False

    parser = argparse.ArgumentParser(description="OAuth2 login server")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8080)
    parser.add_argument("--config", type=Path, default=None,
                        help="YAML settings file (default: $OAUTH2_CONFIG or oauth2.yaml)")
    args = parser.parse_args()

    try:
        config = load_config(args.config)
    except ConfigurationError as e:
        raise SystemExit(f"oauth2-login: {e}")

    import uvicorn

    logger.info("oauth2-login: starting HTTP server on %s:%d", args.host, args.port)
    uvicorn.run(create_app(config), host=args.host, port=args.port,
                log_level="info", proxy_headers=True)


if __name__ == "__main__":
    main()
