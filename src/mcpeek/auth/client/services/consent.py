"""Consent providers: how the user is sent to the authorization URL and how
the redirect back is captured.
"""

from __future__ import annotations

import asyncio
import logging
import socket
import webbrowser
from typing import Awaitable, Callable, Protocol
from urllib.parse import urlparse

import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import HTMLResponse, Response
from starlette.routing import Route

from mcpeek.auth.client.models.errors import AuthorizationError
from mcpeek.auth.client.models.flow import ConsentResult
from mcpeek.auth.client.services.security import is_trusted_callback

logger = logging.getLogger(__name__)

_DONE_PAGE = """<!doctype html>
<html><head><title>mcpeek</title></head>
<body><p>Authorization complete. You can close this window.</p></body></html>"""


class ConsentProvider(Protocol):
    """Presents an authorization URL and waits for the redirect back.

    Allows different strategies for user interaction:
    - Loopback (open browser + local callback server)
    - Manual (hand the URL to the caller, receive the callback URL)
    """

    async def request(self, authorization_url: str) -> ConsentResult | None:
        """Return the callback parameters, or None if consent was abandoned."""
        ...


class LoopbackConsentProvider:
    """Opens the system browser and serves the redirect URI locally.

    Only requests addressed to the redirect URI's host, port and path are
    treated as callbacks. Anything else is answered with 400 and ignored.
    """

    def __init__(
        self,
        redirect_uri: str,
        timeout: float = 300.0,
        open_browser: Callable[[str], object] | None = webbrowser.open,
    ):
        """Initialize loopback consent.

        Args:
            redirect_uri: Registered redirect URI on a loopback host
            timeout: Seconds to wait for the callback before giving up
            open_browser: Called with the authorization URL, or None to only
                log it
        """
        parsed = urlparse(redirect_uri)
        if parsed.scheme != "http" or not parsed.hostname:
            raise ValueError(
                f"Loopback redirect URI must be http://host:port: {redirect_uri}"
            )

        self.redirect_uri = redirect_uri
        self.timeout = timeout
        self.host = parsed.hostname
        self.port = parsed.port or 80
        self._open_browser = open_browser
        self._callback: asyncio.Future[ConsentResult] | None = None

        self._app = Starlette(
            routes=[Route("/{path:path}", self._handle_request, methods=["GET"])]
        )

    async def request(self, authorization_url: str) -> ConsentResult | None:
        self._callback = asyncio.get_running_loop().create_future()
        sock = self._bind()

        config = uvicorn.Config(app=self._app, log_level="warning", lifespan="off")
        server = uvicorn.Server(config)
        serve_task = asyncio.create_task(server.serve(sockets=[sock]))
        logger.debug(f"Callback server listening on {self.host}:{self.port}")

        try:
            logger.info(f"Open this URL to authorize: {authorization_url}")
            if self._open_browser is not None:
                self._open_browser(authorization_url)

            return await asyncio.wait_for(self._callback, self.timeout)

        except asyncio.TimeoutError:
            logger.warning(f"No authorization callback within {self.timeout}s")
            return None

        finally:
            self._callback = None
            server.should_exit = True
            await serve_task
            sock.close()

    async def _handle_request(self, request: Request) -> Response:
        if not is_trusted_callback(
            self.redirect_uri, request.url.hostname, request.url.port, request.url.path
        ):
            logger.warning(
                f"Ignored request to callback server: {request.url.hostname}"
                f":{request.url.port}{request.url.path}"
            )
            return Response("Bad request", status_code=400)

        if self._callback is None or self._callback.done():
            return Response("No authorization in progress", status_code=400)

        self._callback.set_result(ConsentResult.from_query(request.url.query))
        return HTMLResponse(_DONE_PAGE)

    def _bind(self) -> socket.socket:
        family = socket.AF_INET6 if ":" in self.host else socket.AF_INET
        bind_host = "127.0.0.1" if self.host == "localhost" else self.host
        sock = socket.socket(family, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((bind_host, self.port))
        except OSError as e:
            sock.close()
            raise AuthorizationError(
                f"Cannot listen for the authorization callback on "
                f"{bind_host}:{self.port}: {e}"
            ) from e
        return sock


class ManualConsentProvider:
    """Hands the authorization URL to a caller-supplied coroutine.

    The coroutine returns the full callback URL the browser was redirected
    to, or None if the user gave up. Suitable for headless tools and tests.
    """

    def __init__(self, callback_handler: Callable[[str], Awaitable[str | None]]):
        self.callback_handler = callback_handler

    async def request(self, authorization_url: str) -> ConsentResult | None:
        callback_url = await self.callback_handler(authorization_url)
        if callback_url is None:
            return None
        return ConsentResult.from_callback_url(callback_url)
