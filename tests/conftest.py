from typing import Any, Callable
from urllib.parse import parse_qs, parse_qsl, urlencode, urlparse

import httpx
import pytest

SERVER_URL = "https://mcp.example.com/mcp"
PRM_URL = "https://mcp.example.com/.well-known/oauth-protected-resource/mcp"
AUTH_SERVER_URL = "https://auth.example.com"
ASM_URL = "https://auth.example.com/.well-known/oauth-authorization-server"
AUTHORIZE_URL = "https://auth.example.com/authorize"
TOKEN_URL = "https://auth.example.com/token"
REGISTER_URL = "https://auth.example.com/register"
REVOKE_URL = "https://auth.example.com/revoke"
REDIRECT_URI = "http://localhost:8765/oauth/callback"


class FakeAuthServer:
    """Scripted protected resource plus authorization server.

    Serves metadata, registration, token and revocation endpoints through an
    ``httpx.MockTransport`` and plays the user at the consent screen.
    Requests to the MCP server URL are forwarded to ``mcp_handler``.
    """

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.token_requests: list[dict[str, str]] = []
        self.revocations: list[dict[str, str]] = []
        self.consent_urls: list[str] = []

        self.prm: dict[str, Any] = {
            "resource": SERVER_URL,
            "authorization_servers": [AUTH_SERVER_URL],
            "scopes_supported": ["mcp:read", "mcp:write"],
        }
        self.asm: dict[str, Any] = {
            "issuer": AUTH_SERVER_URL,
            "authorization_endpoint": AUTHORIZE_URL,
            "token_endpoint": TOKEN_URL,
            "registration_endpoint": REGISTER_URL,
            "revocation_endpoint": REVOKE_URL,
            "code_challenge_methods_supported": ["S256"],
        }
        self.registration_response = httpx.Response(
            201, json={"client_id": "registered-client"}
        )
        self.token_responses: list[httpx.Response] = []
        self.consent_mode = "approve"
        self.issued = 0

        self.mcp_handler: Callable[[httpx.Request], httpx.Response] | None = None

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url).split("?")[0]

        if request.method == "GET" and url == PRM_URL:
            return httpx.Response(200, json=self.prm)
        if request.method == "GET" and url == ASM_URL:
            return httpx.Response(200, json=self.asm)
        if request.method == "POST" and url == REGISTER_URL:
            return self.registration_response
        if request.method == "POST" and url == TOKEN_URL:
            form = dict(parse_qsl(request.content.decode()))
            self.token_requests.append(form)
            if self.token_responses:
                return self.token_responses.pop(0)
            return self.issue_tokens()
        if request.method == "POST" and url == REVOKE_URL:
            self.revocations.append(dict(parse_qsl(request.content.decode())))
            return httpx.Response(200)
        if url.startswith(SERVER_URL) and self.mcp_handler is not None:
            return self.mcp_handler(request)

        return httpx.Response(404)

    def issue_tokens(self, expires_in: int = 3600) -> httpx.Response:
        self.issued += 1
        return httpx.Response(
            200,
            json={
                "access_token": f"access-{self.issued}",
                "token_type": "Bearer",
                "expires_in": expires_in,
                "refresh_token": f"refresh-{self.issued}",
            },
        )

    async def consent(self, authorization_url: str) -> str | None:
        """Answer the authorization URL the way the user would."""
        self.consent_urls.append(authorization_url)
        state = self.authorization_params(-1)["state"]

        if self.consent_mode == "cancel":
            return None
        if self.consent_mode == "deny":
            query = {"error": "access_denied", "state": state}
        elif self.consent_mode == "forge":
            query = {"code": "stolen", "state": "forged-state"}
        else:
            query = {"code": f"code-{len(self.consent_urls)}", "state": state}
        return f"{REDIRECT_URI}?{urlencode(query)}"

    def authorization_params(self, index: int = -1) -> dict[str, str]:
        query = parse_qs(urlparse(self.consent_urls[index]).query)
        return {key: values[0] for key, values in query.items()}

    def count(self, url: str) -> int:
        return sum(
            1 for r in self.requests if str(r.url).split("?")[0] == url
        )


@pytest.fixture
def auth_server() -> FakeAuthServer:
    return FakeAuthServer()
