"""Client settings read from the environment and an optional ``.env`` file."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

from mcpeek.auth.client.oauth_client import DEFAULT_REDIRECT_URI
from mcpeek.transport.base import TransportMode

ENV_PREFIX = "MCPEEK_"


@dataclass
class ClientSettings:
    server_url: str
    client_name: str = "MCPeek"
    client_version: str = "2.0.0"
    scopes: str | None = None
    redirect_uri: str = DEFAULT_REDIRECT_URI
    client_id: str | None = None
    timeout: float = 30.0
    consent_timeout: float = 300.0
    credentials_path: Path = Path("~/.mcpeek/credentials.json")
    transport_mode: TransportMode | None = None

    @classmethod
    def from_env(cls, env_file: str | Path | None = None) -> ClientSettings:
        """Load settings from ``MCPEEK_*`` variables.

        Values already in the environment take precedence over the ``.env``
        file.

        Raises:
            ValueError: If the server URL is missing or a value is malformed
        """
        load_dotenv(env_file)

        server_url = _get("SERVER_URL")
        if not server_url:
            raise ValueError(f"{ENV_PREFIX}SERVER_URL is required")

        settings = cls(server_url=server_url)
        settings.client_name = _get("CLIENT_NAME") or settings.client_name
        settings.client_version = _get("CLIENT_VERSION") or settings.client_version
        settings.scopes = _get("SCOPES") or None
        settings.redirect_uri = _get("REDIRECT_URI") or settings.redirect_uri
        settings.client_id = _get("CLIENT_ID") or None
        settings.timeout = _get_float("TIMEOUT", settings.timeout)
        settings.consent_timeout = _get_float(
            "CONSENT_TIMEOUT", settings.consent_timeout
        )

        credentials_path = _get("CREDENTIALS_PATH")
        if credentials_path:
            settings.credentials_path = Path(credentials_path)

        transport = _get("TRANSPORT")
        if transport:
            try:
                settings.transport_mode = TransportMode(transport)
            except ValueError as e:
                choices = ", ".join(mode.value for mode in TransportMode)
                raise ValueError(
                    f"{ENV_PREFIX}TRANSPORT must be one of {choices}, got {transport!r}"
                ) from e

        return settings


def _get(name: str) -> str | None:
    value = os.getenv(f"{ENV_PREFIX}{name}")
    return value.strip() if value is not None else None


def _get_float(name: str, default: float) -> float:
    raw = _get(name)
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError as e:
        raise ValueError(f"{ENV_PREFIX}{name} must be a number, got {raw!r}") from e
    if value <= 0:
        raise ValueError(f"{ENV_PREFIX}{name} must be positive, got {raw!r}")
    return value
