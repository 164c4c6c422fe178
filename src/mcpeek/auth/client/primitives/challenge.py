"""Parsing of ``WWW-Authenticate`` access challenges (RFC 6750, RFC 9728)."""

from __future__ import annotations

import re
from dataclasses import dataclass, field

# auth-param: name="quoted value" or name=token
_PARAM_PATTERN = re.compile(r'([A-Za-z_][\w-]*)\s*=\s*(?:"((?:[^"\\]|\\.)*)"|([^\s,]+))')


@dataclass(frozen=True)
class AccessChallenge:
    """Parameters of a Bearer challenge returned with a 401 or 403."""

    status_code: int
    scheme: str | None = None
    params: dict[str, str] = field(default_factory=dict)

    @property
    def resource_metadata(self) -> str | None:
        return self.params.get("resource_metadata")

    @property
    def scope(self) -> str | None:
        return self.params.get("scope")

    @property
    def error(self) -> str | None:
        return self.params.get("error")

    @property
    def error_description(self) -> str | None:
        return self.params.get("error_description")

    @property
    def required_scopes(self) -> list[str]:
        return self.scope.split() if self.scope else []

    @property
    def is_insufficient_scope(self) -> bool:
        return self.status_code == 403 and self.error == "insufficient_scope"


def parse_www_authenticate(header: str | None, status_code: int) -> AccessChallenge:
    """Parse a ``WWW-Authenticate`` header value.

    Args:
        header: Raw header value, possibly missing
        status_code: HTTP status the challenge came with

    Returns:
        AccessChallenge with the scheme and every auth-param found
    """
    if not header:
        return AccessChallenge(status_code=status_code)

    header = header.strip()
    scheme, _, rest = header.partition(" ")
    if "=" in scheme:
        # No scheme token, the header starts with a parameter
        scheme, rest = "", header

    params: dict[str, str] = {}
    for match in _PARAM_PATTERN.finditer(rest):
        name = match.group(1).lower()
        quoted, token = match.group(2), match.group(3)
        value = quoted.replace('\\"', '"') if quoted is not None else token
        params.setdefault(name, value)

    return AccessChallenge(
        status_code=status_code, scheme=scheme or None, params=params
    )
