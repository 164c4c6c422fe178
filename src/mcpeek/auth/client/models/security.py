"""Proof-key parameters for a single authorization attempt."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class PKCEParameters:
    """PKCE verifier, its S256 challenge and the anti-forgery nonce (RFC 7636).

    Only the verifier and the state are persisted, and only in the ephemeral
    store until the code is exchanged.
    """

    code_verifier: str = field(repr=False)
    code_challenge: str
    state: str = field(repr=False)
    code_challenge_method: str = "S256"

    def __post_init__(self) -> None:
        if not (43 <= len(self.code_verifier) <= 128):
            raise ValueError("code_verifier must be 43-128 characters")
        if self.code_challenge_method != "S256":
            raise ValueError("Only S256 code challenge method is supported")

    def to_stored(self) -> dict[str, Any]:
        return {"verifier": self.code_verifier, "state": self.state}
