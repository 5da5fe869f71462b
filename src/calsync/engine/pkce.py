"""PKCE (RFC 7636) verifier/challenge and anti-CSRF state generation."""

from __future__ import annotations

import base64
import hashlib
import secrets
from dataclasses import dataclass

_VERIFIER_BYTES = 32
_STATE_BYTES = 16


def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def generate_verifier() -> str:
    """Return a 43-character base64url code verifier."""
    return _b64url(secrets.token_bytes(_VERIFIER_BYTES))


def generate_challenge(verifier: str) -> str:
    """Return the S256 challenge for *verifier*."""
    return _b64url(hashlib.sha256(verifier.encode("ascii")).digest())


def generate_state() -> str:
    return _b64url(secrets.token_bytes(_STATE_BYTES))


@dataclass(frozen=True)
class PKCEPair:
    """Single-use material for one authorization attempt."""

    verifier: str
    challenge: str
    state: str

    def __repr__(self) -> str:
        return f"PKCEPair(state={self.state[:8]!r}...)"


def new_pkce_pair() -> PKCEPair:
    verifier = generate_verifier()
    return PKCEPair(
        verifier=verifier,
        challenge=generate_challenge(verifier),
        state=generate_state(),
    )
