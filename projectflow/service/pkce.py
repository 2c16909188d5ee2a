"""PKCE (RFC 7636) verifier/challenge checks.

Pure functions: nothing here touches a store, so every branch is unit
testable in isolation.
"""
from __future__ import annotations

import base64
import hashlib
import hmac
import re
import secrets

SUPPORTED_METHODS = ("S256", "plain")

# unreserved = ALPHA / DIGIT / "-" / "." / "_" / "~", 43 to 128 characters
_VERIFIER_RE = re.compile(r"^[A-Za-z0-9\-._~]{43,128}$")
# base64url(sha256(...)) without padding is always 43 characters
_S256_CHALLENGE_RE = re.compile(r"^[A-Za-z0-9\-_]{43}$")


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def is_valid_verifier(verifier: str) -> bool:
    return isinstance(verifier, str) and bool(_VERIFIER_RE.match(verifier))


def is_valid_challenge(challenge: str, method: str) -> bool:
    """Whether ``challenge`` has the shape RFC 7636 requires for ``method``."""
    if not isinstance(challenge, str):
        return False
    if method == "S256":
        return bool(_S256_CHALLENGE_RE.match(challenge))
    if method == "plain":
        return bool(_VERIFIER_RE.match(challenge))
    return False


def compute_challenge(verifier: str, method: str = "S256") -> str:
    if method == "S256":
        return _b64url(hashlib.sha256(verifier.encode("ascii")).digest())
    if method == "plain":
        return verifier
    raise ValueError(f"unsupported code_challenge_method: {method}")


def generate_verifier(length: int = 64) -> str:
    """Random verifier for clients and tests; 64 chars carries ~380 bits."""
    if not 43 <= length <= 128:
        raise ValueError("verifier length must be between 43 and 128")
    return secrets.token_urlsafe(96)[:length]


def verify(verifier: str, challenge: str, method: str) -> bool:
    """Check a presented ``verifier`` against the stored ``challenge``.

    ``plain`` compares the strings directly, ``S256`` compares
    base64url(sha256(verifier)). Both comparisons are constant time. Unknown
    methods and malformed verifiers never verify.
    """
    if method not in SUPPORTED_METHODS:
        return False
    if not is_valid_verifier(verifier) or not isinstance(challenge, str):
        return False
    expected = compute_challenge(verifier, method)
    return hmac.compare_digest(expected.encode("ascii"), challenge.encode("utf-8"))


__all__ = [
    "SUPPORTED_METHODS",
    "compute_challenge",
    "generate_verifier",
    "is_valid_challenge",
    "is_valid_verifier",
    "verify",
]
