"""
bolt_scopes.py - scope string codec (RFC 6749 section 3.3).

A scope string is a space-delimited list of scope tokens. Tokens are the
identifiers of our scopes, e.g. "profile/read" or "email".
"""

from typing import Iterable


class InvalidScope(ValueError):
    """Raised when a scope string contains a malformed scope token."""


def _valid_token(token: str) -> bool:
    # scope-token = 1*( %x21 / %x23-5B / %x5D-7E )
    return bool(token) and all(
        0x21 <= ord(ch) <= 0x7E and ch not in ('"', "\\") for ch in token
    )


def decode_scope(value: str | None) -> frozenset[str]:
    """Decode a scope string into a set of scope identifiers.

    ``None`` and blank strings decode to the empty set. Repeated spaces are
    tolerated; any other malformed token raises InvalidScope.
    """
    if not value or not value.strip():
        return frozenset()
    tokens = [t for t in value.split(" ") if t]
    for token in tokens:
        if not _valid_token(token):
            raise InvalidScope(f"Invalid scope token: {token!r}")
    return frozenset(tokens)


def encode_scope(scopes: Iterable[str] | None) -> str:
    """Encode scope identifiers as a scope string (sorted, space-delimited)."""
    if not scopes:
        return ""
    tokens = sorted(set(scopes))
    for token in tokens:
        if not _valid_token(token):
            raise InvalidScope(f"Invalid scope token: {token!r}")
    return " ".join(tokens)
