"""
bolt_claims.py - OpenID Connect ID token claims.

Builds the claim set sent as ``id_token`` next to the access token
(OpenID Connect Core 1.0, section 3.1.3.6) and signs it as a JWT.
"""

import hashlib
import time
from dataclasses import asdict, dataclass

import jwt

ID_TOKEN_LIFETIME = 86400  # 1 day
JWT_ALGORITHM = "HS256"
GRAVATAR_BASE = "https://www.gravatar.com/avatar/"


@dataclass(frozen=True)
class UserProfile:
    name: str | None = None
    email: str | None = None


@dataclass(frozen=True)
class IdentityClaim:
    iss: str
    sub: str
    aud: str
    iat: int
    exp: int
    name: str | None = None
    email: str | None = None
    picture: str | None = None

    def as_dict(self) -> dict:
        return {k: v for k, v in asdict(self).items() if v is not None}


def gravatar_url(email: str) -> str:
    digest = hashlib.md5(email.strip().lower().encode("utf-8")).hexdigest()
    return GRAVATAR_BASE + digest


def build_claim(
    issuer: str,
    subject: str,
    audience: str,
    user: UserProfile | None = None,
    now: float | None = None,
    lifetime: int = ID_TOKEN_LIFETIME,
) -> IdentityClaim:
    """Assemble the ID token claims for ``subject`` issued to ``audience``.

    ``name`` is included when the profile has one; ``email`` brings a derived
    Gravatar ``picture`` with it.
    """
    issued_at = int(time.time() if now is None else now)
    name = user.name if user and user.name else None
    email = user.email if user and user.email else None
    return IdentityClaim(
        iss=issuer,
        sub=subject,
        aud=audience,
        iat=issued_at,
        exp=issued_at + lifetime,
        name=name,
        email=email,
        picture=gravatar_url(email) if email else None,
    )


class JwtClaimSigner:
    """Signs identity claims as compact JWTs with a shared secret."""

    def __init__(self, secret: str, algorithm: str = JWT_ALGORITHM):
        if not secret:
            raise ValueError("A signing secret is required")
        self._secret = secret
        self.algorithm = algorithm

    def sign(self, claim: IdentityClaim) -> str:
        return jwt.encode(claim.as_dict(), self._secret, algorithm=self.algorithm)
