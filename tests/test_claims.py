"""Tests for bolt_claims.py."""
import hashlib
import sys
from pathlib import Path

import jwt
import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from bolt_claims import (
    ID_TOKEN_LIFETIME,
    IdentityClaim,
    JwtClaimSigner,
    UserProfile,
    build_claim,
    gravatar_url,
)

SECRET = "test-signing-secret-0123456789abcdef"


class TestBuildClaim:
    def test_required_fields(self):
        claim = build_claim("https://issuer.example", "alice", "cal-app", now=1000)
        assert claim.iss == "https://issuer.example"
        assert claim.sub == "alice"
        assert claim.aud == "cal-app"
        assert claim.iat == 1000
        assert claim.exp == 1000 + ID_TOKEN_LIFETIME

    def test_expires_after_one_day(self):
        claim = build_claim("iss", "alice", "app", now=0)
        assert claim.exp - claim.iat == 86400

    def test_no_profile_no_optional_fields(self):
        claim = build_claim("iss", "alice", "app", now=0)
        assert claim.as_dict() == {"iss": "iss", "sub": "alice", "aud": "app",
                                   "iat": 0, "exp": 86400}

    def test_name_only(self):
        claim = build_claim("iss", "alice", "app", UserProfile(name="Alice"), now=0)
        data = claim.as_dict()
        assert data["name"] == "Alice"
        assert "email" not in data
        assert "picture" not in data

    def test_email_brings_picture(self):
        claim = build_claim("iss", "alice", "app",
                            UserProfile(email="Alice@Example.com "), now=0)
        data = claim.as_dict()
        assert data["email"] == "Alice@Example.com "
        expected = hashlib.md5(b"alice@example.com").hexdigest()
        assert data["picture"] == f"https://www.gravatar.com/avatar/{expected}"

    def test_empty_strings_treated_as_absent(self):
        claim = build_claim("iss", "alice", "app", UserProfile(name="", email=""), now=0)
        assert set(claim.as_dict()) == {"iss", "sub", "aud", "iat", "exp"}


class TestGravatarUrl:
    def test_normalises_email(self):
        assert gravatar_url(" Bob@Example.COM") == gravatar_url("bob@example.com")


class TestJwtClaimSigner:
    def test_signed_token_verifies(self):
        signer = JwtClaimSigner(SECRET)
        claim = IdentityClaim(iss="iss", sub="alice", aud="app", iat=0,
                              exp=4102444800, name="Alice")
        token = signer.sign(claim)
        decoded = jwt.decode(token, SECRET, algorithms=["HS256"], audience="app",
                             options={"verify_iat": False})
        assert decoded["sub"] == "alice"
        assert decoded["name"] == "Alice"
        assert "email" not in decoded

    def test_wrong_secret_rejected(self):
        token = JwtClaimSigner(SECRET).sign(
            IdentityClaim(iss="iss", sub="a", aud="app", iat=0, exp=4102444800))
        with pytest.raises(jwt.InvalidSignatureError):
            jwt.decode(token, "another-secret-0123456789abcdefghij",
                       algorithms=["HS256"], audience="app")

    def test_requires_secret(self):
        with pytest.raises(ValueError, match="signing secret"):
            JwtClaimSigner("")
