"""
bolt_oauth.py - OAuth 2.0 authorization code grant with an OpenID Connect ID token.

Endpoints (relative to the configurable uri_context, default /login/oauth/):
  GET  authorize      - RFC 6749 4.1.1: issue a code, asking for consent when
                        the client requires it
  POST permit-client  - consent form submission, fixes the granted scopes
  POST access-token   - RFC 6749 4.1.3: redeem a code once for a bearer token
                        plus a signed id_token
  GET  /.well-known/oauth-authorization-server - RFC 8414 metadata

User authentication, sessions, client storage and token storage are
collaborators injected into AuthorizationServer (see bolt_collaborators for
in-memory defaults). Every collaborator call is bounded by a timeout.

Security layers:
  - Codes are single-use, bound to the requesting client, and expire.
  - Granted scopes never exceed what the user was asked about.
  - Client secrets are compared in constant time.
"""

import asyncio
import functools
import hmac
import html as html_mod
import json
import logging
import secrets
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Protocol, TypeVar
from urllib.parse import quote, urlencode, urlparse, urlunparse

from starlette.datastructures import FormData, QueryParams
from starlette.requests import Request
from starlette.responses import HTMLResponse, JSONResponse, RedirectResponse, Response
from starlette.routing import BaseRoute, Mount, Route

from bolt_claims import JWT_ALGORITHM, IdentityClaim, UserProfile, build_claim
from bolt_codes import (
    AuthorizationCodeStore,
    CodeAlreadyConsumed,
    CodeNotFound,
    ScopesAlreadyGranted,
)
from bolt_scopes import InvalidScope, decode_scope, encode_scope

logger = logging.getLogger("bolt-oauth")
audit_logger = logging.getLogger("bolt-audit")

TOKEN_EXPIRY = 3600  # seconds, advertised as expires_in
DEFAULT_URI_CONTEXT = "/login/oauth/"
COLLABORATOR_TIMEOUT = 5.0

T = TypeVar("T")


def _audit(event: str, **kwargs: Any) -> None:
    """Emit a structured JSON audit log entry."""
    entry = {"ts": time.time(), "event": event, **kwargs}
    audit_logger.info(json.dumps(entry))


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class OAuthError(Exception):
    """Terminal failure of the current request, rendered as a JSON error body."""

    status_code = 400
    error = "invalid_request"

    def __init__(self, description: str, error: str | None = None):
        super().__init__(description)
        self.description = description
        if error is not None:
            self.error = error

    def to_response(self) -> JSONResponse:
        return JSONResponse(
            {"error": self.error, "error_description": self.description},
            status_code=self.status_code,
            headers={"Cache-Control": "no-store"},
        )


class InvalidRequest(OAuthError):
    pass


class ClientNotFound(OAuthError):
    error = "invalid_client"


class ClientAuthenticationFailed(OAuthError):
    status_code = 403
    error = "invalid_client"


class InvalidOrConsumedCode(OAuthError):
    error = "invalid_grant"


class Unauthorized(OAuthError):
    status_code = 401
    error = "unauthorized"


class CollaboratorUnavailable(OAuthError):
    status_code = 503
    error = "temporarily_unavailable"


# ---------------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Client:
    client_id: str
    client_secret: str
    redirection_uri: str
    application_name: str = ""
    description: str = ""
    requires_user_acceptance: bool = True
    required_scopes: frozenset[str] = field(default_factory=frozenset)


@dataclass(frozen=True)
class Identity:
    """An authenticated resource owner."""
    subject_identifier: str
    user: UserProfile | None = None


@dataclass(frozen=True)
class AccessTokenRecord:
    token: str
    client_id: str
    subject_identifier: str
    granted_scopes: frozenset[str]


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------

class Authenticator(Protocol):
    async def authenticate(self, request: Request) -> Identity | None: ...

    async def initiate_handshake(self, request: Request) -> Response: ...


class ClientRegistry(Protocol):
    async def lookup(self, client_id: str) -> Client | None: ...


class TokenStore(Protocol):
    async def create(self, token: str, record: AccessTokenRecord) -> None: ...


class SessionStore(Protocol):
    async def current(self, request: Request) -> dict | None: ...

    async def attach(self, request: Request, data: dict) -> None: ...

    async def close(self, request: Request) -> None: ...


class ClaimSigner(Protocol):
    def sign(self, claim: IdentityClaim) -> str: ...


# ---------------------------------------------------------------------------
# Request parsing
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CodeResponseType:
    pass


@dataclass(frozen=True)
class UnsupportedResponseType:
    value: str


ResponseType = CodeResponseType | UnsupportedResponseType


def parse_response_type(value: str | None) -> ResponseType:
    if value == "code":
        return CodeResponseType()
    return UnsupportedResponseType(value or "")


@dataclass(frozen=True)
class AuthorizationRequest:
    response_type: ResponseType
    client_id: str
    scope: str | None
    state: str | None

    @classmethod
    def from_query(cls, params: QueryParams) -> "AuthorizationRequest":
        return cls(
            response_type=parse_response_type(params.get("response_type")),
            client_id=params.get("client_id", ""),
            scope=params.get("scope"),
            state=params.get("state"),
        )


@dataclass(frozen=True)
class ConsentDecision:
    scope_id: str
    checked: bool


def parse_consent(form: FormData) -> tuple[str, list[ConsentDecision]]:
    """Read the consent form: the code plus one decision per offered scope.

    The form lists every offered scope in a hidden ``scope`` field, in
    display order, and a ``permit`` checkbox carrying the same value for each
    scope the user left checked.
    """
    code = str(form.get("code", ""))
    permitted = {str(v) for v in form.getlist("permit")}
    decisions = []
    seen = set()
    for value in form.getlist("scope"):
        scope_id = str(value)
        if scope_id in seen:
            continue
        seen.add(scope_id)
        decisions.append(ConsentDecision(scope_id=scope_id, checked=scope_id in permitted))
    return code, decisions


def _append_query(uri: str, **params: str | None) -> str:
    """Add ``params`` to the query of ``uri``, keeping its own query as registered."""
    parsed = urlparse(uri)
    extra = urlencode([(k, v) for k, v in params.items() if v is not None], quote_via=quote)
    query = "&".join(q for q in (parsed.query, extra) if q)
    return urlunparse(parsed._replace(query=query))


def _secret_matches(presented: str, expected: str | None) -> bool:
    if not presented or not expected:
        return False
    return hmac.compare_digest(presented.encode("utf-8"), expected.encode("utf-8"))


def _oauth_endpoint(handler):
    """Turn OAuthError raised by an endpoint into its HTTP error response."""

    @functools.wraps(handler)
    async def wrapper(self: "AuthorizationServer", request: Request) -> Response:
        try:
            return await handler(self, request)
        except OAuthError as e:
            logger.info("%s %s -> %d %s: %s", request.method, request.url.path,
                        e.status_code, e.error, e.description)
            return e.to_response()

    return wrapper


# ---------------------------------------------------------------------------
# AuthorizationServer
# ---------------------------------------------------------------------------

class AuthorizationServer:
    """Authorization code grant endpoints over an AuthorizationCodeStore."""

    def __init__(
        self,
        *,
        issuer: str,
        code_store: AuthorizationCodeStore,
        client_registry: ClientRegistry,
        token_store: TokenStore,
        session_store: SessionStore,
        authenticator: Authenticator,
        signer: ClaimSigner,
        scopes: dict[str, str] | None = None,
        uri_context: str = DEFAULT_URI_CONTEXT,
        collaborator_timeout: float = COLLABORATOR_TIMEOUT,
    ):
        self.issuer = issuer.rstrip("/")
        self.codes = code_store
        self.clients = client_registry
        self.tokens = token_store
        self.sessions = session_store
        self.authenticator = authenticator
        self.signer = signer
        self.scopes = scopes or {}
        self.uri_context = "/" + uri_context.strip("/") + "/" if uri_context.strip("/") else "/"
        self.collaborator_timeout = collaborator_timeout

    # --- Internal helpers ---

    async def _call(self, collaborator: str, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.collaborator_timeout)
        except asyncio.TimeoutError:
            _audit("collaborator_unavailable", collaborator=collaborator, reason="timeout")
            raise CollaboratorUnavailable(f"The {collaborator} did not respond in time")
        except OSError as e:
            _audit("collaborator_unavailable", collaborator=collaborator, reason=str(e))
            raise CollaboratorUnavailable(f"The {collaborator} is unavailable")

    async def _lookup_client(self, client_id: str) -> Client:
        client = None
        if client_id:
            client = await self._call("client registry", self.clients.lookup(client_id))
        if client is None:
            raise ClientNotFound(f"Unknown client_id: '{client_id}'")
        return client

    def _redirect_with_code(self, client: Client, code: str, state: str | None) -> Response:
        # RFC 6749 4.1.2: code and state go in the query of the redirection URI
        location = _append_query(client.redirection_uri, code=code, state=state)
        logger.debug("redirecting to redirection uri: %s", client.redirection_uri)
        return RedirectResponse(location, status_code=302)

    # --- Endpoint handlers ---

    @_oauth_endpoint
    async def authorize(self, request: Request) -> Response:
        params = AuthorizationRequest.from_query(request.query_params)
        identity = await self._call("authenticator", self.authenticator.authenticate(request))
        logger.debug("authorize: user authentication is %s", identity)

        # Not logged in yet: the handshake brings the user back here afterwards.
        if identity is None:
            return await self._call("authenticator", self.authenticator.initiate_handshake(request))

        if isinstance(params.response_type, UnsupportedResponseType):
            raise InvalidRequest(
                f"Bad response_type parameter: '{params.response_type.value}'",
                error="unsupported_response_type",
            )

        try:
            requested_scopes = decode_scope(params.scope)
        except InvalidScope as e:
            raise InvalidRequest(str(e), error="invalid_scope")

        client = await self._lookup_client(params.client_id)

        code = await self.codes.create(
            subject_identifier=identity.subject_identifier,
            client_id=client.client_id,
            requested_scopes=requested_scopes,
            user=identity.user,
            state=params.state,
        )
        _audit("code_issued", client_id=client.client_id,
               sub=identity.subject_identifier, scope=encode_scope(requested_scopes))

        if client.requires_user_acceptance:
            _audit("consent_prompted", client_id=client.client_id)
            return HTMLResponse(_consent_page(
                application_name=client.application_name or client.client_id,
                description=client.description,
                scopes=[(s, self.scopes.get(s, "")) for s in sorted(requested_scopes)],
                code=code,
                action=f"{self.uri_context}permit-client",
            ))

        logger.debug("client %s doesn't require user acceptance, granting required scopes [%s]",
                     client.client_id, encode_scope(client.required_scopes))
        await self.codes.grant_scopes(code, client.required_scopes)
        _audit("scopes_granted", client_id=client.client_id,
               scope=encode_scope(client.required_scopes), consent=False)
        return self._redirect_with_code(client, code, params.state)

    @_oauth_endpoint
    async def permit(self, request: Request) -> Response:
        identity = await self._call("authenticator", self.authenticator.authenticate(request))
        if identity is None:
            _audit("consent_rejected", reason="unauthenticated")
            raise Unauthorized("Consent requires an authenticated user")

        form = await request.form()
        code, decisions = parse_consent(form)
        if not code:
            raise InvalidRequest("Missing code")

        try:
            record = await self.codes.get(code)
        except CodeNotFound:
            raise InvalidOrConsumedCode(f"Invalid request - unrecognized code: {code}")

        if identity.subject_identifier != record.subject_identifier:
            _audit("consent_rejected", reason="subject_mismatch", client_id=record.client_id)
            raise Unauthorized("Consent must come from the user who started the authorization")

        permitted = frozenset(d.scope_id for d in decisions if d.checked)
        granted = permitted & record.requested_scopes
        logger.debug("permitted scopes: %s, requested scopes: %s", sorted(permitted),
                     sorted(record.requested_scopes))

        try:
            await self.codes.grant_scopes(code, granted)
        except (CodeNotFound, CodeAlreadyConsumed, ScopesAlreadyGranted):
            raise InvalidOrConsumedCode(f"Invalid request - unrecognized code: {code}")
        _audit("scopes_granted", client_id=record.client_id,
               scope=encode_scope(granted), consent=True)

        client = await self._lookup_client(record.client_id)
        return self._redirect_with_code(client, code, record.state)

    @_oauth_endpoint
    async def token(self, request: Request) -> Response:
        form = await request.form()
        grant_type = form.get("grant_type")
        if grant_type is not None and grant_type != "authorization_code":
            raise InvalidRequest(f"Unsupported grant_type: '{grant_type}'",
                                 error="unsupported_grant_type")
        code = str(form.get("code", ""))
        client_id = str(form.get("client_id", ""))
        client_secret = str(form.get("client_secret", ""))

        # RFC 6749 4.1.3: the client authenticates before the code is touched
        client = None
        if client_id:
            client = await self._call("client registry", self.clients.lookup(client_id))
        if client is None or not _secret_matches(client_secret, client.client_secret):
            _audit("client_auth_failed", client_id=client_id)
            raise ClientAuthenticationFailed("Client could not be authenticated")

        try:
            record = await self.codes.redeem(code, client.client_id)
        except CodeNotFound:
            _audit("code_redeem_failed", client_id=client.client_id)
            raise InvalidOrConsumedCode(f"Invalid request - unrecognized code: {code}")

        # From here on the code is spent, whatever happens next.
        granted_scopes = record.granted_scopes or frozenset()
        access_token = secrets.token_urlsafe(32)
        claim = build_claim(
            issuer=self.issuer,
            subject=record.subject_identifier,
            audience=client.client_id,
            user=record.user,
        )
        id_token = self.signer.sign(claim)

        await self._call("token store", self.tokens.create(access_token, AccessTokenRecord(
            token=access_token,
            client_id=client.client_id,
            subject_identifier=record.subject_identifier,
            granted_scopes=granted_scopes,
        )))
        await self._call("session store",
                         self.sessions.attach(request, {"access_token": access_token}))
        await self._call("session store", self.sessions.close(request))

        _audit("token_issued", client_id=client.client_id, sub=record.subject_identifier,
               scope=encode_scope(granted_scopes), expires_in=TOKEN_EXPIRY)
        logger.info("token_issued: access=%s... client=%s", access_token[:8], client.client_id)

        # RFC 6749 5.1 Successful Response
        return JSONResponse(
            {
                "access_token": access_token,
                "token_type": "Bearer",
                "expires_in": TOKEN_EXPIRY,
                "scope": encode_scope(granted_scopes),
                "id_token": id_token,
            },
            headers={"Cache-Control": "no-store", "Pragma": "no-cache"},
        )

    async def metadata(self, request: Request) -> Response:
        """RFC 8414 - OAuth Authorization Server Metadata."""
        base = f"{self.issuer}{self.uri_context}"
        return JSONResponse({
            "issuer": self.issuer,
            "authorization_endpoint": f"{base}authorize",
            "token_endpoint": f"{base}access-token",
            "response_types_supported": ["code"],
            "grant_types_supported": ["authorization_code"],
            "token_endpoint_auth_methods_supported": ["client_secret_post"],
            "scopes_supported": sorted(self.scopes),
            "id_token_signing_alg_values_supported": [
                getattr(self.signer, "algorithm", JWT_ALGORITHM),
            ],
        })

    def routes(self) -> list[BaseRoute]:
        return [
            Route("/.well-known/oauth-authorization-server", self.metadata, methods=["GET"]),
            Mount(self.uri_context.rstrip("/"), routes=[
                Route("/authorize", self.authorize, methods=["GET"], name="authorize"),
                Route("/permit-client", self.permit, methods=["POST"], name="permit"),
                Route("/access-token", self.token, methods=["POST"], name="token"),
            ]),
        ]


# ---------------------------------------------------------------------------
# HTML templates
# ---------------------------------------------------------------------------

def _consent_page(application_name: str, description: str,
                  scopes: list[tuple[str, str]], code: str, action: str) -> str:
    safe_name = html_mod.escape(application_name)
    safe_desc = html_mod.escape(description) if description else "No description provided."
    rows = []
    for scope_id, scope_desc in scopes:
        safe_scope = html_mod.escape(scope_id, quote=True)
        detail = f' <span class="desc">{html_mod.escape(scope_desc)}</span>' if scope_desc else ""
        rows.append(
            f'<li><input type="hidden" name="scope" value="{safe_scope}">'
            f'<input type="checkbox" id="{safe_scope}" name="permit" value="{safe_scope}" checked>'
            f' <label for="{safe_scope}">{safe_scope}</label>{detail}</li>'
        )
    scope_list = "\n                ".join(rows) if rows else "<li>No scopes requested</li>"
    return f"""<!DOCTYPE html>
<html>
<head>
    <title>Authorize application?</title>
    <meta name="viewport" content="width=device-width, initial-scale=1">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', sans-serif;
            display: flex; justify-content: center; align-items: center;
            min-height: 100vh; margin: 0; }}
        .card {{ border: 1px solid #ccc; border-radius: 12px;
            padding: 2rem; max-width: 440px; width: 90%; }}
        .client {{ font-weight: 600; }}
        .scopes li {{ margin: 0.3rem 0; list-style: none; }}
        .desc {{ color: #666; font-size: 0.9rem; }}
    </style>
</head>
<body>
    <div class="card">
        <h1>Authorize application?</h1>
        <p>An application (<span class="client">{safe_name}</span>) is requesting to use your credentials.</p>
        <h2>Application description</h2>
        <p>{safe_desc}</p>
        <h2>Scope</h2>
        <form method="POST" action="{html_mod.escape(action, quote=True)}">
            <input type="hidden" name="code" value="{html_mod.escape(code, quote=True)}">
            <ul class="scopes">
                {scope_list}
            </ul>
            <button type="submit">Authorize</button>
        </form>
    </div>
</body>
</html>"""
