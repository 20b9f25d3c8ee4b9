"""
bolt_collaborators.py - in-memory collaborators for AuthorizationServer.

Client metadata is loaded from clients.yaml. Sessions live in memory, keyed
by the bolt-session cookie; whoever logs the user in (outside this server)
creates the session with CookieSessionStore.create() and sets the cookie.
"""

import logging
import secrets
from pathlib import Path

import yaml
from mcp.server.auth.provider import construct_redirect_uri
from starlette.requests import Request
from starlette.responses import RedirectResponse, Response

from bolt_claims import UserProfile
from bolt_oauth import AccessTokenRecord, Client, Identity
from bolt_scopes import InvalidScope, decode_scope

logger = logging.getLogger("bolt-oauth")

SESSION_COOKIE = "bolt-session"


def load_clients(config_path: Path) -> tuple[dict[str, Client], dict[str, str]]:
    """Load registered clients and scope descriptions from a YAML file.

    Returns ``(clients, scopes)`` where scopes maps scope id to description.
    """
    if not config_path.exists():
        example = Path(__file__).parent / "clients.example.yaml"
        msg = f"Client config not found: {config_path}"
        if example.exists():
            msg += f"\n  Copy the example:  cp {example} {config_path}"
        raise SystemExit(msg)

    with open(config_path) as f:
        raw = yaml.safe_load(f)

    if not isinstance(raw, dict) or "clients" not in raw:
        raise SystemExit(f"Invalid clients file: expected top-level 'clients' key in {config_path}")

    scopes: dict[str, str] = {}
    for scope_id, cfg in (raw.get("scopes") or {}).items():
        if isinstance(cfg, dict):
            scopes[str(scope_id)] = str(cfg.get("description", ""))
        else:
            scopes[str(scope_id)] = "" if cfg is None else str(cfg)

    clients: dict[str, Client] = {}
    for client_id, cfg in (raw["clients"] or {}).items():
        client_id = str(client_id)
        if not isinstance(cfg, dict):
            raise SystemExit(f"Invalid client '{client_id}' in {config_path}: expected a mapping")
        for key in ("client_secret", "redirection_uri"):
            if not cfg.get(key):
                raise SystemExit(f"Invalid client '{client_id}' in {config_path}: '{key}' is required")
        required = cfg.get("required_scopes") or []
        if isinstance(required, str):
            required = [required]
        try:
            required_scopes = decode_scope(" ".join(str(s) for s in required))
        except InvalidScope as e:
            raise SystemExit(f"Invalid required_scopes for client '{client_id}': {e}")
        clients[client_id] = Client(
            client_id=client_id,
            client_secret=str(cfg["client_secret"]),
            redirection_uri=str(cfg["redirection_uri"]),
            application_name=str(cfg.get("application_name") or client_id),
            description=str(cfg.get("description") or ""),
            requires_user_acceptance=bool(cfg.get("requires_user_acceptance", True)),
            required_scopes=required_scopes,
        )

    if not clients:
        raise SystemExit(f"No clients defined in {config_path}")

    return clients, scopes


class InMemoryClientRegistry:
    def __init__(self, clients: dict[str, Client] | None = None):
        self.clients: dict[str, Client] = dict(clients or {})

    async def lookup(self, client_id: str) -> Client | None:
        return self.clients.get(client_id)


class InMemoryTokenStore:
    def __init__(self):
        self.tokens: dict[str, AccessTokenRecord] = {}

    async def create(self, token: str, record: AccessTokenRecord) -> None:
        self.tokens[token] = record
        logger.debug("access token stored: %s... (%d stored)", token[:8], len(self.tokens))

    async def get(self, token: str) -> AccessTokenRecord | None:
        return self.tokens.get(token)


class CookieSessionStore:
    """Server-side sessions referenced by an opaque cookie."""

    def __init__(self, cookie_name: str = SESSION_COOKIE):
        self.cookie_name = cookie_name
        self.sessions: dict[str, dict] = {}

    def create(self, data: dict) -> str:
        session_id = secrets.token_urlsafe(32)
        self.sessions[session_id] = dict(data)
        return session_id

    def _session_id(self, request: Request) -> str | None:
        return request.cookies.get(self.cookie_name)

    async def current(self, request: Request) -> dict | None:
        session_id = self._session_id(request)
        if session_id is None:
            return None
        return self.sessions.get(session_id)

    async def attach(self, request: Request, data: dict) -> None:
        session = await self.current(request)
        if session is not None:
            session.update(data)

    async def close(self, request: Request) -> None:
        session_id = self._session_id(request)
        if session_id is not None:
            self.sessions.pop(session_id, None)


class SessionAuthenticator:
    """Reads the logged-in user from the session; sends everyone else to log in."""

    def __init__(self, session_store: CookieSessionStore, login_url: str):
        self.session_store = session_store
        self.login_url = login_url

    async def authenticate(self, request: Request) -> Identity | None:
        session = await self.session_store.current(request)
        if not session or not session.get("subject_identifier"):
            return None
        user = session.get("user")
        if isinstance(user, dict):
            user = UserProfile(name=user.get("name"), email=user.get("email"))
        return Identity(subject_identifier=session["subject_identifier"], user=user)

    async def initiate_handshake(self, request: Request) -> Response:
        location = construct_redirect_uri(self.login_url, return_to=str(request.url))
        return RedirectResponse(location, status_code=302)
