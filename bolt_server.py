#!/usr/bin/env python3
"""
Bolt OAuth - authorization code grant server.

Serves the authorize / permit-client / access-token endpoints under the
configured uri_context (default /login/oauth/) plus RFC 8414 metadata.
Registered clients and scope descriptions are loaded from clients.yaml.

Configuration comes from environment variables:
  BOLT_ISSUER_URL            issuer identifier, also the id_token "iss"
  BOLT_URI_CONTEXT           mount point of the OAuth endpoints
  BOLT_SIGNING_SECRET        HS256 secret for id_tokens (required)
  BOLT_CLIENTS_FILE          path to clients.yaml
  BOLT_LOGIN_URL             where unauthenticated users are sent
  BOLT_AUTH_CODE_TTL         authorization code lifetime, seconds
  BOLT_COLLABORATOR_TIMEOUT  bound on every collaborator call, seconds
"""

import argparse
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from pydantic import AnyHttpUrl, TypeAdapter, ValidationError
from starlette.applications import Starlette

from bolt_claims import JwtClaimSigner
from bolt_codes import AUTH_CODE_TTL, AuthorizationCodeStore
from bolt_collaborators import (
    CookieSessionStore,
    InMemoryClientRegistry,
    InMemoryTokenStore,
    SessionAuthenticator,
    load_clients,
)
from bolt_oauth import COLLABORATOR_TIMEOUT, DEFAULT_URI_CONTEXT, AuthorizationServer

logger = logging.getLogger("bolt-oauth")

DEFAULT_ISSUER_URL = "https://localhost:8300"


# ---------------------------------------------------------------------------
# Configuration - env vars
# ---------------------------------------------------------------------------

@dataclass
class ServerConfig:
    issuer_url: str
    uri_context: str
    signing_secret: str
    clients_file: Path
    login_url: str
    auth_code_ttl: int
    collaborator_timeout: float


def _env_number(environ: Mapping[str, str], name: str, default, cast):
    raw = environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = cast(raw)
    except ValueError:
        raise SystemExit(f"Invalid {name}: {raw!r} is not a number")
    if value <= 0:
        raise SystemExit(f"Invalid {name}: must be positive")
    return value


def load_config(environ: Mapping[str, str] | None = None) -> ServerConfig:
    """Read server configuration from the environment."""
    if environ is None:
        environ = os.environ

    issuer_url = environ.get("BOLT_ISSUER_URL", DEFAULT_ISSUER_URL)
    try:
        TypeAdapter(AnyHttpUrl).validate_python(issuer_url)
    except ValidationError:
        raise SystemExit(f"Invalid BOLT_ISSUER_URL: {issuer_url!r} is not an http(s) URL")

    uri_context = environ.get("BOLT_URI_CONTEXT", DEFAULT_URI_CONTEXT).strip("/")
    uri_context = f"/{uri_context}/" if uri_context else "/"

    clients_file = environ.get("BOLT_CLIENTS_FILE")
    return ServerConfig(
        issuer_url=issuer_url.rstrip("/"),
        uri_context=uri_context,
        signing_secret=environ.get("BOLT_SIGNING_SECRET", ""),
        clients_file=Path(clients_file) if clients_file else Path(__file__).parent / "clients.yaml",
        login_url=environ.get("BOLT_LOGIN_URL", "/login"),
        auth_code_ttl=_env_number(environ, "BOLT_AUTH_CODE_TTL", AUTH_CODE_TTL, int),
        collaborator_timeout=_env_number(
            environ, "BOLT_COLLABORATOR_TIMEOUT", COLLABORATOR_TIMEOUT, float),
    )


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------

def build_server(config: ServerConfig) -> AuthorizationServer:
    if not config.signing_secret:
        raise SystemExit("BOLT_SIGNING_SECRET is not set; refusing to issue unsigned id_tokens")

    clients, scopes = load_clients(config.clients_file)
    logger.info("bolt: loaded %d clients, %d scopes from %s",
                len(clients), len(scopes), config.clients_file)

    session_store = CookieSessionStore()
    return AuthorizationServer(
        issuer=config.issuer_url,
        code_store=AuthorizationCodeStore(ttl=config.auth_code_ttl),
        client_registry=InMemoryClientRegistry(clients),
        token_store=InMemoryTokenStore(),
        session_store=session_store,
        authenticator=SessionAuthenticator(session_store, config.login_url),
        signer=JwtClaimSigner(config.signing_secret),
        scopes=scopes,
        uri_context=config.uri_context,
        collaborator_timeout=config.collaborator_timeout,
    )


def build_app(config: ServerConfig) -> Starlette:
    server = build_server(config)
    app = Starlette(routes=server.routes())
    app.state.oauth = server
    return app


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )

    # Audit logger - JSON-lines to ~/.bolt/audit.log
    audit_log_path = Path.home() / ".bolt" / "audit.log"
    audit_log_path.parent.mkdir(parents=True, exist_ok=True)
    audit_handler = logging.FileHandler(audit_log_path)
    audit_handler.setFormatter(logging.Formatter("%(message)s"))
    audit_logger = logging.getLogger("bolt-audit")
    audit_logger.addHandler(audit_handler)
    audit_logger.setLevel(logging.INFO)
    audit_logger.propagate = False

    parser = argparse.ArgumentParser(description="Bolt OAuth authorization server")
    parser.add_argument("--port", type=int, default=8300)
    parser.add_argument("--host", default="127.0.0.1")
    args = parser.parse_args()

    import uvicorn

    config = load_config()
    app = build_app(config)
    logger.info("bolt: starting HTTP server on %s:%d (issuer %s, endpoints under %s)",
                args.host, args.port, config.issuer_url, config.uri_context)
    uvicorn.run(app, host=args.host, port=args.port, log_level="info",
                proxy_headers=True, forwarded_allow_ips="*")


if __name__ == "__main__":
    main()
