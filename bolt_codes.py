"""
bolt_codes.py - in-memory authorization code store.

Codes are opaque random strings that expire AUTH_CODE_TTL seconds after
issue. A code moves through three states: pending (issued, no scopes
granted yet), granted (scopes fixed, ready for exchange) and consumed
(redeemed once, never valid again).

Every operation runs under one asyncio.Lock and never awaits while holding
it, so check-and-consume in redeem() is a single indivisible step.
"""

import asyncio
import logging
import secrets
import time
from dataclasses import dataclass
from typing import Callable, Iterable

from bolt_claims import UserProfile

logger = logging.getLogger("bolt-oauth")

AUTH_CODE_TTL = 600  # 10 minutes


class CodeNotFound(LookupError):
    """Unknown, expired, already redeemed, or not redeemable by this client."""


class CodeAlreadyConsumed(Exception):
    pass


class ScopesAlreadyGranted(Exception):
    pass


@dataclass
class AuthorizationCode:
    code: str
    created_at: float
    subject_identifier: str
    client_id: str
    requested_scopes: frozenset[str]
    user: UserProfile | None = None
    state: str | None = None
    granted_scopes: frozenset[str] | None = None
    consumed: bool = False


class AuthorizationCodeStore:
    def __init__(self, ttl: int = AUTH_CODE_TTL,
                 clock: Callable[[], float] = time.time):
        self.ttl = ttl
        self._clock = clock
        self._codes: dict[str, AuthorizationCode] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._codes)

    def _expired(self, record: AuthorizationCode, now: float) -> bool:
        return now - record.created_at > self.ttl

    def _purge_expired(self, now: float) -> None:
        expired = [c for c, rec in self._codes.items() if self._expired(rec, now)]
        for c in expired:
            del self._codes[c]
        if expired:
            logger.debug("purged %d expired authorization codes", len(expired))

    def _live(self, code: str, now: float) -> AuthorizationCode:
        record = self._codes.get(code)
        if record is None:
            raise CodeNotFound(code)
        if self._expired(record, now):
            del self._codes[code]
            raise CodeNotFound(code)
        return record

    async def create(
        self,
        subject_identifier: str,
        client_id: str,
        requested_scopes: Iterable[str],
        user: UserProfile | None = None,
        state: str | None = None,
    ) -> str:
        """Register a new pending code and return its value."""
        async with self._lock:
            now = self._clock()
            self._purge_expired(now)
            code = secrets.token_urlsafe(32)
            while code in self._codes:
                code = secrets.token_urlsafe(32)
            self._codes[code] = AuthorizationCode(
                code=code,
                created_at=now,
                subject_identifier=subject_identifier,
                client_id=client_id,
                requested_scopes=frozenset(requested_scopes),
                user=user,
                state=state,
            )
            return code

    async def get(self, code: str) -> AuthorizationCode:
        """Return the record of a live, unconsumed code."""
        async with self._lock:
            record = self._live(code, self._clock())
            if record.consumed:
                raise CodeNotFound(code)
            return record

    async def grant_scopes(self, code: str, scopes: Iterable[str]) -> AuthorizationCode:
        """Fix the granted scopes of a pending code. Granted scopes never change."""
        async with self._lock:
            record = self._live(code, self._clock())
            if record.consumed:
                raise CodeAlreadyConsumed(code)
            if record.granted_scopes is not None:
                raise ScopesAlreadyGranted(code)
            record.granted_scopes = frozenset(scopes)
            return record

    async def redeem(self, code: str, client_id: str) -> AuthorizationCode:
        """Consume a granted code issued to ``client_id``.

        Only a successful call flips ``consumed``; every later call for the
        same code raises CodeNotFound.
        """
        async with self._lock:
            record = self._live(code, self._clock())
            if record.consumed:
                raise CodeNotFound(code)
            if record.client_id != client_id:
                raise CodeNotFound(code)
            if record.granted_scopes is None:
                raise CodeNotFound(code)
            record.consumed = True
            return record
