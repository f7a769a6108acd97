"""
auth/engine.py -- Login, Refresh, and Logout over the account and session stores.

The engine owns the refresh-token lifecycle:

  login     verifies credentials, issues an access token, persists a new
            refresh session row and only then hands out the refresh token.
  refresh   verifies the presented refresh token, checks the stored row (the
            row's own expiry is authoritative), and rotates it in place.
  logout    verifies the token and hard-deletes its row.

Error policy: every lookup, codec, and rotation failure leaves this module as
one of InvalidCredentials, InvalidRefreshToken, or StorageUnavailable. Unknown
email and wrong password are indistinguishable; so are tampered, unknown,
rotated, and expired refresh tokens.

Concurrency: the engine holds no locks and no shared mutable state. The store's
conditional UPDATE in SessionStore.rotate() is what guarantees that two
concurrent refreshes of one token produce exactly one success.

Last-seen: a successful login schedules LastSeenUpdater on a detached daemon
thread with its own bounded retry loop. Its outcome is visible in logs only.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from datetime import datetime, timedelta

from auth.errors import (
    AccountNotFound,
    DuplicateSessionHash,
    InvalidCredentials,
    InvalidRefreshToken,
    InvalidToken,
    SessionNotFound,
    StorageUnavailable,
)
from auth.models import Account, RefreshSession, TokenPair
from auth.sessions import SessionStore
from auth.store import AccountStore, now_utc
from auth.tokens import (
    burn_password_check,
    generate_session_id,
    hash_session_id,
    issue_access_token,
    issue_refresh_token,
    parse_refresh_token,
    verify_password,
)
from core.config import Settings

logger = logging.getLogger("authsvc.engine")

# Fresh-id attempts after a token_hash collision.
_MAX_SESSION_ATTEMPTS = 5


class LastSeenUpdater:
    """Best-effort last_seen stamping, detached from the request.

    schedule() starts a daemon thread and returns immediately. The thread
    makes up to `attempts` calls to AccountStore.touch_last_seen with a fixed
    `backoff` sleep between failures. It is never joined by the request and
    may outlive the response.
    """

    def __init__(
        self,
        accounts: AccountStore,
        attempts: int = 3,
        backoff: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.accounts = accounts
        self.attempts = attempts
        self.backoff = backoff
        self._sleep = sleep

    def schedule(self, account_id: int) -> threading.Thread:
        thread = threading.Thread(
            target=self.run,
            args=(account_id,),
            name=f"authsvc.last_seen.{account_id}",
            daemon=True,
        )
        thread.start()
        return thread

    def run(self, account_id: int) -> bool:
        """Try to stamp last_seen; return True on success."""
        for attempt in range(1, self.attempts + 1):
            try:
                self.accounts.touch_last_seen(account_id)
                return True
            except AccountNotFound:
                logger.info("last_seen skipped: account %d no longer exists", account_id)
                return False
            except StorageUnavailable:
                logger.warning("last_seen update failed for account %d (attempt %d/%d)", account_id, attempt, self.attempts)
                if attempt < self.attempts:
                    self._sleep(self.backoff)
        logger.error("last_seen update gave up for account %d", account_id)
        return False


class AuthEngine:
    """Orchestrates the credential store, the session store, and the token codec.

    All configuration arrives through the immutable Settings passed in; the
    engine never reads globals.
    """

    def __init__(
        self,
        accounts: AccountStore,
        sessions: SessionStore,
        settings: Settings,
        last_seen: LastSeenUpdater | None = None,
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        self.accounts = accounts
        self.sessions = sessions
        self._access_secret = settings.access_token_secret
        self._refresh_secret = settings.refresh_token_secret
        self.access_ttl = timedelta(seconds=settings.access_token_ttl_seconds)
        self.refresh_ttl = timedelta(seconds=settings.refresh_token_ttl_seconds)
        self.last_seen = last_seen
        self._clock = clock

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _issue_access(self, account: Account, now: datetime) -> str:
        return issue_access_token(account.id, account.role, self._access_secret, self.access_ttl, now=now)

    def _session_hash(self, refresh_token: str) -> tuple[int, str]:
        """Verify a refresh token and return (subject, stored hash of its jti)."""
        try:
            claims = parse_refresh_token(refresh_token, self._refresh_secret)
        except InvalidToken as exc:
            logger.info("Refresh token rejected: %s", exc)
            raise InvalidRefreshToken() from exc
        return claims.subject, hash_session_id(claims.session_id, self._refresh_secret)

    # ------------------------------------------------------------------
    # Protocols
    # ------------------------------------------------------------------

    def login(self, email: str, password: str) -> TokenPair:
        """Verify credentials and issue a fresh access/refresh pair.

        Raises InvalidCredentials for an unknown email or a wrong password.
        """
        try:
            account = self.accounts.get_by_email(email)
        except AccountNotFound:
            burn_password_check(password)
            raise InvalidCredentials() from None
        if not verify_password(password, account.password_hash):
            raise InvalidCredentials()

        now = self._clock()
        access = self._issue_access(account, now)

        # The row is the source of truth: the refresh token is only signed
        # after its row has been persisted.
        for _ in range(_MAX_SESSION_ATTEMPTS):
            session_id = generate_session_id()
            try:
                self.sessions.create(
                    RefreshSession(
                        owner_id=account.id,
                        token_hash=hash_session_id(session_id, self._refresh_secret),
                        expires_at=now + self.refresh_ttl,
                    )
                )
            except DuplicateSessionHash:
                logger.warning("Refresh session hash collision on login; retrying")
                continue
            refresh = issue_refresh_token(account.id, session_id, self._refresh_secret, self.refresh_ttl, now=now)
            break
        else:
            raise StorageUnavailable("could not allocate a unique refresh session")

        logger.info("Login succeeded for account %d", account.id)
        if self.last_seen is not None:
            self.last_seen.schedule(account.id)
        return TokenPair(access_token=access, refresh_token=refresh)

    def refresh(self, refresh_token: str) -> TokenPair:
        """Rotate a refresh session and issue a new token pair.

        The presented token is single-use: once this call returns, presenting
        it again raises InvalidRefreshToken.
        """
        subject, old_hash = self._session_hash(refresh_token)

        try:
            session = self.sessions.read_by_hash(old_hash)
        except SessionNotFound:
            raise InvalidRefreshToken() from None
        if session.owner_id != subject:
            logger.warning("Refresh token subject %d does not own session %d", subject, session.id)
            raise InvalidRefreshToken()

        now = self._clock()
        if session.expires_at <= now:
            if self.sessions.delete_if_expired(old_hash, now=now):
                logger.info("Expired refresh session %d deleted", session.id)
            raise InvalidRefreshToken()

        try:
            account = self.accounts.get_by_id(session.owner_id)
        except AccountNotFound:
            raise InvalidRefreshToken() from None
        access = self._issue_access(account, now)

        for _ in range(_MAX_SESSION_ATTEMPTS):
            new_session_id = generate_session_id()
            try:
                self.sessions.rotate(
                    old_hash,
                    hash_session_id(new_session_id, self._refresh_secret),
                    now + self.refresh_ttl,
                    now=now,
                )
            except DuplicateSessionHash:
                logger.warning("Refresh session hash collision on rotate; retrying")
                continue
            except SessionNotFound:
                # rotated, logged out, expired, or deleted between read and rotate
                logger.info("Refresh session %d lost a rotation race", session.id)
                raise InvalidRefreshToken() from None
            break
        else:
            raise StorageUnavailable("could not allocate a unique refresh session")

        new_refresh = issue_refresh_token(account.id, new_session_id, self._refresh_secret, self.refresh_ttl, now=now)
        return TokenPair(access_token=access, refresh_token=new_refresh)

    def logout(self, refresh_token: str) -> None:
        """Revoke the session behind a refresh token.

        Raises InvalidRefreshToken for malformed tokens and for sessions that
        are already gone, so a double logout is observable.
        """
        _subject, token_hash = self._session_hash(refresh_token)
        try:
            self.sessions.delete_by_hash(token_hash)
        except SessionNotFound:
            raise InvalidRefreshToken() from None

    def revoke_all(self, account_id: int) -> int:
        """Delete every refresh session of an account; returns how many were removed."""
        try:
            count = self.sessions.delete_by_owner(account_id)
        except SessionNotFound:
            return 0
        logger.info("Revoked %d refresh sessions for account %d", count, account_id)
        return count
