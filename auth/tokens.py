"""
auth/tokens.py -- JWT codec, password hashing, and refresh session id helpers.

Security design decisions:
  JWT: python-jose with HS256. Access tokens carry sub (account id), role, iat,
       exp and type="access". Refresh tokens carry sub, jti (session id), iat,
       exp and type="refresh". The two kinds are signed with separate secrets,
       so a leaked access secret cannot forge refresh tokens and vice versa.
       Decoding pins algorithms=[HS256]: a token whose header names any other
       algorithm (RS256, none, ...) is rejected before the signature check, which
       closes the algorithm-confusion hole.

  Passwords: bcrypt, used directly. The _DUMMY_HASH constant enables timing
       equalization in the engine so response time does not reveal whether an
       email is registered.

  Session ids: uuid4 strings. Only HMAC-SHA256(refresh secret, session id) is
       stored, so a database dump alone yields no usable refresh tokens and the
       hash is deterministic for O(1) lookup through the UNIQUE index.

Every function takes its secret explicitly; nothing here reads configuration.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import uuid
from datetime import datetime, timedelta, timezone

import bcrypt
from jose import JWTError, jwt

from auth.errors import InvalidToken
from auth.models import AccessClaims, RefreshClaims, Role

logger = logging.getLogger("authsvc.tokens")

_ALGORITHM = "HS256"
_ACCESS_TYPE = "access"
_REFRESH_TYPE = "refresh"

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt reads at most 72 bytes of input. check_password in auth/accounts.py
    rejects longer UTF-8 encodings before they get here.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # malformed stored hash
        return False


# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("authsvc_timing_dummy")


def burn_password_check(plain: str) -> None:
    """Run a bcrypt comparison against the dummy hash and discard the result.

    Called when the email is unknown so both failure paths cost one bcrypt
    verification.
    """
    verify_password(plain, _DUMMY_HASH)


# ---------------------------------------------------------------------------
# Session ids
# ---------------------------------------------------------------------------


def generate_session_id() -> str:
    """Return a fresh opaque session id for the jti claim."""
    return str(uuid.uuid4())


def hash_session_id(session_id: str, secret: str) -> str:
    """Return HMAC-SHA256(secret, session_id) as a hex string."""
    return hmac.new(secret.encode(), session_id.encode(), hashlib.sha256).hexdigest()


# ---------------------------------------------------------------------------
# JWT encode
# ---------------------------------------------------------------------------


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _timestamps(ttl: timedelta, now: datetime | None) -> tuple[int, int]:
    issued = now or _now()
    return int(issued.timestamp()), int((issued + ttl).timestamp())


def issue_access_token(
    subject_id: int, role: Role | str, secret: str, ttl: timedelta, now: datetime | None = None
) -> str:
    """Encode a signed access JWT for the given account.

    Args:
        subject_id: Account id, stored as the string sub claim.
        role:       Account role.
        secret:     Access signing secret.
        ttl:        Lifetime; exp = iat + ttl.
        now:        Issue time. Defaults to the current UTC time; pass a fixed
                    value for deterministic output.
    """
    iat, exp = _timestamps(ttl, now)
    payload = {
        "sub": str(subject_id),
        "role": Role(role).value,
        "type": _ACCESS_TYPE,
        "iat": iat,
        "exp": exp,
    }
    return jwt.encode(payload, secret, algorithm=_ALGORITHM)


def issue_refresh_token(
    subject_id: int, session_id: str, secret: str, ttl: timedelta, now: datetime | None = None
) -> str:
    """Encode a signed refresh JWT carrying the opaque session id as jti."""
    iat, exp = _timestamps(ttl, now)
    payload = {
        "sub": str(subject_id),
        "jti": session_id,
        "type": _REFRESH_TYPE,
        "iat": iat,
        "exp": exp,
    }
    return jwt.encode(payload, secret, algorithm=_ALGORITHM)


# ---------------------------------------------------------------------------
# JWT decode
# ---------------------------------------------------------------------------


def _decode(token: str, secret: str, expected_type: str) -> dict:
    try:
        payload = jwt.decode(
            token,
            secret,
            algorithms=[_ALGORITHM],
            options={"require_exp": True, "require_iat": True, "require_sub": True},
        )
    except JWTError as exc:
        raise InvalidToken(str(exc)) from exc
    if payload.get("type") != expected_type:
        raise InvalidToken(f"expected a {expected_type} token")
    return payload


def _subject(payload: dict) -> int:
    try:
        return int(payload["sub"])
    except (KeyError, TypeError, ValueError) as exc:
        raise InvalidToken("malformed subject claim") from exc


def _utc(ts: int) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc)


def parse_access_token(token: str, secret: str) -> AccessClaims:
    """Verify an access JWT and return its claims.

    Raises InvalidToken on a bad signature, an unexpected algorithm, expiry,
    a refresh token presented as access, or missing claims.
    """
    payload = _decode(token, secret, _ACCESS_TYPE)
    try:
        role = Role(payload.get("role"))
    except ValueError as exc:
        raise InvalidToken("unknown role claim") from exc
    return AccessClaims(
        subject=_subject(payload),
        role=role,
        issued_at=_utc(payload["iat"]),
        expires_at=_utc(payload["exp"]),
    )


def parse_refresh_token(token: str, secret: str) -> RefreshClaims:
    """Verify a refresh JWT and return its claims. Raises InvalidToken on any failure."""
    payload = _decode(token, secret, _REFRESH_TYPE)
    session_id = payload.get("jti")
    if not isinstance(session_id, str) or not session_id:
        raise InvalidToken("missing jti claim")
    return RefreshClaims(
        subject=_subject(payload),
        session_id=session_id,
        issued_at=_utc(payload["iat"]),
        expires_at=_utc(payload["exp"]),
    )
