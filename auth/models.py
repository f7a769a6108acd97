"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and the engine do
the work; routes map these to Pydantic response models.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class Role(str, Enum):
    """Closed set of account roles."""

    admin = "admin"
    user = "user"


@dataclass
class Account:
    """A registered identity.

    email is unique and compared case-sensitively, exactly as stored.
    deleted_at is the soft-delete tombstone; stores never return tombstoned
    accounts, so callers only ever see it as None.
    """

    email: str
    password_hash: str
    role: Role = Role.user
    id: int | None = None
    last_seen: str | None = None
    created_at: str | None = None
    updated_at: str | None = None
    deleted_at: str | None = None


@dataclass
class RefreshSession:
    """Server-side record backing one outstanding refresh token.

    token_hash is HMAC-SHA256 of the session id carried in the token's jti
    claim. The raw token is never persisted.
    """

    owner_id: int
    token_hash: str
    expires_at: datetime
    id: int | None = None
    created_at: str | None = None
    updated_at: str | None = None
    deleted_at: str | None = None


@dataclass(frozen=True)
class AccessClaims:
    subject: int
    role: Role
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class RefreshClaims:
    subject: int
    session_id: str
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
