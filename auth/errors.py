"""
auth/errors.py -- Error taxonomy for the auth core.

The engine boundary only ever lets the coarse errors through:
  InvalidCredentials   -- unknown email or wrong password (merged on purpose)
  InvalidRefreshToken  -- malformed, tampered, unknown, rotated or expired
  StorageUnavailable   -- transient database failure

The finer-grained errors below are raised by the stores and the codec and are
translated by the engine before they reach transport. The `code` attribute is
the machine-readable value used in the API error envelope.
"""

from __future__ import annotations


class AuthError(Exception):
    code = "auth_error"
    message = "Authentication error."

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.message)


class InvalidCredentials(AuthError):
    code = "invalid_credentials"
    message = "Invalid email or password."


class InvalidRefreshToken(AuthError):
    code = "invalid_refresh_token"
    message = "Invalid or expired refresh token."


class InvalidToken(AuthError):
    code = "invalid_token"
    message = "Invalid or expired token."


class StorageUnavailable(AuthError):
    code = "storage_unavailable"
    message = "Storage backend unavailable."


class AccountNotFound(AuthError):
    code = "account_not_found"
    message = "Account not found."


class SessionNotFound(AuthError):
    code = "session_not_found"
    message = "Refresh session not found."


class DuplicateSessionHash(AuthError):
    code = "duplicate_session_hash"
    message = "Refresh session hash already exists."


class EmailAlreadyExists(AuthError):
    code = "email_exists"
    message = "An account with that email already exists."


class InvalidAccountData(AuthError):
    code = "invalid_account_data"
    message = "Invalid email or password format."
