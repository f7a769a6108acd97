"""
auth/accounts.py -- Account registration and maintenance.

AccountService wraps AccountStore with the input policy that the store itself
does not know about:

  Email:    syntactically valid (email-validator, no DNS lookups). The address
            is stored exactly as given; uniqueness is case-sensitive.
  Password: at least 8 characters and at most 72 bytes of UTF-8 (the part
            of the input bcrypt reads), with at least one ASCII letter, one
            ASCII digit, and one special character.

Deleting an account revokes all of its refresh sessions first and then
tombstones the row. Access tokens already issued stay valid until they expire,
but the identity dependency rejects them because the account lookup fails.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging

from email_validator import EmailNotValidError, validate_email

from auth.engine import AuthEngine
from auth.errors import InvalidAccountData
from auth.models import Account, Role
from auth.store import AccountStore
from auth.tokens import hash_password

logger = logging.getLogger("authsvc.accounts")

PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_BYTES = 72
_SPECIAL_CHARACTERS = set("!@#$%^&*()-_=+[]{}|;:'\",.<>?/`~")


def check_email(email: str) -> None:
    """Raise InvalidAccountData if the email is not a syntactically valid address."""
    try:
        validate_email(email, check_deliverability=False)
    except EmailNotValidError as exc:
        raise InvalidAccountData(f"invalid email: {exc}") from exc


def check_password(password: str) -> None:
    """Raise InvalidAccountData if the password does not meet the policy."""
    if len(password) < PASSWORD_MIN_LENGTH:
        raise InvalidAccountData(f"password must be at least {PASSWORD_MIN_LENGTH} characters")
    if len(password.encode("utf-8")) > PASSWORD_MAX_BYTES:
        raise InvalidAccountData(f"password must be at most {PASSWORD_MAX_BYTES} bytes")
    has_letter = any(c.isascii() and c.isalpha() for c in password)
    has_digit = any(c.isascii() and c.isdigit() for c in password)
    if not has_letter or not has_digit:
        raise InvalidAccountData("password must contain letters and digits")
    if not any(c in _SPECIAL_CHARACTERS for c in password):
        raise InvalidAccountData("password must contain a special character")


class AccountService:
    """Registration, lookup, credential changes, and removal of accounts."""

    def __init__(self, accounts: AccountStore, engine: AuthEngine) -> None:
        self.accounts = accounts
        self.engine = engine

    def register(self, email: str, password: str, role: Role = Role.user) -> Account:
        """Validate, hash, and persist a new account.

        Raises InvalidAccountData or EmailAlreadyExists.
        """
        check_email(email)
        check_password(password)
        account_id = self.accounts.create(Account(email=email, password_hash=hash_password(password), role=role))
        logger.info("Registered account %d (role=%s)", account_id, Role(role).value)
        return self.accounts.get_by_id(account_id)

    def get(self, account_id: int) -> Account:
        return self.accounts.get_by_id(account_id)

    def find_by_email(self, email: str) -> Account:
        return self.accounts.get_by_email(email)

    def change_email(self, account_id: int, email: str) -> Account:
        check_email(email)
        self.accounts.update_email(account_id, email)
        return self.accounts.get_by_id(account_id)

    def change_password(self, account_id: int, password: str) -> None:
        check_password(password)
        self.accounts.update_password(account_id, hash_password(password))
        logger.info("Password changed for account %d", account_id)

    def delete(self, account_id: int) -> None:
        """Revoke every refresh session, then soft-delete the account.

        Sessions go first: once the account is tombstoned its sessions are no
        longer addressable by owner.
        """
        self.accounts.get_by_id(account_id)
        self.engine.revoke_all(account_id)
        self.accounts.soft_delete(account_id)
        logger.info("Deleted account %d", account_id)

    def ensure_admin(self, email: str, password: str) -> Account | None:
        """Create the bootstrap admin when the database has no accounts yet.

        Returns the created account, or None if accounts already exist.
        """
        if self.accounts.has_accounts():
            return None
        return self.register(email, password, role=Role.admin)
