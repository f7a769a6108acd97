"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Only one credential is accepted: an access JWT in an
`Authorization: Bearer <token>` header. Refresh tokens are never accepted here;
they are signed with a different secret and carry type="refresh", so they fail
verification.

get_current_account() verifies the token, loads the live account, and attaches
it to request.state.account for downstream handlers.
require_role(*roles) builds a guard over the closed Role set, evaluated after
the identity dependency. require_admin is the admin-only instance.

Layer rule: auth/dependencies.py may import from fastapi because it is part of
the FastAPI dependency injection system. No imports from api/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from fastapi import Depends, HTTPException, Request

from auth.errors import AccountNotFound, InvalidToken
from auth.models import Account, Role
from auth.tokens import parse_access_token

logger = logging.getLogger("authsvc.auth")


def _unauthorized(message: str) -> HTTPException:
    return HTTPException(
        status_code=401,
        detail={"code": "unauthorized", "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


def _bearer_token(request: Request) -> str | None:
    parts = request.headers.get("Authorization", "").split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1]


def get_current_account(request: Request) -> Account:
    """Require a valid access token. Raises HTTP 401 otherwise.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(account: Account = Depends(get_current_account)): ...
    """
    token = _bearer_token(request)
    if token is None:
        raise _unauthorized("Authorization header must be 'Bearer <token>'.")

    settings = request.app.state.settings
    try:
        claims = parse_access_token(token, settings.access_token_secret)
    except InvalidToken as exc:
        logger.info("Access token rejected: %s", exc)
        raise _unauthorized("Invalid or expired access token.") from exc

    try:
        account = request.app.state.account_store.get_by_id(claims.subject)
    except AccountNotFound as exc:
        raise _unauthorized("Account not found.") from exc

    request.state.account = account
    return account


def require_role(*roles: Role) -> Callable[..., Account]:
    """Build a dependency that admits only accounts holding one of `roles`.

    Raises HTTP 401 if unauthenticated and HTTP 403 if the role does not match.

        @router.get("/admin-only")
        def route(account: Account = Depends(require_role(Role.admin))): ...
    """
    allowed = frozenset(Role(r) for r in roles)

    def guard(account: Account = Depends(get_current_account)) -> Account:
        if Role(account.role) not in allowed:
            raise HTTPException(
                status_code=403,
                detail={"code": "forbidden", "message": "Insufficient role."},
            )
        return account

    return guard


require_admin = require_role(Role.admin)
