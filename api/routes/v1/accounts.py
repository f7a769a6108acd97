"""
api/routes/v1/accounts.py -- Account management endpoints (admin only).

Routes:
  POST   /api/v1/accounts                 -- create an account with any role
  GET    /api/v1/accounts?email=          -- look up an account by exact email
  GET    /api/v1/accounts/{id}            -- look up an account by id
  PUT    /api/v1/accounts/{id}/email      -- change email
  PUT    /api/v1/accounts/{id}/password   -- change password
  DELETE /api/v1/accounts/{id}            -- revoke sessions and soft-delete

Every route depends on require_admin. Domain errors (AccountNotFound,
EmailAlreadyExists, InvalidAccountData) are mapped to 404/409/422 by the
AuthError handler in api/main.py.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response

from api.models import AccountCreate, AccountResponse, EmailUpdate, PasswordUpdate
from auth.accounts import AccountService
from auth.dependencies import require_admin
from auth.models import Account

router = APIRouter(dependencies=[Depends(require_admin)])


def _service(request: Request) -> AccountService:
    return request.app.state.account_service


@router.post("/accounts", response_model=AccountResponse, status_code=201)
def create_account(request: Request, body: AccountCreate) -> AccountResponse:
    account = _service(request).register(body.email, body.password, role=body.role)
    return AccountResponse.from_account(account)


@router.get("/accounts", response_model=AccountResponse)
def find_account(request: Request, email: str = Query(min_length=3, max_length=255)) -> AccountResponse:
    return AccountResponse.from_account(_service(request).find_by_email(email))


@router.get("/accounts/{account_id}", response_model=AccountResponse)
def get_account(request: Request, account_id: int) -> AccountResponse:
    return AccountResponse.from_account(_service(request).get(account_id))


@router.put("/accounts/{account_id}/email", response_model=AccountResponse)
def update_email(request: Request, account_id: int, body: EmailUpdate) -> AccountResponse:
    return AccountResponse.from_account(_service(request).change_email(account_id, body.email))


@router.put("/accounts/{account_id}/password", status_code=204)
def update_password(request: Request, account_id: int, body: PasswordUpdate) -> Response:
    _service(request).change_password(account_id, body.password)
    return Response(status_code=204)


@router.delete("/accounts/{account_id}", status_code=204)
def delete_account(
    request: Request,
    account_id: int,
    current_account: Account = Depends(require_admin),
) -> Response:
    """Soft-delete an account after revoking all of its refresh sessions.

    An admin cannot delete their own account; that would leave no way back in
    if they are the only admin.
    """
    if account_id == current_account.id:
        raise HTTPException(
            status_code=400,
            detail={"code": "self_deletion", "message": "You cannot delete your own account."},
        )
    _service(request).delete(account_id)
    return Response(status_code=204)
