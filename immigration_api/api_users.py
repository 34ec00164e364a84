"""
User Management API Endpoints
=============================

Admin-only account management. Users are deactivated, never deleted.

- GET   /users                  - List accounts (optional role filter)
- PATCH /users/{id}/role        - Change a user's role
- PATCH /users/{id}/deactivate  - Deactivate an account
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from .access import AuthContext
from .auth import CredentialService
from .db.models import Role
from .dependencies import get_credentials, require_roles
from .schemas import ChangeRoleRequest, user_to_dict

router = APIRouter(prefix="/users", tags=["Users"])

require_admin = require_roles(Role.ADMIN)


@router.get("")
def list_users(
    role: Optional[Role] = Query(None),
    include_inactive: bool = Query(False),
    auth: AuthContext = Depends(require_admin),
    credentials: CredentialService = Depends(get_credentials),
):
    users = credentials.list_users(auth, role=role, include_inactive=include_inactive)
    return {
        "status": "success",
        "results": len(users),
        "data": {"users": [user_to_dict(u) for u in users]},
    }


@router.patch("/{user_id}/role")
def change_role(
    user_id: str,
    request: ChangeRoleRequest,
    auth: AuthContext = Depends(require_admin),
    credentials: CredentialService = Depends(get_credentials),
):
    user = credentials.change_role(auth, user_id, request.role)
    return {"status": "success", "data": {"user": user_to_dict(user)}}


@router.patch("/{user_id}/deactivate")
def deactivate_user(
    user_id: str,
    auth: AuthContext = Depends(require_admin),
    credentials: CredentialService = Depends(get_credentials),
):
    user = credentials.deactivate(auth, user_id)
    return {"status": "success", "data": {"user": user_to_dict(user)}}
