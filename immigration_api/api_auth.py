"""
Auth API Endpoints
==================

FastAPI router for registration, login and password management.

- POST  /auth/register              - Client self-registration
- POST  /auth/register-staff        - Admin creates staff account
- POST  /auth/login                 - Email + password login
- POST  /auth/logout                - Clear the session cookie
- POST  /auth/refresh               - Re-issue a token for the caller
- GET   /auth/me                    - Current user
- PATCH /auth/updateme              - Update own profile
- PATCH /auth/updatepassword        - Change own password
- POST  /auth/forgotpassword        - Email a reset token
- PATCH /auth/resetpassword/{token} - Set a new password with a reset token

Every endpoint that issues a token also sets it as the httpOnly `jwt` cookie.
"""

import logging

from fastapi import APIRouter, Depends, Response

from .access import TOKEN_COOKIE_NAME, AuthContext
from .auth import CredentialService, IssuedSession
from .config import get_settings
from .db.models import Role
from .dependencies import get_credentials, require_auth, require_roles
from .schemas import (
    ForgotPasswordRequest,
    LoginRequest,
    RegisterRequest,
    ResetPasswordRequest,
    UpdateMeRequest,
    UpdatePasswordRequest,
    user_to_dict,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["Auth"])


def _send_token(response: Response, session: IssuedSession) -> dict:
    settings = get_settings()
    response.set_cookie(
        TOKEN_COOKIE_NAME,
        session.token,
        max_age=settings.jwt_cookie_expires_days * 24 * 60 * 60,
        httponly=True,
        secure=settings.is_production,
        samesite="lax",
    )
    return {
        "status": "success",
        "token": session.token,
        "data": {"user": user_to_dict(session.user)},
    }


@router.post("/register", status_code=201)
def register(
    request: RegisterRequest,
    response: Response,
    credentials: CredentialService = Depends(get_credentials),
):
    """Register a client account. Any requested role is ignored."""
    user = credentials.register(
        request.name, request.email, request.password,
        requested_role=request.role, **request.profile(),
    )
    return _send_token(response, credentials.issue_session(user))


@router.post("/register-staff", status_code=201)
def register_staff(
    request: RegisterRequest,
    auth: AuthContext = Depends(require_roles(Role.ADMIN)),
    credentials: CredentialService = Depends(get_credentials),
):
    """Create an admin/attorney/paralegal account (other roles become paralegal)."""
    user = credentials.register_staff(
        auth, request.name, request.email, request.password,
        requested_role=request.role, **request.profile(),
    )
    return {"status": "success", "data": {"user": user_to_dict(user)}}


@router.post("/login")
def login(
    request: LoginRequest,
    response: Response,
    credentials: CredentialService = Depends(get_credentials),
):
    session = credentials.authenticate(request.email, request.password)
    return _send_token(response, session)


@router.post("/logout")
def logout(response: Response):
    response.delete_cookie(TOKEN_COOKIE_NAME)
    return {"status": "success", "message": "Logged out successfully"}


@router.post("/refresh")
def refresh(
    response: Response,
    auth: AuthContext = Depends(require_auth),
    credentials: CredentialService = Depends(get_credentials),
):
    return _send_token(response, credentials.issue_session(credentials.get_user(auth.user_id)))


@router.get("/me")
def me(
    auth: AuthContext = Depends(require_auth),
    credentials: CredentialService = Depends(get_credentials),
):
    user = credentials.get_user(auth.user_id)
    return {"status": "success", "data": {"user": user_to_dict(user)}}


@router.patch("/updateme")
def update_me(
    request: UpdateMeRequest,
    auth: AuthContext = Depends(require_auth),
    credentials: CredentialService = Depends(get_credentials),
):
    user = credentials.update_profile(auth, request.changes())
    return {"status": "success", "data": {"user": user_to_dict(user)}}


@router.patch("/updatepassword")
def update_password(
    request: UpdatePasswordRequest,
    response: Response,
    auth: AuthContext = Depends(require_auth),
    credentials: CredentialService = Depends(get_credentials),
):
    session = credentials.change_password(auth, request.current_password, request.password)
    return _send_token(response, session)


@router.post("/forgotpassword")
def forgot_password(
    request: ForgotPasswordRequest,
    credentials: CredentialService = Depends(get_credentials),
):
    credentials.request_reset(request.email)
    return {"status": "success", "message": "Token sent to email!"}


@router.patch("/resetpassword/{token}")
def reset_password(
    token: str,
    request: ResetPasswordRequest,
    response: Response,
    credentials: CredentialService = Depends(get_credentials),
):
    session = credentials.consume_reset(token, request.password)
    return _send_token(response, session)
