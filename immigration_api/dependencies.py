"""
Request Dependencies
====================

FastAPI dependencies shared by the routers: database session, the
authenticated caller, and role gates.
"""

import logging
from typing import Optional

from fastapi import Depends, Header, Request
from sqlalchemy.orm import Session

from .access import AuthContext, extract_token
from .auth import CredentialService, get_credential_service
from .cases import CaseService, get_case_service
from .db.models import Role
from .db.session import get_db
from .errors import AuthenticationError, AuthorizationError

logger = logging.getLogger(__name__)


def get_credentials(db: Session = Depends(get_db)) -> CredentialService:
    return get_credential_service(db)


def get_cases(db: Session = Depends(get_db)) -> CaseService:
    return get_case_service(db)


def get_current_user(
    request: Request,
    authorization: Optional[str] = Header(None, alias="Authorization"),
    credentials: CredentialService = Depends(get_credentials),
) -> Optional[AuthContext]:
    """
    Resolve the caller from either:
    - `Authorization: Bearer <jwt>` (preferred when present)
    - the `jwt` cookie (browser clients)

    Returns None when no token is supplied; an invalid token is a 401.
    """
    token = extract_token(authorization, request.cookies)
    if not token:
        return None
    return credentials.verify(token)


def require_auth(
    auth: Optional[AuthContext] = Depends(get_current_user)
) -> AuthContext:
    """Require authenticated user"""
    if not auth:
        raise AuthenticationError()
    return auth


def require_roles(*roles: Role):
    """Dependency factory restricting a route to the given roles."""

    def _check(auth: AuthContext = Depends(require_auth)) -> AuthContext:
        if auth.role not in roles:
            logger.warning(f"Role check failed: {auth.user_id} is {auth.role.value}")
            raise AuthorizationError()
        return auth

    return _check
