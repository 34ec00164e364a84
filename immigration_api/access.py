"""
Access Control (RBAC)
=====================

Role-based access for the case store.

Roles:
- admin: Full control, unrestricted case scope, manages users
- attorney: Creates cases, sees cases they created or are assigned to
- paralegal: Works on cases they created or are assigned to
- client: Sees only cases where they are the applicant

Two layers:
1. Capability table (ROLE_PERMISSIONS) checked once per operation
2. Object scope: scope_filter() for queries, can_view()/can_modify() for single cases
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Mapping, Optional

from sqlalchemy import or_

from .db.models import Case, Role, STAFF_ROLES
from .errors import AuthorizationError

logger = logging.getLogger(__name__)

TOKEN_COOKIE_NAME = "jwt"


# =============================================================================
# PERMISSION TYPES
# =============================================================================

class Permission(str, Enum):
    """Available permissions in the system"""
    # Case permissions
    CASE_CREATE = "case:create"
    CASE_READ = "case:read"
    CASE_UPDATE = "case:update"
    CASE_DELETE = "case:delete"
    CASE_STATS = "case:stats"
    CASE_ASSIGN = "case:assign"
    CASE_STATUS = "case:status"
    CASE_PRIORITY = "case:priority"
    CASE_NOTES = "case:notes"
    CASE_DOCUMENT_REVIEW = "case:document_review"

    # User permissions
    USER_REGISTER_STAFF = "user:register_staff"
    USER_MANAGE = "user:manage"


_STAFF_CASE_PERMISSIONS = {
    Permission.CASE_READ, Permission.CASE_UPDATE,
    Permission.CASE_NOTES, Permission.CASE_DOCUMENT_REVIEW,
}

# Role to permissions mapping
ROLE_PERMISSIONS = {
    Role.ADMIN: set(Permission),
    Role.ATTORNEY: _STAFF_CASE_PERMISSIONS | {
        Permission.CASE_CREATE, Permission.CASE_STATS,
        Permission.CASE_STATUS, Permission.CASE_PRIORITY,
    },
    Role.PARALEGAL: set(_STAFF_CASE_PERMISSIONS),
    Role.CLIENT: {
        Permission.CASE_READ,
    },
}


# =============================================================================
# AUTH CONTEXT
# =============================================================================

@dataclass
class AuthContext:
    """Authenticated caller for a request"""
    user_id: str
    role: Role
    email: str = ""
    name: str = ""

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES

    def has_permission(self, permission: Permission) -> bool:
        """Check if the caller's role grants a permission"""
        return permission in ROLE_PERMISSIONS.get(self.role, set())


def require_permission(auth: AuthContext, permission: Permission) -> None:
    """Raise AuthorizationError unless the caller's role grants `permission`."""
    if not auth.has_permission(permission):
        logger.warning(f"Permission denied: {auth.user_id} ({auth.role.value}) lacks {permission.value}")
        raise AuthorizationError()


# =============================================================================
# OBJECT SCOPE
# =============================================================================

def scope_filter(actor_id: str, role: Role):
    """
    Query predicate limiting the cases an actor may read.

    Returns None for admins (unrestricted).
    """
    if role == Role.ADMIN:
        return None
    if role in (Role.ATTORNEY, Role.PARALEGAL):
        return or_(Case.assigned_to_id == actor_id, Case.created_by_id == actor_id)
    if role == Role.CLIENT:
        return Case.applicant_user_id == actor_id
    # Unknown roles see nothing
    return Case.id.is_(None)


def apply_scope(query, auth: AuthContext):
    """Apply scope_filter() to a Case query."""
    clause = scope_filter(auth.user_id, auth.role)
    if clause is not None:
        query = query.filter(clause)
    return query


def can_modify(auth: AuthContext, case: Case) -> bool:
    """Admin, creator or current assignee."""
    if auth.is_admin:
        return True
    return auth.user_id in (case.created_by_id, case.assigned_to_id)


def can_view(auth: AuthContext, case: Case) -> bool:
    """can_modify() plus the applicant's own account."""
    if can_modify(auth, case):
        return True
    return case.applicant_user_id is not None and case.applicant_user_id == auth.user_id


# =============================================================================
# TOKEN LOOKUP
# =============================================================================

def extract_token(
    authorization: Optional[str],
    cookies: Optional[Mapping[str, str]] = None,
) -> Optional[str]:
    """
    Find the session token for a request.

    `Authorization: Bearer <token>` wins; the `jwt` cookie is the fallback
    for browser clients.
    """
    if authorization and authorization.lower().startswith("bearer "):
        token = authorization.split(" ", 1)[1].strip()
        if token:
            return token
    if cookies:
        token = (cookies.get(TOKEN_COOKIE_NAME) or "").strip()
        if token and token != "loggedout":
            return token
    return None
