"""
Credential Service with JWT Support
===================================

Password hashing (bcrypt via passlib), session tokens (HS256 via PyJWT) and
the account operations built on them.

Token claims:
- sub: user id
- role: role at issue time
- iat: issued-at, whole seconds
- exp: expiry
- type: "access"

A token is rejected when the user's password changed after its `iat`
(compared at one-second granularity), so changing a password logs out every
earlier session without a revocation list.
"""

import hashlib
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import jwt
from passlib.context import CryptContext
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .access import AuthContext, Permission, require_permission
from .config import get_settings
from .db.models import Role, STAFF_ROLES, User, utcnow
from .email_utils import send_password_reset_email
from .errors import (
    AppError, AuthenticationError, ConflictError, InvalidOrExpiredError,
    NotFoundError, ValidationError,
)

logger = logging.getLogger(__name__)


# =============================================================================
# PASSWORD HASHING
# =============================================================================

# bcrypt truncates passwords at 72 bytes; enforce to avoid 500s.
MAX_PASSWORD_BYTES = 72

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def is_password_too_long(password: str) -> bool:
    """Return True if password exceeds bcrypt 72-byte limit."""
    return len(password.encode("utf-8")) > MAX_PASSWORD_BYTES


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify a password against a hash"""
    if is_password_too_long(plain_password):
        logger.warning("Auth failed: password exceeds bcrypt 72-byte limit")
        return False
    try:
        return pwd_context.verify(plain_password, hashed_password)
    except ValueError as e:
        logger.warning(f"Auth failed: invalid password format ({e})")
        return False


def get_password_hash(password: str) -> str:
    """Hash a password"""
    if is_password_too_long(password):
        raise ValidationError(f"Password too long (max {MAX_PASSWORD_BYTES} bytes)")
    return pwd_context.hash(password)


def hash_reset_token(token: str) -> str:
    """One-way digest stored in place of a plaintext reset token."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


# =============================================================================
# JWT TOKEN HANDLING
# =============================================================================

def _epoch_seconds(value: datetime) -> int:
    """Whole seconds since the epoch for a naive-UTC datetime."""
    return int(value.replace(tzinfo=timezone.utc).timestamp())


def create_access_token(
    data: dict,
    expires_delta: Optional[timedelta] = None,
    issued_at: Optional[datetime] = None,
) -> str:
    """Create a JWT access token"""
    settings = get_settings()
    issued = issued_at or utcnow()
    expire = issued + (expires_delta or timedelta(minutes=settings.jwt_expires_minutes))

    to_encode = data.copy()
    to_encode.update({
        "iat": _epoch_seconds(issued),
        "exp": _epoch_seconds(expire),
        "type": "access",
    })
    return jwt.encode(to_encode, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> Optional[dict]:
    """Decode and validate a JWT token (signature and expiry)"""
    settings = get_settings()
    try:
        return jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except jwt.PyJWTError as e:
        logger.warning(f"Invalid JWT token: {e.__class__.__name__}")
        return None


def changed_password_after(user: User, issued_at: int) -> bool:
    """True if the user's password changed after a token issued at `issued_at`."""
    if not user.password_changed_at:
        return False
    return _epoch_seconds(user.password_changed_at) > issued_at


@dataclass
class IssuedSession:
    """A freshly signed token and the account it belongs to"""
    token: str
    user: User


# =============================================================================
# CREDENTIAL SERVICE
# =============================================================================

PROFILE_FIELDS = ("name", "email", "phone", "address")
PASSWORD_FIELDS = ("password", "password_confirm", "new_password", "current_password")


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


class CredentialService:
    """Account registration, login, token verification and password flows."""

    def __init__(self, db: Session, notifier=None):
        self.db = db
        self.notifier = notifier or send_password_reset_email

    # -------------------------------------------------------------------------
    # Sessions
    # -------------------------------------------------------------------------

    def issue_session(self, user: User) -> IssuedSession:
        token = create_access_token({"sub": user.id, "role": user.role.value})
        return IssuedSession(token=token, user=user)

    def verify(self, token: str) -> AuthContext:
        """
        Validate a session token and load its subject.

        Raises:
            AuthenticationError: bad signature, expired, unknown/inactive user,
                or password changed after the token was issued
        """
        payload = decode_token(token)
        if not payload or payload.get("type") != "access":
            raise AuthenticationError("Invalid token. Please log in again!")

        user = self.db.query(User).filter(User.id == payload.get("sub")).first()
        if not user or not user.is_active:
            raise AuthenticationError("The user belonging to this token no longer exists.")

        issued_at = payload.get("iat")
        if not isinstance(issued_at, int) or changed_password_after(user, issued_at):
            logger.warning(f"Auth failed: token for user {user.id} predates password change")
            raise AuthenticationError("User recently changed password! Please log in again.")

        return AuthContext(user_id=user.id, role=user.role, email=user.email, name=user.name)

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------

    def _create_user(self, name: str, email: str, password: str, role: Role, **profile) -> User:
        email = normalize_email(email)
        if self.db.query(User.id).filter(User.email == email).first():
            raise ConflictError("Email already registered")

        user = User(
            name=name.strip(),
            email=email,
            password_hash=get_password_hash(password),
            role=role,
            **profile,
        )
        self.db.add(user)
        try:
            self.db.commit()
        except IntegrityError:
            # Lost a race on the unique email index
            self.db.rollback()
            raise ConflictError("Email already registered")
        self.db.refresh(user)
        logger.info(f"Registered user {user.id} with role {role.value}")
        return user

    def register(self, name: str, email: str, password: str,
                 requested_role: Optional[str] = None, **profile) -> User:
        """Public self-registration. The stored role is always client."""
        if requested_role and requested_role != Role.CLIENT.value:
            logger.info(f"Ignoring requested role {requested_role!r} on public registration")
        return self._create_user(name, email, password, Role.CLIENT, **profile)

    def register_staff(self, auth: AuthContext, name: str, email: str, password: str,
                       requested_role: Optional[str] = None, **profile) -> User:
        """Admin-only registration; non-staff roles fall back to paralegal."""
        require_permission(auth, Permission.USER_REGISTER_STAFF)
        staff_values = {r.value for r in STAFF_ROLES}
        role = Role(requested_role) if requested_role in staff_values else Role.PARALEGAL
        return self._create_user(name, email, password, role, **profile)

    # -------------------------------------------------------------------------
    # Login / passwords
    # -------------------------------------------------------------------------

    def authenticate(self, email: str, password: str) -> IssuedSession:
        email = normalize_email(email)
        user = self.db.query(User).filter(User.email == email).first()
        if not user or not user.is_active:
            logger.warning(f"Auth failed: email {email} not found or inactive")
            raise AuthenticationError("Incorrect email or password")

        if not verify_password(password, user.password_hash):
            logger.warning(f"Auth failed: invalid password for user {user.id}")
            raise AuthenticationError("Incorrect email or password")

        user.last_login = utcnow()
        self.db.commit()
        return self.issue_session(user)

    def _set_password(self, user: User, new_password: str) -> None:
        user.password_hash = get_password_hash(new_password)
        user.password_changed_at = utcnow()
        user.password_reset_token_hash = None
        user.password_reset_expires = None

    def change_password(self, auth: AuthContext, current_password: str, new_password: str) -> IssuedSession:
        user = self.get_user(auth.user_id)
        if not verify_password(current_password, user.password_hash):
            raise AuthenticationError("Your current password is wrong.")

        self._set_password(user, new_password)
        self.db.commit()
        logger.info(f"Password changed for user {user.id}")
        return self.issue_session(user)

    def request_reset(self, email: str) -> None:
        """
        Start a password reset.

        Only the SHA-256 digest of the token is stored; the plaintext goes to
        the notifier. Delivery failure clears the reset fields.
        """
        user = self.db.query(User).filter(User.email == normalize_email(email)).first()
        if not user:
            raise NotFoundError("There is no user with that email address.")

        reset_token = secrets.token_hex(32)
        minutes = get_settings().password_reset_expire_minutes
        user.password_reset_token_hash = hash_reset_token(reset_token)
        user.password_reset_expires = utcnow() + timedelta(minutes=minutes)
        self.db.commit()

        sent = self.notifier(
            to_email=user.email,
            reset_token=reset_token,
            user_name=user.name,
        )
        if not sent:
            user.password_reset_token_hash = None
            user.password_reset_expires = None
            self.db.commit()
            logger.error(f"Password reset email failed for user {user.id}")
            raise AppError("There was an error sending the email. Try again later!", 500)

        logger.info(f"Password reset requested for user {user.id}")

    def consume_reset(self, token: str, new_password: str) -> IssuedSession:
        user = self.db.query(User).filter(
            User.password_reset_token_hash == hash_reset_token(token),
            User.password_reset_expires > utcnow(),
        ).first()
        if not user:
            raise InvalidOrExpiredError()

        self._set_password(user, new_password)
        self.db.commit()
        logger.info(f"Password reset completed for user {user.id}")
        return self.issue_session(user)

    # -------------------------------------------------------------------------
    # Profile and user management
    # -------------------------------------------------------------------------

    def get_user(self, user_id: str) -> User:
        user = self.db.query(User).filter(User.id == user_id).first()
        if not user:
            raise NotFoundError("No user found with that ID")
        return user

    def update_profile(self, auth: AuthContext, changes: Dict[str, Any]) -> User:
        """Owner profile update, limited to name/email/phone/address."""
        if any(changes.get(field) is not None for field in PASSWORD_FIELDS):
            raise ValidationError("This route is not for password updates. Please use /updatepassword.")

        user = self.get_user(auth.user_id)
        for field in PROFILE_FIELDS:
            if field not in changes or changes[field] is None:
                continue
            value = changes[field]
            if field == "email":
                value = normalize_email(value)
                clash = self.db.query(User.id).filter(User.email == value, User.id != user.id).first()
                if clash:
                    raise ConflictError("Email already registered")
            setattr(user, field, value)

        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise ConflictError("Email already registered")
        self.db.refresh(user)
        return user

    def list_users(self, auth: AuthContext, role: Optional[Role] = None,
                   include_inactive: bool = False) -> List[User]:
        require_permission(auth, Permission.USER_MANAGE)
        query = self.db.query(User)
        if role is not None:
            query = query.filter(User.role == role)
        if not include_inactive:
            query = query.filter(User.is_active.is_(True))
        return query.order_by(User.created_at.desc()).all()

    def change_role(self, auth: AuthContext, user_id: str, role: Role) -> User:
        require_permission(auth, Permission.USER_MANAGE)
        if user_id == auth.user_id:
            raise ValidationError("Admins cannot change their own role")
        user = self.get_user(user_id)
        user.role = role
        self.db.commit()
        logger.info(f"User {user.id} role set to {role.value} by {auth.user_id}")
        return user

    def deactivate(self, auth: AuthContext, user_id: str) -> User:
        require_permission(auth, Permission.USER_MANAGE)
        if user_id == auth.user_id:
            raise ValidationError("Admins cannot deactivate themselves")
        user = self.get_user(user_id)
        user.is_active = False
        self.db.commit()
        logger.info(f"User {user.id} deactivated by {auth.user_id}")
        return user


def get_credential_service(db: Session) -> CredentialService:
    """Factory function for CredentialService"""
    return CredentialService(db)
