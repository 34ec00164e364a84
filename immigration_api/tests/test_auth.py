"""
Credential Service Tests
========================

Registration, login, token verification and the password reset flow.
"""

import hashlib
import os
from datetime import timedelta
from pathlib import Path

import pytest

# Add parent to path for imports
import sys
sys.path.insert(0, str(Path(__file__).parent.parent.parent))


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def sqlalchemy_db(tmp_path):
    """Configure a fresh SQLAlchemy SQLite DB for tests."""
    from immigration_api.db.session import reset_engine, init_db

    old_db_url = os.environ.get("DATABASE_URL")
    db_path = tmp_path / "auth.db"
    os.environ["DATABASE_URL"] = f"sqlite:///{db_path}"
    reset_engine()
    init_db()

    yield

    if old_db_url is not None:
        os.environ["DATABASE_URL"] = old_db_url
    else:
        os.environ.pop("DATABASE_URL", None)
    reset_engine()


class RecordingNotifier:
    """Stand-in for the reset email sender"""

    def __init__(self, result=True):
        self.result = result
        self.calls = []

    def __call__(self, **kwargs):
        self.calls.append(kwargs)
        return self.result


def _admin_context(db):
    from immigration_api.access import AuthContext
    from immigration_api.db.models import Role, User

    admin = User(name="Root", email="root@firm.example.com", password_hash="x", role=Role.ADMIN)
    db.add(admin)
    db.commit()
    return AuthContext(user_id=admin.id, role=Role.ADMIN, email=admin.email)


# =============================================================================
# Password hashing
# =============================================================================

def test_password_hash_roundtrip():
    from immigration_api.auth import get_password_hash, verify_password

    hashed = get_password_hash("Secret123")
    assert hashed != "Secret123"
    assert verify_password("Secret123", hashed)
    assert not verify_password("Secret124", hashed)


def test_password_over_bcrypt_limit_is_rejected():
    from immigration_api.auth import get_password_hash, verify_password
    from immigration_api.errors import ValidationError

    too_long = "A1" + "x" * 80
    with pytest.raises(ValidationError):
        get_password_hash(too_long)
    assert verify_password(too_long, get_password_hash("Secret123")) is False


def test_password_strength_rules():
    from immigration_api.schemas import check_password_strength

    assert check_password_strength("Secret123") == "Secret123"
    for weak in ("Sh0rt", "nouppercase1", "NoDigitsHere"):
        with pytest.raises(ValueError):
            check_password_strength(weak)


# =============================================================================
# Registration
# =============================================================================

def test_register_always_creates_client(sqlalchemy_db):
    from immigration_api.auth import CredentialService
    from immigration_api.db.models import Role
    from immigration_api.db.session import get_db_session

    with get_db_session() as db:
        user = CredentialService(db).register(
            "Maria Lopez", "  Maria@Example.com ", "Secret123", requested_role="admin",
        )
        assert user.role == Role.CLIENT
        assert user.email == "maria@example.com"
        assert user.password_hash != "Secret123"


def test_register_duplicate_email_conflicts(sqlalchemy_db):
    from immigration_api.auth import CredentialService
    from immigration_api.db.session import get_db_session
    from immigration_api.errors import ConflictError

    with get_db_session() as db:
        service = CredentialService(db)
        service.register("Maria", "maria@example.com", "Secret123")
        with pytest.raises(ConflictError) as exc_info:
            service.register("Other Maria", "MARIA@example.com", "Secret123")
        assert exc_info.value.status_code == 409


def test_register_staff_role_fallback(sqlalchemy_db):
    from immigration_api.auth import CredentialService
    from immigration_api.db.models import Role
    from immigration_api.db.session import get_db_session

    with get_db_session() as db:
        service = CredentialService(db)
        admin = _admin_context(db)

        attorney = service.register_staff(admin, "Ann", "ann@firm.example.com", "Secret123", requested_role="attorney")
        fallback = service.register_staff(admin, "Pat", "pat@firm.example.com", "Secret123", requested_role="client")
        unspecified = service.register_staff(admin, "Sam", "sam@firm.example.com", "Secret123")

        assert attorney.role == Role.ATTORNEY
        assert fallback.role == Role.PARALEGAL
        assert unspecified.role == Role.PARALEGAL


def test_register_staff_requires_admin(sqlalchemy_db):
    from immigration_api.access import AuthContext
    from immigration_api.auth import CredentialService
    from immigration_api.db.models import Role
    from immigration_api.db.session import get_db_session
    from immigration_api.errors import AuthorizationError

    with get_db_session() as db:
        attorney = AuthContext(user_id="someone", role=Role.ATTORNEY)
        with pytest.raises(AuthorizationError):
            CredentialService(db).register_staff(attorney, "Pat", "pat@firm.example.com", "Secret123")


# =============================================================================
# Login and tokens
# =============================================================================

def test_authenticate_issues_verifiable_token(sqlalchemy_db):
    from immigration_api.auth import CredentialService, decode_token
    from immigration_api.db.models import Role
    from immigration_api.db.session import get_db_session

    with get_db_session() as db:
        service = CredentialService(db)
        user = service.register("Maria", "maria@example.com", "Secret123")

        session = service.authenticate("MARIA@example.com", "Secret123")
        payload = decode_token(session.token)

        assert payload["sub"] == user.id
        assert payload["role"] == "client"
        assert payload["type"] == "access"
        assert isinstance(payload["iat"], int)
        assert session.user.last_login is not None

        auth = service.verify(session.token)
        assert auth.user_id == user.id
        assert auth.role == Role.CLIENT


def test_authenticate_rejects_bad_credentials(sqlalchemy_db):
    from immigration_api.auth import CredentialService
    from immigration_api.db.session import get_db_session
    from immigration_api.errors import AuthenticationError

    with get_db_session() as db:
        service = CredentialService(db)
        service.register("Maria", "maria@example.com", "Secret123")

        with pytest.raises(AuthenticationError) as exc_info:
            service.authenticate("maria@example.com", "Wrong1234")
        assert exc_info.value.message == "Incorrect email or password"

        with pytest.raises(AuthenticationError):
            service.authenticate("nobody@example.com", "Secret123")


def test_verify_rejects_garbage_and_inactive_users(sqlalchemy_db):
    from immigration_api.auth import CredentialService
    from immigration_api.db.session import get_db_session
    from immigration_api.errors import AuthenticationError

    with get_db_session() as db:
        service = CredentialService(db)
        user = service.register("Maria", "maria@example.com", "Secret123")
        token = service.issue_session(user).token

        with pytest.raises(AuthenticationError):
            service.verify("not-a-jwt")

        user.is_active = False
        db.commit()
        with pytest.raises(AuthenticationError):
            service.verify(token)


def test_token_issued_before_password_change_is_rejected(sqlalchemy_db):
    from immigration_api.auth import CredentialService, create_access_token
    from immigration_api.db.models import utcnow
    from immigration_api.db.session import get_db_session
    from immigration_api.errors import AuthenticationError

    with get_db_session() as db:
        service = CredentialService(db)
        user = service.register("Maria", "maria@example.com", "Secret123")
        old_token = create_access_token(
            {"sub": user.id, "role": user.role.value},
            issued_at=utcnow() - timedelta(hours=1),
        )
        auth = service.verify(old_token)
        assert auth.user_id == user.id

        fresh = service.change_password(auth, "Secret123", "NewSecret456")

        with pytest.raises(AuthenticationError) as exc_info:
            service.verify(old_token)
        assert "recently changed password" in exc_info.value.message
        assert service.verify(fresh.token).user_id == user.id


def test_password_change_comparison_uses_whole_seconds():
    from datetime import datetime, timezone

    from immigration_api.auth import changed_password_after
    from immigration_api.db.models import User

    user = User(password_changed_at=datetime(2025, 1, 1, 12, 0, 0, 900000))
    same_second = int(datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc).timestamp())

    assert changed_password_after(user, same_second) is False
    assert changed_password_after(user, same_second - 1) is True
    assert changed_password_after(User(), same_second) is False


def test_change_password_requires_current_password(sqlalchemy_db):
    from immigration_api.auth import CredentialService
    from immigration_api.db.session import get_db_session
    from immigration_api.errors import AuthenticationError

    with get_db_session() as db:
        service = CredentialService(db)
        user = service.register("Maria", "maria@example.com", "Secret123")
        auth = service.verify(service.issue_session(user).token)

        with pytest.raises(AuthenticationError) as exc_info:
            service.change_password(auth, "Wrong1234", "NewSecret456")
        assert exc_info.value.message == "Your current password is wrong."


# =============================================================================
# Password reset
# =============================================================================

def test_reset_unknown_email_is_not_found(sqlalchemy_db):
    from immigration_api.auth import CredentialService
    from immigration_api.db.session import get_db_session
    from immigration_api.errors import NotFoundError

    notifier = RecordingNotifier()
    with get_db_session() as db:
        with pytest.raises(NotFoundError):
            CredentialService(db, notifier=notifier).request_reset("ghost@example.com")
    assert notifier.calls == []


def test_reset_stores_only_token_digest(sqlalchemy_db):
    from immigration_api.auth import CredentialService
    from immigration_api.db.models import utcnow
    from immigration_api.db.session import get_db_session

    notifier = RecordingNotifier()
    with get_db_session() as db:
        service = CredentialService(db, notifier=notifier)
        user = service.register("Maria", "maria@example.com", "Secret123")

        service.request_reset("maria@example.com")

        assert len(notifier.calls) == 1
        token = notifier.calls[0]["reset_token"]
        assert notifier.calls[0]["to_email"] == "maria@example.com"
        assert user.password_reset_token_hash == hashlib.sha256(token.encode()).hexdigest()
        assert user.password_reset_token_hash != token

        remaining = user.password_reset_expires - utcnow()
        assert timedelta(minutes=9) < remaining <= timedelta(minutes=10)


def test_reset_token_is_single_use(sqlalchemy_db):
    from immigration_api.auth import CredentialService
    from immigration_api.db.session import get_db_session
    from immigration_api.errors import InvalidOrExpiredError

    notifier = RecordingNotifier()
    with get_db_session() as db:
        service = CredentialService(db, notifier=notifier)
        user = service.register("Maria", "maria@example.com", "Secret123")
        service.request_reset("maria@example.com")
        token = notifier.calls[0]["reset_token"]

        session = service.consume_reset(token, "NewSecret456")
        assert session.user.id == user.id
        assert user.password_reset_token_hash is None
        assert user.password_changed_at is not None
        service.authenticate("maria@example.com", "NewSecret456")

        with pytest.raises(InvalidOrExpiredError):
            service.consume_reset(token, "Another789X")


def test_expired_reset_token_is_rejected(sqlalchemy_db):
    from immigration_api.auth import CredentialService
    from immigration_api.db.models import utcnow
    from immigration_api.db.session import get_db_session
    from immigration_api.errors import InvalidOrExpiredError

    notifier = RecordingNotifier()
    with get_db_session() as db:
        service = CredentialService(db, notifier=notifier)
        user = service.register("Maria", "maria@example.com", "Secret123")
        service.request_reset("maria@example.com")
        user.password_reset_expires = utcnow() - timedelta(seconds=1)
        db.commit()

        with pytest.raises(InvalidOrExpiredError):
            service.consume_reset(notifier.calls[0]["reset_token"], "NewSecret456")


def test_reset_delivery_failure_clears_token(sqlalchemy_db):
    from immigration_api.auth import CredentialService
    from immigration_api.db.session import get_db_session
    from immigration_api.errors import AppError

    with get_db_session() as db:
        service = CredentialService(db, notifier=RecordingNotifier(result=False))
        user = service.register("Maria", "maria@example.com", "Secret123")

        with pytest.raises(AppError) as exc_info:
            service.request_reset("maria@example.com")
        assert exc_info.value.status_code == 500
        assert user.password_reset_token_hash is None
        assert user.password_reset_expires is None


def test_reset_email_in_dev_mode_is_logged_not_sent():
    from immigration_api.email_utils import is_email_configured, send_password_reset_email

    assert not is_email_configured()
    assert send_password_reset_email("maria@example.com", "abc123", "Maria") is True


# =============================================================================
# Profile and user management
# =============================================================================

def test_update_profile_rejects_password_fields(sqlalchemy_db):
    from immigration_api.auth import CredentialService
    from immigration_api.db.session import get_db_session
    from immigration_api.errors import ValidationError

    with get_db_session() as db:
        service = CredentialService(db)
        user = service.register("Maria", "maria@example.com", "Secret123")
        auth = service.verify(service.issue_session(user).token)

        with pytest.raises(ValidationError):
            service.update_profile(auth, {"name": "M", "password": "Secret999"})

        updated = service.update_profile(auth, {"name": "Maria L.", "phone": "555-0100", "role": "admin"})
        assert updated.name == "Maria L."
        assert updated.phone == "555-0100"
        assert updated.role.value == "client"


def test_update_profile_email_clash(sqlalchemy_db):
    from immigration_api.auth import CredentialService
    from immigration_api.db.session import get_db_session
    from immigration_api.errors import ConflictError

    with get_db_session() as db:
        service = CredentialService(db)
        service.register("Ann", "ann@example.com", "Secret123")
        user = service.register("Maria", "maria@example.com", "Secret123")
        auth = service.verify(service.issue_session(user).token)

        with pytest.raises(ConflictError):
            service.update_profile(auth, {"email": "ANN@example.com"})


def test_admin_user_management(sqlalchemy_db):
    from immigration_api.auth import CredentialService
    from immigration_api.db.models import Role
    from immigration_api.db.session import get_db_session
    from immigration_api.errors import ValidationError

    with get_db_session() as db:
        service = CredentialService(db)
        admin = _admin_context(db)
        user = service.register("Maria", "maria@example.com", "Secret123")

        assert service.change_role(admin, user.id, Role.PARALEGAL).role == Role.PARALEGAL
        with pytest.raises(ValidationError):
            service.change_role(admin, admin.user_id, Role.CLIENT)

        service.deactivate(admin, user.id)
        active_ids = {u.id for u in service.list_users(admin)}
        all_ids = {u.id for u in service.list_users(admin, include_inactive=True)}
        assert user.id not in active_ids
        assert user.id in all_ids
        assert [u.id for u in service.list_users(admin, role=Role.ADMIN)] == [admin.user_id]

        with pytest.raises(ValidationError):
            service.deactivate(admin, admin.user_id)
