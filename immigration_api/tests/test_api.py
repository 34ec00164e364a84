"""
API Contract Tests
==================

End-to-end requests through the FastAPI app: response envelope, cookies,
error mapping and role checks on the /api/v1 routes.
"""

import os
import re
from pathlib import Path

import pytest

# Add parent to path for imports
import sys
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from fastapi.testclient import TestClient

API = "/api/v1"
PASSWORD = "Secret123"


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def sqlalchemy_db(tmp_path):
    """Configure a fresh SQLAlchemy SQLite DB for tests."""
    from immigration_api.db.session import reset_engine, init_db

    old_db_url = os.environ.get("DATABASE_URL")
    db_path = tmp_path / "api.db"
    os.environ["DATABASE_URL"] = f"sqlite:///{db_path}"
    reset_engine()
    init_db()

    yield

    if old_db_url is not None:
        os.environ["DATABASE_URL"] = old_db_url
    else:
        os.environ.pop("DATABASE_URL", None)
    reset_engine()


@pytest.fixture
def client(sqlalchemy_db):
    from immigration_api.api import app

    return TestClient(app)


def _seed_user(name, email, role):
    from immigration_api.auth import get_password_hash
    from immigration_api.db.models import User
    from immigration_api.db.session import get_db_session

    with get_db_session() as db:
        user = User(name=name, email=email, password_hash=get_password_hash(PASSWORD), role=role)
        db.add(user)
        db.flush()
        return user.id


def _login(client, email):
    response = client.post(f"{API}/auth/login", json={"email": email, "password": PASSWORD})
    assert response.status_code == 200, response.text
    return {"Authorization": f"Bearer {response.json()['token']}"}


@pytest.fixture
def staff(client):
    from immigration_api.db.models import Role

    ids = {
        "admin": _seed_user("Ada Admin", "admin@firm.example.com", Role.ADMIN),
        "attorney": _seed_user("Alex Attorney", "attorney@firm.example.com", Role.ATTORNEY),
        "paralegal": _seed_user("Pat Paralegal", "paralegal@firm.example.com", Role.PARALEGAL),
    }
    headers = {role: _login(client, f"{role}@firm.example.com") for role in ids}
    client.cookies.clear()
    return ids, headers


def _register_client(client, email="maria@example.com"):
    response = client.post(f"{API}/auth/register", json={
        "name": "Maria Lopez",
        "email": email,
        "password": PASSWORD,
        "password_confirm": PASSWORD,
    })
    assert response.status_code == 201, response.text
    body = response.json()
    client.cookies.clear()
    return body["data"]["user"]["id"], {"Authorization": f"Bearer {body['token']}"}


# =============================================================================
# Health and envelope
# =============================================================================

def test_health(client):
    for path in ("/health", "/api/health"):
        response = client.get(path)
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["database"] == "ok"


def test_security_headers(client):
    response = client.get("/health")
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert response.headers["X-Frame-Options"] == "DENY"


def test_unknown_route_uses_envelope(client):
    response = client.get(f"{API}/nothing-here")
    assert response.status_code == 404
    assert response.json()["status"] == "fail"


def test_requires_login(client):
    response = client.get(f"{API}/cases")
    assert response.status_code == 401
    assert response.json() == {
        "status": "fail",
        "message": "You are not logged in! Please log in to get access.",
    }


def test_invalid_token_is_401(client):
    response = client.get(f"{API}/auth/me", headers={"Authorization": "Bearer nonsense"})
    assert response.status_code == 401
    assert response.json()["status"] == "fail"


# =============================================================================
# Auth routes
# =============================================================================

def test_register_ignores_requested_role_and_sets_cookie(client):
    response = client.post(f"{API}/auth/register", json={
        "name": "Maria Lopez",
        "email": "maria@example.com",
        "password": PASSWORD,
        "password_confirm": PASSWORD,
        "role": "admin",
    })

    assert response.status_code == 201
    body = response.json()
    assert body["status"] == "success"
    assert body["token"]
    assert body["data"]["user"]["role"] == "client"
    assert "password_hash" not in body["data"]["user"]
    assert "jwt" in response.cookies

    # Browser clients authenticate with the cookie alone
    me = client.get(f"{API}/auth/me")
    assert me.status_code == 200
    assert me.json()["data"]["user"]["email"] == "maria@example.com"


def test_register_validation_errors(client):
    weak = client.post(f"{API}/auth/register", json={
        "name": "Maria", "email": "maria@example.com", "password": "weak",
    })
    assert weak.status_code == 400
    assert weak.json()["status"] == "fail"
    assert weak.json()["errors"]

    mismatch = client.post(f"{API}/auth/register", json={
        "name": "Maria", "email": "maria@example.com",
        "password": PASSWORD, "password_confirm": "Secret124",
    })
    assert mismatch.status_code == 400


def test_duplicate_registration_is_409(client):
    _register_client(client)
    response = client.post(f"{API}/auth/register", json={
        "name": "Maria Again", "email": "MARIA@example.com", "password": PASSWORD,
    })
    assert response.status_code == 409
    assert response.json()["status"] == "fail"


def test_login_failure(client, staff):
    response = client.post(f"{API}/auth/login", json={"email": "attorney@firm.example.com", "password": "Wrong1234"})
    assert response.status_code == 401
    assert response.json()["message"] == "Incorrect email or password"


def test_logout_clears_cookie(client):
    client.post(f"{API}/auth/register", json={
        "name": "Maria", "email": "maria@example.com", "password": PASSWORD,
    })
    assert client.get(f"{API}/auth/me").status_code == 200

    response = client.post(f"{API}/auth/logout")
    assert response.status_code == 200
    assert client.get(f"{API}/auth/me").status_code == 401


def test_register_staff_is_admin_only(client, staff):
    _, headers = staff
    payload = {"name": "New Para", "email": "new@firm.example.com", "password": PASSWORD, "role": "attorney"}

    denied = client.post(f"{API}/auth/register-staff", json=payload, headers=headers["attorney"])
    assert denied.status_code == 403

    created = client.post(f"{API}/auth/register-staff", json=payload, headers=headers["admin"])
    assert created.status_code == 201
    assert created.json()["data"]["user"]["role"] == "attorney"


def test_updateme_rejects_password(client):
    _, headers = _register_client(client)
    response = client.patch(f"{API}/auth/updateme", json={"password": "Secret999"}, headers=headers)
    assert response.status_code == 400

    response = client.patch(f"{API}/auth/updateme", json={"name": "Maria L."}, headers=headers)
    assert response.status_code == 200
    assert response.json()["data"]["user"]["name"] == "Maria L."


def test_forgot_and_reset_password(client, monkeypatch):
    sent = []

    def fake_send(to_email, reset_token, user_name):
        sent.append(reset_token)
        return True

    monkeypatch.setattr("immigration_api.auth.send_password_reset_email", fake_send)
    _register_client(client)

    unknown = client.post(f"{API}/auth/forgotpassword", json={"email": "ghost@example.com"})
    assert unknown.status_code == 404

    response = client.post(f"{API}/auth/forgotpassword", json={"email": "maria@example.com"})
    assert response.status_code == 200
    assert response.json() == {"status": "success", "message": "Token sent to email!"}
    assert len(sent) == 1

    reset = client.patch(f"{API}/auth/resetpassword/{sent[0]}", json={
        "password": "NewSecret456", "password_confirm": "NewSecret456",
    })
    assert reset.status_code == 200
    assert reset.json()["token"]

    again = client.patch(f"{API}/auth/resetpassword/{sent[0]}", json={"password": "NewSecret789"})
    assert again.status_code == 400
    assert again.json()["message"] == "Token is invalid or has expired"

    login = client.post(f"{API}/auth/login", json={"email": "maria@example.com", "password": "NewSecret456"})
    assert login.status_code == 200


def test_update_password_issues_new_token(client):
    _, headers = _register_client(client)
    response = client.patch(f"{API}/auth/updatepassword", headers=headers, json={
        "current_password": PASSWORD, "password": "NewSecret456", "password_confirm": "NewSecret456",
    })
    assert response.status_code == 200
    new_headers = {"Authorization": f"Bearer {response.json()['token']}"}
    assert client.get(f"{API}/auth/me", headers=new_headers).status_code == 200


# =============================================================================
# User management
# =============================================================================

def test_user_management_routes(client, staff):
    ids, headers = staff
    client_id, _ = _register_client(client)

    assert client.get(f"{API}/users", headers=headers["attorney"]).status_code == 403

    listing = client.get(f"{API}/users", params={"role": "client"}, headers=headers["admin"])
    assert listing.status_code == 200
    assert [u["id"] for u in listing.json()["data"]["users"]] == [client_id]

    promoted = client.patch(f"{API}/users/{client_id}/role", json={"role": "paralegal"}, headers=headers["admin"])
    assert promoted.json()["data"]["user"]["role"] == "paralegal"

    deactivated = client.patch(f"{API}/users/{ids['paralegal']}/deactivate", headers=headers["admin"])
    assert deactivated.json()["data"]["user"]["is_active"] is False
    assert client.get(f"{API}/auth/me", headers=headers["paralegal"]).status_code == 401


# =============================================================================
# Case routes
# =============================================================================

def _create_case(client, headers, **fields):
    payload = {"title": "H-1B petition", "case_type": "visa"}
    payload.update(fields)
    response = client.post(f"{API}/cases", json=payload, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()["data"]["case"]


def test_attorney_creates_visa_case(client, staff):
    ids, headers = staff
    case = _create_case(client, headers["attorney"], applicant={"first_name": "Maria", "last_name": "Lopez"})

    assert re.match(r"^\d{4}-\d{4}$", case["case_number"])
    assert case["status"] == "draft"
    assert case["case_type"] == "visa"
    assert case["created_by"]["id"] == ids["attorney"]
    assert case["assigned_to"]["id"] == ids["attorney"]
    assert case["applicant"]["first_name"] == "Maria"
    assert case["history"] == []


def test_case_create_validation(client, staff):
    _, headers = staff
    missing_title = client.post(f"{API}/cases", json={"case_type": "visa"}, headers=headers["attorney"])
    assert missing_title.status_code == 400

    bad_type = client.post(f"{API}/cases", json={"title": "X", "case_type": "spaceship"}, headers=headers["attorney"])
    assert bad_type.status_code == 400

    extra = client.post(f"{API}/cases", json={"title": "X", "created_by_id": "forged"}, headers=headers["attorney"])
    assert extra.status_code == 400

    paralegal = client.post(f"{API}/cases", json={"title": "X"}, headers=headers["paralegal"])
    assert paralegal.status_code == 403


def test_client_cannot_read_another_applicants_case(client, staff):
    _, headers = staff
    maria_id, maria = _register_client(client, "maria@example.com")
    _, other = _register_client(client, "jose@example.com")

    case = _create_case(client, headers["attorney"], applicant_user_id=maria_id)

    assert client.get(f"{API}/cases/{case['id']}", headers=maria).status_code == 200
    denied = client.get(f"{API}/cases/{case['id']}", headers=other)
    assert denied.status_code == 403
    assert denied.json()["status"] == "fail"

    mine = client.get(f"{API}/cases/client/{maria_id}", headers=maria)
    assert [c["id"] for c in mine.json()["data"]["cases"]] == [case["id"]]
    assert client.get(f"{API}/cases/client/{maria_id}", headers=other).status_code == 403


def test_list_cases_pagination_and_fields(client, staff):
    _, headers = staff
    for i in range(12):
        _create_case(client, headers["attorney"], title=f"Case {i:02d}")

    page = client.get(f"{API}/cases", params={"sort": "title", "fields": "title,status"}, headers=headers["attorney"])
    assert page.status_code == 200
    body = page.json()
    assert body["results"] == 10
    assert body["total"] == 12
    assert set(body["data"]["cases"][0]) == {"id", "title", "status"}
    assert body["data"]["cases"][0]["title"] == "Case 00"

    second = client.get(f"{API}/cases", params={"page": 2}, headers=headers["attorney"])
    assert second.json()["results"] == 2

    beyond = client.get(f"{API}/cases", params={"page": 3}, headers=headers["attorney"])
    assert beyond.status_code == 404
    assert beyond.json()["message"] == "This page does not exist"

    bad_filter = client.get(f"{API}/cases", params={"password_hash": "x"}, headers=headers["attorney"])
    assert bad_filter.status_code == 400


def test_update_status_and_timeline(client, staff):
    ids, headers = staff
    case = _create_case(client, headers["attorney"])
    url = f"{API}/cases/{case['id']}"

    updated = client.patch(url, json={"status": "submitted"}, headers=headers["attorney"])
    assert updated.status_code == 200
    assert updated.json()["data"]["case"]["submitted_at"] is not None

    illegal = client.patch(f"{url}/status", json={"status": "draft"}, headers=headers["attorney"])
    assert illegal.status_code == 400

    moved = client.patch(f"{url}/status", json={"status": "in_review"}, headers=headers["attorney"])
    assert moved.json()["data"]["case"]["status"] == "in_review"

    timeline = client.get(f"{url}/timeline", headers=headers["attorney"]).json()
    assert [h["status"] for h in timeline["data"]["history"]] == ["draft", "submitted"]
    assert timeline["data"]["history"][0]["updated_by_id"] == ids["attorney"]


def test_assign_priority_documents_and_notes(client, staff, monkeypatch):
    ids, headers = staff
    monkeypatch.setattr("immigration_api.cases.send_case_assignment_email", lambda **kwargs: True)
    case = _create_case(client, headers["attorney"])
    url = f"{API}/cases/{case['id']}"

    assigned = client.patch(f"{url}/assign", json={"user_id": ids["paralegal"]}, headers=headers["admin"])
    assert assigned.json()["data"]["case"]["assigned_to"]["id"] == ids["paralegal"]

    priority = client.patch(f"{url}/priority", json={"priority": "urgent"}, headers=headers["attorney"])
    assert priority.json()["data"]["case"]["priority"] == "urgent"

    document = client.post(f"{url}/documents", headers=headers["paralegal"], json={
        "name": "I-129", "file_url": "https://files.example.com/i129.pdf", "is_required": True,
    })
    assert document.status_code == 201
    doc_id = document.json()["data"]["document"]["id"]

    reviewed = client.patch(f"{url}/documents/{doc_id}", json={"status": "approved"}, headers=headers["paralegal"])
    assert reviewed.json()["data"]["document"]["status"] == "approved"
    assert client.get(f"{url}/documents", headers=headers["paralegal"]).json()["results"] == 1

    note = client.post(f"{url}/notes", json={"content": "Filed with USCIS", "is_private": True}, headers=headers["paralegal"])
    assert note.status_code == 201
    assert client.get(f"{url}/notes", headers=headers["attorney"]).json()["results"] == 1


def test_private_notes_hidden_from_client(client, staff):
    _, headers = staff
    maria_id, maria = _register_client(client)
    case = _create_case(client, headers["attorney"], applicant_user_id=maria_id)
    url = f"{API}/cases/{case['id']}"
    client.post(f"{url}/notes", json={"content": "Internal only", "is_private": True}, headers=headers["attorney"])
    client.post(f"{url}/notes", json={"content": "Shared update"}, headers=headers["attorney"])

    staff_view = client.get(url, headers=headers["attorney"]).json()["data"]["case"]
    client_view = client.get(url, headers=maria).json()["data"]["case"]
    assert len(staff_view["notes"]) == 2
    assert [n["content"] for n in client_view["notes"]] == ["Shared update"]


def test_search_due_and_stats_routes(client, staff):
    _, headers = staff
    _create_case(client, headers["attorney"], title="Asylum claim", due_date="2999-01-01T00:00:00Z")

    found = client.get(f"{API}/cases/search", params={"keyword": "asylum"}, headers=headers["attorney"])
    assert found.json()["results"] == 1
    assert client.get(f"{API}/cases/search", headers=headers["attorney"]).status_code == 400

    due = client.get(f"{API}/cases/due", params={"days": 30}, headers=headers["attorney"])
    assert due.status_code == 200
    assert due.json()["results"] == 0

    stats = client.get(f"{API}/cases/stats", headers=headers["attorney"]).json()
    assert stats["data"]["stats"][0]["status"] == "draft"
    assert stats["data"]["stats"][0]["count"] == 1
    assert client.get(f"{API}/cases/stats", headers=headers["paralegal"]).status_code == 403


def test_due_window_out_of_range_is_rejected(client):
    _, headers = _register_client(client)

    for days in (-1, 5000000):
        response = client.get(f"{API}/cases/due", params={"days": days}, headers=headers)
        assert response.status_code == 400, response.text
        assert response.json()["status"] == "fail"


def test_delete_case(client, staff):
    _, headers = staff
    case = _create_case(client, headers["attorney"])
    url = f"{API}/cases/{case['id']}"

    assert client.delete(url, headers=headers["attorney"]).status_code == 403
    assert client.delete(url, headers=headers["admin"]).status_code == 204
    missing = client.get(url, headers=headers["admin"])
    assert missing.status_code == 404
    assert missing.json()["message"] == "No case found with that ID"
