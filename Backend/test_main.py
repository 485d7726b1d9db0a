from datetime import datetime, timedelta
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
from fastapi.testclient import TestClient
from jose import jwt

from conftest import PDF_BYTES, FakeCounterStore, FakeStorage, InMemoryRepository
from db import get_supabase
from main import (
    app, get_audit, get_authorized_emails, get_rate_limiter, get_repository, get_storage,
)
from config import settings
from models import Role, Visibility
from rate_limit import RateLimiter

client = TestClient(app)


def make_token(user_id, email="user@example.com", expires=timedelta(minutes=30)):
    payload = {
        "sub": user_id,
        "email": email,
        "aud": settings.jwt_audience,
        "exp": datetime.utcnow() + expires,
    }
    return jwt.encode(payload, settings.supabase_jwt_secret, algorithm=settings.algorithm)


def auth_headers(user_id):
    return {"Authorization": f"Bearer {make_token(user_id)}"}


@pytest.fixture
def api():
    fakes = SimpleNamespace(
        repo=InMemoryRepository(),
        storage=FakeStorage(),
        audit=MagicMock(),
        counters=FakeCounterStore(),
        authorized_emails=MagicMock(),
    )
    fakes.repo.add_profile("user-a", "alice@example.com")
    fakes.repo.add_profile("user-b", "bob@example.com")
    fakes.repo.add_profile("admin-1", "admin@example.com", role=Role.ADMIN)

    app.dependency_overrides[get_supabase] = lambda: MagicMock()
    app.dependency_overrides[get_repository] = lambda: fakes.repo
    app.dependency_overrides[get_storage] = lambda: fakes.storage
    app.dependency_overrides[get_audit] = lambda: fakes.audit
    app.dependency_overrides[get_rate_limiter] = lambda: RateLimiter(fakes.counters)
    app.dependency_overrides[get_authorized_emails] = lambda: fakes.authorized_emails
    yield fakes
    app.dependency_overrides.clear()


# Authentication

def test_documents_require_authentication(api):
    response = client.get("/api/documents")
    assert response.status_code == 401


def test_expired_token_is_rejected(api):
    token = make_token("user-a", expires=timedelta(minutes=-5))
    response = client.get("/api/documents", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 401
    assert response.json()["detail"] == "Could not validate credentials"


def test_me_reports_admin_role(api):
    response = client.get("/api/me", headers=auth_headers("admin-1"))
    assert response.status_code == 200
    assert response.json()["is_admin"] is True


# Search

def test_list_documents_all(api):
    api.repo.add_document("mine.pdf", "user-a", doc_id="a1", minutes=1)
    api.repo.add_document("theirs.pdf", "user-b", Visibility.PUBLIC, doc_id="b1", minutes=2)
    api.repo.add_document("hidden.pdf", "user-b", doc_id="b2", minutes=3)

    response = client.get("/api/documents?filter=all&page=1&limit=10", headers=auth_headers("user-a"))

    assert response.status_code == 200
    data = response.json()
    assert [d["id"] for d in data["documents"]] == ["b1", "a1"]
    assert data["totalCount"] == 2
    assert data["totalPages"] == 1
    assert data["currentPage"] == 1


def test_admin_all_forbidden_for_regular_user(api):
    api.repo.add_document("hidden.pdf", "user-b")
    response = client.get("/api/documents?filter=admin_all", headers=auth_headers("user-a"))
    assert response.status_code == 403


def test_admin_all_for_admin(api):
    api.repo.add_document("hidden.pdf", "user-b")
    response = client.get("/api/documents?filter=admin_all", headers=auth_headers("admin-1"))
    assert response.json()["totalCount"] == 1


def test_invalid_paging_is_rejected(api):
    headers = auth_headers("user-a")
    assert client.get("/api/documents?page=0", headers=headers).status_code == 422
    assert client.get("/api/documents?limit=1000", headers=headers).status_code == 422


def test_search_failure_degrades_to_empty_page(api):
    headers = auth_headers("user-a")
    api.repo.fail = True
    response = client.get("/api/documents?search=x", headers=headers)
    assert response.status_code == 200
    data = response.json()
    assert data["documents"] == []
    assert data["totalCount"] == 0
    assert data["error"] == "Could not search documents"


# Upload / download / delete

def test_upload_document_success(api):
    files = {"file": ("report.pdf", PDF_BYTES, "application/pdf")}
    response = client.post(
        "/api/documents", files=files, data={"visibility": "public"}, headers=auth_headers("user-a")
    )

    assert response.status_code == 201
    data = response.json()
    assert data["name"] == "report.pdf"
    assert data["visibility"] == "public"
    assert data["file_path"] in api.storage.objects


def test_upload_document_invalid_type(api):
    files = {"file": ("virus.exe", PDF_BYTES, "application/pdf")}
    response = client.post("/api/documents", files=files, headers=auth_headers("user-a"))
    assert response.status_code == 400
    assert response.json()["detail"] == "File type not allowed for security reasons"
    assert api.storage.objects == {}


def test_download_document_success(api):
    doc = api.repo.add_document("test.pdf", "user-a")
    api.storage.objects[doc.file_path] = PDF_BYTES

    response = client.get(f"/api/documents/{doc.id}/download", headers=auth_headers("user-a"))

    assert response.status_code == 200
    assert response.headers["content-type"] == "application/pdf"
    assert response.headers["content-disposition"] == "attachment; filename=\"test.pdf\"; filename*=UTF-8''test.pdf"
    assert response.content == PDF_BYTES


def test_download_document_with_non_ascii_name(api):
    doc = api.repo.add_document("отчёт \"final\".pdf", "user-a")
    api.storage.objects[doc.file_path] = PDF_BYTES

    response = client.get(f"/api/documents/{doc.id}/download", headers=auth_headers("user-a"))

    assert response.status_code == 200
    disposition = response.headers["content-disposition"]
    assert disposition.startswith('attachment; filename="final_.pdf"')
    assert disposition.endswith("filename*=UTF-8''%D0%BE%D1%82%D1%87%D1%91%D1%82%20%22final%22.pdf")
    assert response.content == PDF_BYTES



def test_download_missing_object(api):
    doc = api.repo.add_document("test.pdf", "user-a")
    response = client.get(f"/api/documents/{doc.id}/download", headers=auth_headers("user-a"))
    assert response.status_code == 404
    assert response.json()["detail"] == "File not found in storage"


def test_download_link(api):
    doc = api.repo.add_document("test.pdf", "user-a")
    api.storage.objects[doc.file_path] = PDF_BYTES
    response = client.post(f"/api/documents/{doc.id}/link", headers=auth_headers("user-a"))
    assert response.status_code == 200
    assert response.json()["expires_in"] == 3600


def test_delete_requires_confirmation_then_deletes(api):
    doc = api.repo.add_document("test.pdf", "user-a")
    api.storage.objects[doc.file_path] = PDF_BYTES
    headers = auth_headers("user-a")

    assert client.delete(f"/api/documents/{doc.id}", headers=headers).status_code == 400
    assert client.delete(f"/api/documents/{doc.id}?confirm=true", headers=headers).status_code == 204
    assert doc.id not in api.repo.documents
    assert doc.file_path not in api.storage.objects


def test_delete_by_other_user_is_forbidden(api):
    doc = api.repo.add_document("test.pdf", "user-a", Visibility.PUBLIC)
    response = client.delete(f"/api/documents/{doc.id}?confirm=true", headers=auth_headers("user-b"))
    assert response.status_code == 403


# Sharing

def test_share_and_unshare(api):
    doc = api.repo.add_document("test.pdf", "user-a")
    headers = auth_headers("user-a")

    response = client.post(f"/api/documents/{doc.id}/shares", json={"email": "bob@example.com"}, headers=headers)
    assert response.status_code == 201
    assert [s["shared_with_user_id"] for s in response.json()] == ["user-b"]

    again = client.post(f"/api/documents/{doc.id}/shares", json={"email": "bob@example.com"}, headers=headers)
    assert again.status_code == 409

    assert client.delete(f"/api/documents/{doc.id}/shares/user-b", headers=headers).status_code == 204
    assert client.delete(f"/api/documents/{doc.id}/shares/user-b", headers=headers).status_code == 204
    assert client.get(f"/api/documents/{doc.id}/shares", headers=headers).json() == []


# Validation functions

def test_validate_upload_requires_auth(api):
    response = client.post("/functions/validate-upload", json={
        "fileName": "a.pdf", "fileSize": 2048, "fileType": "application/pdf",
    })
    assert response.status_code == 401


def test_validate_upload_success(api):
    response = client.post("/functions/validate-upload", json={
        "fileName": "my report.pdf", "fileSize": 2 * 1024 * 1024, "fileType": "application/pdf",
    }, headers=auth_headers("user-a"))
    assert response.status_code == 200
    assert response.json() == {"valid": True, "sanitizedFileName": "my_report.pdf"}


def test_validate_upload_rejects_exe(api):
    response = client.post("/functions/validate-upload", json={
        "fileName": "virus.exe", "fileSize": 2048, "fileType": "application/pdf",
    }, headers=auth_headers("user-a"))
    assert response.status_code == 400
    assert response.json()["valid"] is False


def test_validate_upload_missing_fields(api):
    response = client.post("/functions/validate-upload", json={"fileName": "a.pdf"}, headers=auth_headers("user-a"))
    assert response.status_code == 400


def test_validate_upload_rate_limited(api):
    body = {"fileName": "a.pdf", "fileSize": 2048, "fileType": "application/pdf"}
    headers = auth_headers("user-a")
    for _ in range(10):
        assert client.post("/functions/validate-upload", json=body, headers=headers).status_code == 200
    response = client.post("/functions/validate-upload", json=body, headers=headers)
    assert response.status_code == 429


def test_auth_rate_limit_blocks_sixth_login(api):
    headers = {"X-Forwarded-For": "203.0.113.7, 10.0.0.1"}
    for _ in range(5):
        response = client.post("/functions/auth-rate-limit", json={"action": "login"}, headers=headers)
        assert response.json() == {"allowed": True}
    response = client.post("/functions/auth-rate-limit", json={"action": "login"}, headers=headers)
    assert response.status_code == 429
    assert response.json()["allowed"] is False


def test_auth_rate_limit_unknown_action(api):
    response = client.post("/functions/auth-rate-limit", json={"action": "hack"})
    assert response.status_code == 400


# Accounts

def test_signup_rejected_when_email_not_authorized(api):
    api.authorized_emails.is_authorized.return_value = False
    with patch("main.create_auth_client") as auth_client:
        response = client.post("/api/auth/signup", json={"email": "x@example.com", "password": "secret123"})
    assert response.status_code == 403
    auth_client.assert_not_called()


def test_rejected_signups_count_toward_the_rate_limit(api):
    api.authorized_emails.is_authorized.return_value = False
    codes = []
    with patch("main.create_auth_client"):
        for attempt in range(4):
            response = client.post(
                "/api/auth/signup",
                json={"email": f"guess{attempt}@example.com", "password": "secret123"},
                headers={"X-Forwarded-For": "203.0.113.9"},
            )
            codes.append(response.status_code)
    assert codes == [403, 403, 403, 429]
    assert api.authorized_emails.is_authorized.call_count == 3


def test_signup_success(api):
    api.authorized_emails.is_authorized.return_value = True
    with patch("main.create_auth_client") as auth_client:
        response = client.post("/api/auth/signup", json={
            "email": "new@example.com", "password": "secret123", "full_name": "New User",
        })
    assert response.status_code == 201
    sign_up_args = auth_client.return_value.auth.sign_up.call_args.args[0]
    assert sign_up_args["email"] == "new@example.com"
    assert sign_up_args["options"]["data"] == {"full_name": "New User"}


def test_login_success(api):
    with patch("main.create_auth_client") as auth_client:
        auth_client.return_value.auth.sign_in_with_password.return_value.session = MagicMock(
            access_token="access", refresh_token="refresh", expires_in=3600
        )
        response = client.post("/api/auth/login", data={"username": "alice@example.com", "password": "pw"})
    assert response.status_code == 200
    assert response.json()["access_token"] == "access"
    assert response.json()["token_type"] == "bearer"


def test_login_invalid_credentials(api):
    with patch("main.create_auth_client") as auth_client:
        auth_client.return_value.auth.sign_in_with_password.side_effect = Exception("Invalid login credentials")
        response = client.post("/api/auth/login", data={"username": "alice@example.com", "password": "wrong"})
    assert response.status_code == 401


def test_reset_password_does_not_reveal_unknown_emails(api):
    with patch("main.create_auth_client") as auth_client:
        auth_client.return_value.auth.reset_password_for_email.side_effect = Exception("User not found")
        response = client.post("/api/auth/reset-password", json={"email": "ghost@example.com"})
    assert response.status_code == 200
    assert "If the email is registered" in response.json()["message"]


# Administration

def test_authorized_emails_admin_only(api):
    response = client.get("/api/admin/authorized-emails", headers=auth_headers("user-a"))
    assert response.status_code == 403


def test_add_authorized_email(api):
    api.authorized_emails.add.return_value = {"id": "e1", "email": "new@example.com", "added_by": "admin-1"}
    response = client.post(
        "/api/admin/authorized-emails", json={"email": "New@Example.com"}, headers=auth_headers("admin-1")
    )
    assert response.status_code == 201
    api.authorized_emails.add.assert_called_once_with("New@Example.com", "admin-1")


# Startup

def test_startup_fails_when_supabase_is_unreachable():
    broken = MagicMock()
    broken.table.side_effect = RuntimeError("connection refused")
    with patch("main.get_supabase", return_value=broken):
        with pytest.raises(RuntimeError):
            with TestClient(app):
                pass
