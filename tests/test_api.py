import pytest
from fastapi.testclient import TestClient

from securenotes.domain import ACTION_ATTACHMENT_OPEN, ACTION_NOTE_VIEW, NotFoundOrForbidden
from securenotes.main import create_app
from securenotes.viewer import NO_FILES_MESSAGE

PASSWORD = "Secret123!"


@pytest.fixture
def app(settings):
    return create_app(settings)


@pytest.fixture
def client(app):
    with TestClient(app) as client:
        yield client


def auth_header(token):
    return {"Authorization": f"Bearer {token}"}


def login(client, email):
    response = client.post("/login", json={"email": email, "password": PASSWORD})
    assert response.status_code == 200
    return response.json()["token"]


@pytest.fixture
def admin_token(app, client):
    assert client.post("/register", json={"email": "admin@example.edu", "password": PASSWORD,
                                          "name": "Admin"}).status_code == 200
    app.state.portal.store.promote_by_email("admin@example.edu")
    return login(client, "admin@example.edu")


@pytest.fixture
def student_token(client, admin_token):
    response = client.post("/register", json={"email": "student@example.edu", "password": PASSWORD})
    assert response.status_code == 200
    user_id = response.json()["user_id"]
    token = login(client, "student@example.edu")
    assert client.get("/notes", headers=auth_header(token)).status_code == 403
    response = client.patch(f"/admin/profiles/{user_id}", json={"status": "active"},
                            headers=auth_header(admin_token))
    assert response.status_code == 200
    assert response.json()["profile"]["status"] == "active"
    return token


@pytest.fixture
def note_id(client, admin_token):
    response = client.post("/admin/notes", json={"title": "Week 1", "subject": "Physics", "semester": "Fall"},
                           headers=auth_header(admin_token))
    assert response.status_code == 200
    return response.json()["note"]["id"]


def upload(client, token, note_id, name="Lecture 1.pdf", data=b"%PDF-1.4 lecture", mime="application/pdf"):
    return client.post(f"/admin/notes/{note_id}/attachments", files={"file": (name, data, mime)},
                       headers=auth_header(token))


def test_root_and_health(client):
    assert client.get("/").json()["message"] == "SecureNotes API is running"
    health = client.get("/health").json()
    assert health["status"] == "healthy"
    assert health["backend"] == "local"
    assert health["counts"]["notes"] == 0


def test_password_strength_endpoint(client):
    assert client.get("/password/strength", params={"password": "abc"}).json() == {
        "score": 0, "label": "Very weak", "is_strong_enough": False,
    }
    assert client.get("/password/strength", params={"password": "Abcdefg1"}).json()["is_strong_enough"]


def test_register_rejects_weak_password_and_bad_email(client):
    assert client.post("/register", json={"email": "a@example.edu", "password": "weak"}).status_code == 400
    assert client.post("/register", json={"email": "not-an-email", "password": PASSWORD}).status_code == 422


def test_login_failures(client):
    assert client.post("/login", json={"email": "nobody@example.edu", "password": PASSWORD}).status_code == 401
    assert client.get("/me", headers=auth_header("sess_bogus")).status_code == 401
    assert client.get("/me").status_code == 401


def test_logout(client, admin_token):
    assert client.get("/me", headers=auth_header(admin_token)).json()["profile"]["role"] == "admin"
    assert client.post("/logout", headers=auth_header(admin_token)).json()["success"]
    assert client.get("/me", headers=auth_header(admin_token)).status_code == 401


def test_otp_endpoints_validate_phone(client):
    assert client.post("/otp/send", json={"phone": "12"}).status_code == 400
    assert client.post("/otp/verify", json={"phone": "+15551234567", "code": "123456"}).status_code == 401


def test_oauth_unavailable_locally(client):
    response = client.get("/oauth/google", params={"redirect_to": "http://localhost/callback"})
    assert response.status_code == 400


def test_note_listing(client, admin_token, student_token, note_id):
    response = client.get("/notes", headers=auth_header(student_token))
    assert response.status_code == 200
    body = response.json()
    assert [n["id"] for n in body["notes"]] == [note_id]
    assert body["page"] == 0
    assert not body["has_more"]
    assert client.get("/notes", params={"q": "chemistry"}, headers=auth_header(student_token)).json()["count"] == 0
    assert client.get("/notes").status_code == 403


def test_view_note_signs_attachments(app, client, admin_token, student_token, note_id):
    assert upload(client, admin_token, note_id).status_code == 200
    assert upload(client, admin_token, note_id, "diagram.png", b"\x89PNG", "image/png").status_code == 200

    response = client.get(f"/notes/{note_id}", headers=auth_header(student_token))
    assert response.status_code == 200
    body = response.json()
    assert [a["name"] for a in body["attachments"]] == ["Lecture 1.pdf", "diagram.png"]
    assert all("path" not in a for a in body["attachments"])
    assert not body["partial"]
    assert body["warning"] is None
    assert body["watermark"]["label"] == "student@example.edu"
    assert body["watermark"]["style"]["pointer-events"] == "none"

    url = body["attachments"][0]["url"]
    assert url.startswith(f"http://testserver/files/notes/{note_id}/")
    download = client.get(url)
    assert download.status_code == 200
    assert download.content == b"%PDF-1.4 lecture"
    assert download.headers["cache-control"] == "no-store"
    assert client.get(url.replace("token=", "token=0")).status_code == 403


def test_view_note_without_files(client, student_token, note_id):
    body = client.get(f"/notes/{note_id}", headers=auth_header(student_token)).json()
    assert body["attachments"] == []
    assert body["warning"] == NO_FILES_MESSAGE


def test_missing_and_forbidden_notes_look_the_same(client, student_token, note_id):
    missing = client.get("/notes/note_missing", headers=auth_header(student_token))
    anonymous = client.get(f"/notes/{note_id}")
    assert missing.status_code == anonymous.status_code == 404
    assert missing.json() == anonymous.json() == {"detail": NotFoundOrForbidden.message}


def test_open_attachment_reuses_or_signs(client, admin_token, student_token, note_id):
    attachment_id = upload(client, admin_token, note_id).json()["attachment"]["id"]
    view = client.get(f"/notes/{note_id}", headers=auth_header(student_token)).json()
    held = view["attachments"][0]
    path = f"/notes/{note_id}/attachments/{attachment_id}/open"

    response = client.post(path, json={"url": held["url"], "signed_at": held["signed_at"]},
                           headers=auth_header(student_token))
    assert response.status_code == 200
    assert response.json()["url"] == held["url"]

    fresh = client.post(path, headers=auth_header(student_token))
    assert fresh.status_code == 200
    assert client.get(fresh.json()["url"]).content == b"%PDF-1.4 lecture"

    assert client.post(f"/notes/other/attachments/{attachment_id}/open",
                       headers=auth_header(student_token)).status_code == 404


@pytest.mark.parametrize("held", [
    {"url": "javascript:alert(1)", "signed_at": 9e18},
    {"url": "https://evil.test/steal", "signed_at": 0},
])
def test_open_attachment_ignores_urls_it_did_not_issue(client, admin_token, student_token, note_id, held):
    attachment_id = upload(client, admin_token, note_id).json()["attachment"]["id"]
    response = client.post(f"/notes/{note_id}/attachments/{attachment_id}/open", json=held,
                           headers=auth_header(student_token))
    assert response.status_code == 200
    url = response.json()["url"]
    assert url != held["url"]
    assert url.startswith(f"http://testserver/files/notes/{note_id}/")
    assert client.get(url).content == b"%PDF-1.4 lecture"


def test_upload_path_collision_is_a_conflict(client, admin_token, note_id, monkeypatch):
    monkeypatch.setattr("securenotes.portal.now_millis", lambda: 1700000000000)
    for _ in range(5):
        assert upload(client, admin_token, note_id).status_code == 200
    assert upload(client, admin_token, note_id).status_code == 409


def test_views_and_opens_are_logged(app, client, admin_token, student_token, note_id):
    attachment_id = upload(client, admin_token, note_id).json()["attachment"]["id"]
    client.get(f"/notes/{note_id}", headers=auth_header(student_token))
    client.post(f"/notes/{note_id}/attachments/{attachment_id}/open", headers=auth_header(student_token))
    client.portal.call(app.state.orchestrator.activity.drain)

    response = client.get("/admin/activity", params={"note_id": note_id}, headers=auth_header(admin_token))
    assert response.status_code == 200
    actions = sorted(e["action"] for e in response.json()["entries"])
    assert actions == sorted([ACTION_NOTE_VIEW, ACTION_ATTACHMENT_OPEN])


def test_watermark_image(client, student_token):
    response = client.get("/watermark.svg", headers=auth_header(student_token))
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("image/svg+xml")
    assert "student@example.edu" in response.text
    assert client.get("/watermark.svg").status_code == 401


def test_admin_routes_require_admin(client, student_token, note_id):
    headers = auth_header(student_token)
    assert client.get("/admin/profiles", headers=headers).status_code == 403
    assert client.post("/admin/notes", json={"title": "x"}, headers=headers).status_code == 403
    assert client.delete(f"/admin/notes/{note_id}", headers=headers).status_code == 403
    assert client.get("/admin/activity", headers=headers).status_code == 403
    assert upload(client, student_token, note_id).status_code == 403


def test_admin_note_lifecycle(client, admin_token, note_id):
    headers = auth_header(admin_token)
    assert client.post("/admin/notes", json={"title": "  "}, headers=headers).status_code == 400

    response = client.put(f"/admin/notes/{note_id}", json={"title": "Week 1 (revised)"}, headers=headers)
    assert response.status_code == 200
    assert response.json()["note"]["title"] == "Week 1 (revised)"

    attachment_id = upload(client, admin_token, note_id).json()["attachment"]["id"]
    assert client.delete(f"/admin/attachments/{attachment_id}", headers=headers).status_code == 200
    assert client.delete(f"/admin/attachments/{attachment_id}", headers=headers).status_code == 404

    assert upload(client, admin_token, "note_missing").status_code == 404
    assert client.delete(f"/admin/notes/{note_id}", headers=headers).status_code == 200
    assert client.delete(f"/admin/notes/{note_id}", headers=headers).status_code == 404


def test_admin_lists_pending_profiles(client, admin_token):
    client.post("/register", json={"email": "waiting@example.edu", "password": PASSWORD})
    response = client.get("/admin/profiles", params={"status": "pending"}, headers=auth_header(admin_token))
    assert response.status_code == 200
    assert [p["email"] for p in response.json()["profiles"]] == ["waiting@example.edu"]
