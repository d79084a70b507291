from __future__ import annotations

USER_PASSWORD = "secret-pass"


def test_login_logout_me(client):
    assert client.get("/api/auth/me").status_code == 401

    resp = client.post("/api/auth/login", json={"email": "ADMIN@localhost ", "password": "admin123456"})
    assert resp.status_code == 200
    assert resp.get_json()["user"]["role"] == "admin"

    me = client.get("/api/auth/me").get_json()
    assert me["email"] == "admin@localhost"

    client.post("/api/auth/logout")
    assert client.get("/api/auth/me").status_code == 401


def test_login_errors(client, create_user):
    create_user(email="off@example.com", active=False)

    assert client.post("/api/auth/login", json={"email": ""}).get_json()["error"] == "missing_credentials"
    resp = client.post("/api/auth/login", json={"email": "admin@localhost", "password": "wrong"})
    assert resp.status_code == 401
    assert resp.get_json()["error"] == "invalid_credentials"
    resp = client.post("/api/auth/login", json={"email": "off@example.com", "password": USER_PASSWORD})
    assert resp.status_code == 401


def test_preferences_defaults_and_update(user_client):
    prefs = user_client.get("/api/me/preferences").get_json()["preferences"]
    assert prefs["theme"] == "light"
    assert prefs["items_per_page"] == 20

    resp = user_client.put("/api/me/preferences", json={"theme": "dark", "items_per_page": 50, "auto_save": False})
    assert resp.status_code == 200

    prefs = user_client.get("/api/me/preferences").get_json()["preferences"]
    assert prefs["theme"] == "dark"
    assert prefs["items_per_page"] == 50
    assert prefs["auto_save"] is False
    assert prefs["language"] == "fr"


def test_preferences_validation(user_client):
    resp = user_client.put("/api/me/preferences", json={"items_per_page": 500})
    assert resp.status_code == 400
    assert resp.get_json() == {"error": "items_per_page_out_of_range", "min": 5, "max": 100}

    assert user_client.put("/api/me/preferences", json={"theme": "neon"}).get_json()["error"] == "invalid_theme"
    assert user_client.put("/api/me/preferences", json={"time_format": "25h"}).status_code == 400
    assert user_client.put("/api/me/preferences", json={"notifications": "yes"}).status_code == 400


def test_admin_endpoints_require_admin(user_client):
    resp = user_client.get("/api/admin/users")
    assert resp.status_code == 403
    assert resp.get_json()["error"] == "admin_required"


def test_admin_creates_and_updates_users(admin_client):
    resp = admin_client.post(
        "/api/admin/users", json={"email": "new@example.com", "password": "123456", "role": "user"}
    )
    assert resp.status_code == 201
    user_id = resp.get_json()["user"]["id"]

    dup = admin_client.post("/api/admin/users", json={"email": "new@example.com", "password": "123456"})
    assert dup.status_code == 409
    short = admin_client.post("/api/admin/users", json={"email": "x@example.com", "password": "123"})
    assert short.get_json()["error"] == "password_too_short"

    resp = admin_client.put(f"/api/admin/users/{user_id}", json={"role": "admin", "name": "New"})
    assert resp.status_code == 200

    users = {u["email"]: u for u in admin_client.get("/api/admin/users").get_json()["users"]}
    assert users["new@example.com"]["role"] == "admin"
    assert users["new@example.com"]["name"] == "New"


def test_admin_update_rejects_non_string_fields(admin_client, admin_id):
    resp = admin_client.put(f"/api/admin/users/{admin_id}", json={"role": 5})
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "invalid_role"

    resp = admin_client.put(f"/api/admin/users/{admin_id}", json={"email": 42})
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "invalid_email"

    resp = admin_client.put(f"/api/admin/users/{admin_id}", json={"email": ["a@b.c"]})
    assert resp.status_code == 400


def test_last_active_admin_is_protected(admin_client, admin_id):
    resp = admin_client.put(f"/api/admin/users/{admin_id}", json={"role": "user"})
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "last_active_admin"

    resp = admin_client.put(f"/api/admin/users/{admin_id}", json={"active": False})
    assert resp.get_json()["error"] == "last_active_admin"


def test_admin_settings_roundtrip(admin_client):
    cfg = admin_client.get("/api/admin/settings").get_json()
    assert cfg["upload_resize_edge"] == 1024
    assert "image/jpeg" in cfg["allowed_image_types"]

    resp = admin_client.put("/api/admin/settings", json={"thumb_quality": 10})
    assert resp.get_json() == {"error": "thumb_quality_out_of_range", "min": 50, "max": 92}

    resp = admin_client.put(
        "/api/admin/settings", json={"upload_resize_edge": 0, "allowed_image_types": ["image/png"]}
    )
    assert resp.status_code == 200
    cfg = admin_client.get("/api/admin/settings").get_json()
    assert cfg["upload_resize_edge"] == 0
    assert cfg["allowed_image_types"] == ["image/png"]


def test_admin_stats(admin_client, admin_id, stored_image):
    image_id = stored_image(admin_id)
    assert admin_client.post("/api/crop/smart", json={"image_id": image_id}).status_code == 202

    stats = admin_client.get("/api/admin/stats").get_json()
    assert stats["counts"]["images"] == 1
    assert stats["counts"]["users"] == 1
    assert stats["jobs"]["PENDING"] == 1
    assert len(stats["recent_jobs"]) == 1
