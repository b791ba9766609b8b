import cloudinary.exceptions
import cloudinary.uploader

from vidtube import services, uploads
from vidtube.uploads import upload_on_cloudinary

from conftest import API, bearer, login, register


def test_register_returns_sanitized_user(client, fake_upload):
    resp = register(client, username="Alice")
    assert resp.status_code == 201
    body = resp.json()
    assert body["statusCode"] == 201
    assert body["success"] is True
    user = body["data"]
    assert user["username"] == "alice"
    assert user["fullName"] == "Alice Doe"
    assert user["avatar"].startswith("https://media.example.com/")
    assert user["coverImage"] == ""
    assert user["watchHistory"] == []
    for key in ("password", "passwordHash", "password_hash", "refreshToken", "refresh_token"):
        assert key not in user
    assert len(fake_upload) == 1


def test_register_with_cover_image(client, fake_upload):
    resp = register(client, cover=True)
    assert resp.status_code == 201
    assert resp.json()["data"]["coverImage"].startswith("https://media.example.com/")
    assert len(fake_upload) == 2


def test_register_duplicate_username_or_email_conflicts(client, staging_dir):
    assert register(client, username="alice").status_code == 201

    dup_username = register(client, username="ALICE", email="other@example.com")
    assert dup_username.status_code == 409
    body = dup_username.json()
    assert body == {
        "statusCode": 409,
        "message": "User with email or username already exists",
        "errors": [],
        "data": None,
        "success": False,
    }

    dup_email = register(client, username="someone", email="alice@example.com")
    assert dup_email.status_code == 409
    assert list(staging_dir.iterdir()) == []


def test_register_requires_all_fields(client):
    resp = client.post(
        f"{API}/register",
        data={"fullName": "  ", "email": "a@example.com", "username": "a", "password": "p"},
        files=[("avatar", ("avatar.png", b"x", "image/png"))],
    )
    assert resp.status_code == 400
    assert resp.json()["success"] is False


def test_register_requires_avatar(client):
    resp = client.post(
        f"{API}/register",
        data={"fullName": "A", "email": "a@example.com", "username": "a", "password": "p"},
    )
    assert resp.status_code == 400
    assert resp.json()["message"] == "Avatar file is required"


def test_register_rejects_two_avatars(client, staging_dir):
    resp = client.post(
        f"{API}/register",
        data={"fullName": "A", "email": "a@example.com", "username": "a", "password": "p"},
        files=[
            ("avatar", ("one.png", b"1", "image/png")),
            ("avatar", ("two.png", b"2", "image/png")),
        ],
    )
    assert resp.status_code == 400
    assert resp.json()["errors"] == [
        {"field": "avatar", "message": "expected 1 file, received 2"}
    ]
    assert not staging_dir.exists() or list(staging_dir.iterdir()) == []


def test_avatar_upload_failure_is_internal_error(client, monkeypatch, staging_dir):
    def fake_upload(file, **options):
        raise cloudinary.exceptions.Error("down")

    monkeypatch.setattr(services, "upload_on_cloudinary", upload_on_cloudinary)
    monkeypatch.setattr(cloudinary.uploader, "upload", fake_upload)

    resp = register(client, cover=True)
    assert resp.status_code == 500
    assert resp.json()["message"] == "Error uploading avatar"
    assert list(staging_dir.iterdir()) == []

    missing = client.post(f"{API}/login", json={"username": "alice", "password": "secret"})
    assert missing.status_code == 404


def test_cover_image_upload_failure_falls_back_to_empty(client, monkeypatch, staging_dir):
    calls = []

    def flaky(local_file_path):
        if not local_file_path:
            return None
        uploads._remove_local_file(local_file_path)
        calls.append(local_file_path)
        if len(calls) == 2:
            return None
        return {"url": "https://media.example.com/avatar.png"}

    monkeypatch.setattr(services, "upload_on_cloudinary", flaky)

    resp = register(client, cover=True)
    assert resp.status_code == 201
    assert resp.json()["data"]["coverImage"] == ""
    assert list(staging_dir.iterdir()) == []


def test_login_then_current_user(client):
    register(client, username="alice", email="alice@example.com")

    data = login(client)
    assert data["user"]["username"] == "alice"
    assert "refreshToken" not in data["user"]

    resp = client.get(f"{API}/current-user", headers=bearer(data["accessToken"]))
    assert resp.status_code == 200
    current = resp.json()["data"]
    assert current["username"] == "alice"
    assert current["email"] == "alice@example.com"


def test_login_by_email_sets_secure_cookies(client):
    register(client)
    resp = client.post(f"{API}/login", json={"email": "alice@example.com", "password": "secret"})
    assert resp.status_code == 200
    cookies = resp.headers.get_list("set-cookie")
    assert len(cookies) == 2
    for name, cookie in zip(("accessToken", "refreshToken"), cookies):
        assert cookie.startswith(f"{name}=")
        assert "HttpOnly" in cookie
        assert "Secure" in cookie


def test_login_errors(client):
    register(client)

    no_identifier = client.post(f"{API}/login", json={"password": "secret"})
    assert no_identifier.status_code == 400

    unknown = client.post(f"{API}/login", json={"username": "nobody", "password": "secret"})
    assert unknown.status_code == 404

    wrong = client.post(f"{API}/login", json={"username": "alice", "password": "nope"})
    assert wrong.status_code == 401

    missing_password = client.post(f"{API}/login", json={"username": "alice"})
    assert missing_password.status_code == 400
    assert missing_password.json()["errors"][0]["field"] == "password"


def test_refresh_rotation(client):
    register(client)
    tokens = login(client)

    first = client.post(f"{API}/refresh-token", json={"refreshToken": tokens["refreshToken"]})
    assert first.status_code == 200
    rotated = first.json()["data"]
    assert rotated["refreshToken"] != tokens["refreshToken"]

    reuse = client.post(f"{API}/refresh-token", json={"refreshToken": tokens["refreshToken"]})
    assert reuse.status_code == 401

    second = client.post(f"{API}/refresh-token", json={"refreshToken": rotated["refreshToken"]})
    assert second.status_code == 200

    stale = client.post(f"{API}/refresh-token", json={"refreshToken": rotated["refreshToken"]})
    assert stale.status_code == 401

    current = client.get(
        f"{API}/current-user", headers=bearer(second.json()["data"]["accessToken"])
    )
    assert current.status_code == 200


def test_refresh_failures_share_one_message(client):
    missing = client.post(f"{API}/refresh-token")
    garbage = client.post(f"{API}/refresh-token", json={"refreshToken": "garbage"})
    assert missing.status_code == garbage.status_code == 401
    assert missing.json()["message"] == garbage.json()["message"]


def test_logout_revokes_refresh_token(client):
    register(client)
    tokens = login(client)

    resp = client.post(f"{API}/logout", headers=bearer(tokens["accessToken"]))
    assert resp.status_code == 200
    assert resp.json()["data"] == {}
    assert any(c.startswith("accessToken=") for c in resp.headers.get_list("set-cookie"))

    refresh = client.post(f"{API}/refresh-token", json={"refreshToken": tokens["refreshToken"]})
    assert refresh.status_code == 401


def test_protected_routes_require_token(client):
    assert client.get(f"{API}/current-user").status_code == 401
    assert client.post(f"{API}/logout").status_code == 401
    bad = client.get(f"{API}/history", headers=bearer("not-a-token"))
    assert bad.status_code == 401
    assert bad.json()["success"] is False


def test_change_password(client):
    register(client)
    headers = bearer(login(client)["accessToken"])

    wrong = client.post(
        f"{API}/change-password",
        json={"oldPassword": "bad", "newPassword": "better"},
        headers=headers,
    )
    assert wrong.status_code == 401

    ok = client.post(
        f"{API}/change-password",
        json={"oldPassword": "secret", "newPassword": "better"},
        headers=headers,
    )
    assert ok.status_code == 200

    old = client.post(f"{API}/login", json={"username": "alice", "password": "secret"})
    assert old.status_code == 401
    login(client, password="better")


def test_update_account(client):
    register(client)
    register(client, username="bob", email="bob@example.com")
    headers = bearer(login(client)["accessToken"])

    missing = client.patch(f"{API}/update-account", json={"fullName": "Alice"}, headers=headers)
    assert missing.status_code == 400

    taken = client.patch(
        f"{API}/update-account",
        json={"fullName": "Alice", "email": "bob@example.com"},
        headers=headers,
    )
    assert taken.status_code == 409

    resp = client.patch(
        f"{API}/update-account",
        json={"fullName": "Alice Smith", "email": "smith@example.com"},
        headers=headers,
    )
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["fullName"] == "Alice Smith"
    assert data["email"] == "smith@example.com"


def test_update_avatar_and_cover(client, fake_upload):
    register(client)
    data = login(client)
    headers = bearer(data["accessToken"])
    old_avatar = data["user"]["avatar"]

    missing = client.patch(f"{API}/update-avatar", headers=headers)
    assert missing.status_code == 400

    avatar = client.patch(
        f"{API}/update-avatar",
        files=[("avatar", ("new.png", b"new", "image/png"))],
        headers=headers,
    )
    assert avatar.status_code == 200
    assert avatar.json()["data"]["avatar"] != old_avatar

    cover = client.patch(
        f"{API}/update-cover",
        files=[("coverImage", ("cover.png", b"cover", "image/png"))],
        headers=headers,
    )
    assert cover.status_code == 200
    assert cover.json()["data"]["coverImage"].startswith("https://media.example.com/")


def test_update_avatar_upload_failure(client, monkeypatch, staging_dir):
    register(client)
    headers = bearer(login(client)["accessToken"])

    def failing(local_file_path):
        uploads._remove_local_file(local_file_path)
        return None

    monkeypatch.setattr(services, "upload_on_cloudinary", failing)
    resp = client.patch(
        f"{API}/update-avatar",
        files=[("avatar", ("new.png", b"new", "image/png"))],
        headers=headers,
    )
    assert resp.status_code == 500
    assert list(staging_dir.iterdir()) == []


def test_register_race_on_username_is_conflict(client, monkeypatch, make_user):
    taken = []

    def racing_upload(local_file_path):
        if not local_file_path:
            return None
        uploads._remove_local_file(local_file_path)
        if not taken:
            # Another request registers the same username mid-upload.
            taken.append(make_user("alice", email="first@example.com"))
        return {"url": "https://media.example.com/avatar.png"}

    monkeypatch.setattr(services, "upload_on_cloudinary", racing_upload)

    resp = register(client, username="alice", email="second@example.com")
    assert resp.status_code == 409
    assert resp.json()["message"] == "User with email or username already exists"
    assert len(taken) == 1


def test_update_account_race_on_email_is_conflict(client, monkeypatch, make_user):
    register(client)
    headers = bearer(login(client)["accessToken"])
    make_user("carol", email="carol@example.com")
    # carol claims the email after the duplicate check has passed.
    monkeypatch.setattr(services, "_email_taken", lambda session, email, user_id: False)

    resp = client.patch(
        f"{API}/update-account",
        json={"fullName": "Alice", "email": "carol@example.com"},
        headers=headers,
    )
    assert resp.status_code == 409
    assert resp.json()["message"] == "Email is already in use"


def test_current_user_from_access_cookie(client):
    register(client)
    tokens = login(client)

    resp = client.get(
        f"{API}/current-user", headers={"Cookie": f"accessToken={tokens['accessToken']}"}
    )
    assert resp.status_code == 200
    assert resp.json()["data"]["username"] == "alice"


def test_refresh_from_refresh_cookie(client):
    register(client)
    tokens = login(client)

    resp = client.post(
        f"{API}/refresh-token", headers={"Cookie": f"refreshToken={tokens['refreshToken']}"}
    )
    assert resp.status_code == 200
    assert resp.json()["data"]["refreshToken"] != tokens["refreshToken"]
    assert any(c.startswith("refreshToken=") for c in resp.headers.get_list("set-cookie"))


def test_refresh_cookie_takes_precedence_over_body(client):
    register(client)
    tokens = login(client)

    cookie_wins = client.post(
        f"{API}/refresh-token",
        json={"refreshToken": "garbage"},
        headers={"Cookie": f"refreshToken={tokens['refreshToken']}"},
    )
    assert cookie_wins.status_code == 200
    rotated = cookie_wins.json()["data"]["refreshToken"]

    body_ignored = client.post(
        f"{API}/refresh-token",
        json={"refreshToken": rotated},
        headers={"Cookie": "refreshToken=garbage"},
    )
    assert body_ignored.status_code == 401
