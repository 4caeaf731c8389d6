from werkzeug.security import generate_password_hash

from ims_app import db
from ims_app.models import User, ActivityLog
from conftest import PASSWORD


def test_login_returns_user_and_csrf_token(client, seed):
    resp = client.post("/auth/login", json={"email": "ADMIN@example.com ", "password": PASSWORD})
    assert resp.status_code == 200
    data = resp.get_json()["data"]
    assert data["user"]["email"] == "admin@example.com"
    assert "password_hash" not in data["user"]
    assert data["csrf_token"]

    me = client.get("/auth/me").get_json()["data"]["user"]
    assert me["user_id"] == seed.admin


def test_login_failures(app, client, seed):
    assert client.post("/auth/login", json={"email": "admin@example.com"}).status_code == 400
    assert client.post("/auth/login", json={"email": "admin@example.com", "password": "nope"}).status_code == 401
    assert client.post("/auth/login", json={"email": "ghost@example.com", "password": PASSWORD}).status_code == 401

    with app.app_context():
        db.session.get(User, seed.staff).is_active = False
        db.session.commit()
    assert client.post("/auth/login", json={"email": "staff@example.com", "password": PASSWORD}).status_code == 403


def test_logout_ends_session(client, seed, login):
    login()
    assert client.post("/auth/logout").status_code == 200
    assert client.get("/auth/me").status_code == 401


def test_csrf_token_endpoint_matches_session(client, seed, login):
    headers = login()
    token = client.get("/auth/csrf-token").get_json()["data"]["csrf_token"]
    assert token == headers["X-CSRF-Token"]


def test_update_profile(client, seed, login):
    headers = login()
    resp = client.patch("/auth/me", json={"full_name": "Ada Lovelace", "phone": "+1444"}, headers=headers)
    assert resp.get_json()["data"]["user"]["full_name"] == "Ada Lovelace"
    assert client.patch("/auth/me", json={"full_name": "  "}, headers=headers).status_code == 400


def test_change_password(app, client, seed, login):
    with app.app_context():
        db.session.get(User, seed.admin).must_change_password = True
        db.session.commit()
    headers = login()

    weak = client.post("/auth/change-password", json={"current_password": PASSWORD, "new_password": "short"},
                       headers=headers)
    assert weak.status_code == 400
    wrong = client.post("/auth/change-password", json={"current_password": "bad", "new_password": "long-enough"},
                        headers=headers)
    assert wrong.status_code == 400

    ok = client.post("/auth/change-password",
                     json={"current_password": PASSWORD, "new_password": "a-much-better-one"}, headers=headers)
    assert ok.status_code == 200
    with app.app_context():
        assert db.session.get(User, seed.admin).must_change_password is False

    client.post("/auth/logout")
    assert client.post("/auth/login", json={"email": "admin@example.com", "password": "a-much-better-one"}).status_code == 200


def test_role_change_is_admin_only_and_audited(app, client, seed, login):
    headers = login("staff@example.com")
    resp = client.post(f"/auth/users/{seed.staff}/role", json={"role": "admin"}, headers=headers)
    assert resp.status_code == 403

    client.post("/auth/logout")
    headers = login()
    resp = client.post(f"/auth/users/{seed.staff}/role", json={"role": "teacher"}, headers=headers)
    assert resp.status_code == 200
    assert resp.get_json()["data"]["user"]["role"] == "teacher"

    with app.app_context():
        entry = db.session.query(ActivityLog).filter_by(entity_type="user", entity_id=str(seed.staff)).one()
        assert entry.user_id_fk == seed.admin
        assert "staff" in entry.description and "teacher" in entry.description


def test_role_change_rules(client, seed, login):
    headers = login()
    assert client.post(f"/auth/users/{seed.staff}/role", json={"role": "owner"},
                       headers=headers).status_code == 400
    assert client.post(f"/auth/users/{seed.admin}/role", json={"role": "staff"},
                       headers=headers).status_code == 403
    # Users of another institute are invisible to an institute admin
    assert client.post(f"/auth/users/{seed.other_admin}/role", json={"role": "staff"},
                       headers=headers).status_code == 404


def test_role_change_requires_csrf(client, seed, login):
    login()
    resp = client.post(f"/auth/users/{seed.staff}/role", json={"role": "teacher"},
                       headers={"X-CSRF-Token": "forged"})
    assert resp.status_code == 400


def test_user_without_password_cannot_log_in(app, client, seed):
    with app.app_context():
        db.session.add(User(email="nopw@example.com", full_name="No Password", role="staff",
                            institute_id_fk=seed.institute))
        db.session.add(User(email="hashed@example.com", full_name="Hashed", role="staff",
                            password_hash=generate_password_hash("whatever-1")))
        db.session.commit()
    assert client.post("/auth/login", json={"email": "nopw@example.com", "password": "x"}).status_code == 401
    assert client.post("/auth/login", json={"email": "hashed@example.com", "password": "whatever-1"}).status_code == 200
