import pytest
from fastapi.testclient import TestClient

from marketplace.constants import Role, UserStatus
from marketplace.main import app
from marketplace.rate_limit import limiter
from marketplace.security import create_access_token
from marketplace.services import auth_service as auth_module

PHONE = "+15551234567"
CODE = "4321"


@pytest.fixture
def client(monkeypatch, store, cache, sms, mail, auth):
    # services are wired by hand; skip the Mongo/Redis startup hooks
    monkeypatch.setattr(app.router, "on_startup", [])
    monkeypatch.setattr(app.router, "on_shutdown", [])
    monkeypatch.setattr(auth_module, "generate_otp_code", lambda: CODE)
    limiter.reset()

    app.state.users_service = store
    app.state.cache = cache
    app.state.sms_service = sms
    app.state.mail_service = mail
    app.state.auth_service = auth

    with TestClient(app) as c:
        yield c


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin_headers(store, settings):
    admin = store.add(phone_e164="+15550000001", roles=[Role.ADMIN], status=UserStatus.ACTIVE)
    token = create_access_token({"sub": admin.id, "roles": ["admin"]}, settings)
    return _bearer(token)


def _login_by_otp(client, phone=PHONE):
    r = client.post("/auth/otp/issue", json={"phoneE164": phone})
    assert r.status_code == 200, r.text
    r = client.post("/auth/otp/verify", json={"phoneE164": phone, "code": CODE})
    assert r.status_code == 200, r.text
    return r.json()


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["status"] == "ok"


def test_otp_login_refresh_logout(client):
    r = client.post("/auth/otp/issue", json={"phoneE164": PHONE})
    assert r.json() == {"success": True, "ttl": 300}

    r = client.post("/auth/otp/verify", json={"phoneE164": PHONE, "code": CODE})
    assert r.status_code == 200
    tokens = r.json()
    assert set(tokens) == {"accessToken", "refreshToken", "expiresIn"}
    assert tokens["expiresIn"] == 900

    me = client.get("/users/me", headers=_bearer(tokens["accessToken"]))
    assert me.status_code == 200
    assert me.json()["phoneE164"] == PHONE
    assert me.json()["status"] == "active"
    assert "password_hash" not in me.json()

    rotated = client.post("/auth/refresh", json={"refreshToken": tokens["refreshToken"]})
    assert rotated.status_code == 200
    new_tokens = rotated.json()
    assert new_tokens["refreshToken"] != tokens["refreshToken"]

    stale = client.post("/auth/refresh", json={"refreshToken": tokens["refreshToken"]})
    assert stale.status_code == 401
    assert stale.json()["status_code"] == 401

    r = client.post("/auth/logout", json={"refreshToken": new_tokens["refreshToken"]})
    assert r.json() == {"success": True}
    r = client.post("/auth/refresh", json={"refreshToken": new_tokens["refreshToken"]})
    assert r.status_code == 401


def test_verify_twice_fails(client):
    _login_by_otp(client)
    r = client.post("/auth/otp/verify", json={"phoneE164": PHONE, "code": CODE})
    assert r.status_code == 400
    assert r.json()["detail"] == "OTP expired or not found"


def test_wrong_code(client):
    client.post("/auth/otp/issue", json={"phoneE164": PHONE})
    r = client.post("/auth/otp/verify", json={"phoneE164": PHONE, "code": "1111"})
    assert r.status_code == 401


@pytest.mark.parametrize(
    "path,body",
    [
        ("/auth/otp/issue", {"phoneE164": "15551234567"}),
        ("/auth/otp/issue", {}),
        ("/auth/otp/verify", {"phoneE164": PHONE, "code": "12a4"}),
        ("/auth/otp/verify", {"phoneE164": PHONE, "code": "12345"}),
        ("/auth/otp/email/issue", {"email": "nope"}),
        ("/auth/register", {"phoneE164": PHONE, "password": "short"}),
        ("/auth/login", {"phoneE164": "+0123", "password": "long-enough"}),
        ("/auth/refresh", {"refreshToken": ""}),
    ],
)
def test_payload_validation(client, path, body):
    r = client.post(path, json=body)
    assert r.status_code == 422
    assert r.json()["status_code"] == 422


def test_per_phone_ceiling(client):
    for _ in range(5):
        assert client.post("/auth/otp/issue", json={"phoneE164": PHONE}).status_code == 200
    limiter.reset()
    r = client.post("/auth/otp/issue", json={"phoneE164": PHONE})
    assert r.status_code == 429
    assert r.json()["detail"] == "Exceeded max OTP requests. Try later."


def test_per_ip_limit(client):
    for i in range(5):
        r = client.post("/auth/otp/issue", json={"phoneE164": f"+1555000100{i}"})
        assert r.status_code == 200
    r = client.post("/auth/otp/issue", json={"phoneE164": "+15550001009"})
    assert r.status_code == 429


def test_email_otp_round_trip(client, store):
    r = client.post("/auth/otp/email/issue", json={"email": "Buyer@Example.com"})
    assert r.status_code == 200

    r = client.post("/auth/otp/email/verify", json={"email": "buyer@example.com", "code": CODE})
    assert r.status_code == 200

    me = client.get("/users/me", headers=_bearer(r.json()["accessToken"]))
    assert me.json()["email"] == "buyer@example.com"
    assert me.json()["registrationType"] == "email"


def test_register_then_login(client):
    r = client.post("/auth/register", json={"phoneE164": PHONE, "password": "s3cret-pass"})
    assert r.status_code == 200
    body = r.json()
    assert body["success"] is True
    assert body["otp"]["sent"] is True

    r = client.post("/auth/login", json={"phoneE164": PHONE, "password": "s3cret-pass"})
    assert r.status_code == 403

    r = client.post("/auth/otp/verify", json={"phoneE164": PHONE, "code": CODE})
    assert r.status_code == 200

    r = client.post("/auth/login", json={"phoneE164": PHONE, "password": "s3cret-pass"})
    assert r.status_code == 200
    assert r.json()["accessToken"]

    r = client.post("/auth/login", json={"phoneE164": PHONE, "password": "wrong-pass"})
    assert r.status_code == 401

    r = client.post("/auth/register", json={"phoneE164": PHONE, "password": "another-pass"})
    assert r.status_code == 409


def test_register_reports_failed_otp(client, make_auth, failing_sms):
    app.state.auth_service = make_auth(sms_service=failing_sms)

    r = client.post("/auth/register", json={"phoneE164": PHONE, "password": "s3cret-pass"})

    assert r.status_code == 200
    assert r.json()["otp"]["sent"] is False


def test_reset_password(client):
    client.post("/auth/register", json={"phoneE164": PHONE, "password": "s3cret-pass"})
    tokens = _login_by_otp(client)

    r = client.post(
        "/auth/reset-password",
        json={"password": "brand-new-pass"},
        headers=_bearer(tokens["accessToken"]),
    )
    assert r.status_code == 200
    assert r.json()["success"] is True

    r = client.post("/auth/refresh", json={"refreshToken": tokens["refreshToken"]})
    assert r.status_code == 401

    r = client.post("/auth/login", json={"phoneE164": PHONE, "password": "brand-new-pass"})
    assert r.status_code == 200


def test_reset_password_requires_auth(client):
    r = client.post("/auth/reset-password", json={"password": "brand-new-pass"})
    assert r.status_code == 401


def test_refresh_token_is_not_a_bearer(client):
    tokens = _login_by_otp(client)
    r = client.get("/users/me", headers=_bearer(tokens["refreshToken"]))
    assert r.status_code == 401


def test_create_user_sends_otp(client):
    r = client.post("/users", json={"phoneE164": PHONE, "metadata": {"source": "web"}})
    assert r.status_code == 200
    assert r.json()["metadata"] == {"source": "web"}

    again = client.post("/users", json={"phoneE164": PHONE})
    assert again.json()["id"] == r.json()["id"]


def test_find_user_by_phone(client, store):
    r = client.get("/users", params={"phone": PHONE})
    assert r.status_code == 200
    assert r.json() is None

    user = store.add(phone_e164=PHONE)
    r = client.get("/users", params={"phone": PHONE})
    assert r.json()["id"] == user.id

    assert client.get(f"/users/{user.id}").status_code == 200
    assert client.get("/users/missing").status_code == 404


def test_update_user_permissions(client, store, admin_headers):
    tokens = _login_by_otp(client)
    me = client.get("/users/me", headers=_bearer(tokens["accessToken"])).json()
    other = store.add(phone_e164="+15559999999")

    r = client.patch(
        f"/users/{me['id']}",
        json={"email": "Me@Example.com"},
        headers=_bearer(tokens["accessToken"]),
    )
    assert r.status_code == 200
    assert r.json()["email"] == "me@example.com"

    r = client.patch(f"/users/{me['id']}", json={"roles": ["admin"]}, headers=_bearer(tokens["accessToken"]))
    assert r.status_code == 403

    r = client.patch(f"/users/{other.id}", json={"email": "x@example.com"}, headers=_bearer(tokens["accessToken"]))
    assert r.status_code == 403

    r = client.patch(f"/users/{me['id']}", json={"roles": ["client", "vendor"]}, headers=admin_headers)
    assert r.status_code == 200
    assert r.json()["roles"] == ["client", "vendor"]


def test_block_user_requires_admin(client, store, admin_headers):
    tokens = _login_by_otp(client)
    target = store.add(phone_e164="+15559999999")

    r = client.post(f"/users/{target.id}/block", headers=_bearer(tokens["accessToken"]))
    assert r.status_code == 403
    assert r.json()["detail"] == "Insufficient permissions"

    r = client.post(f"/users/{target.id}/block", headers=admin_headers)
    assert r.status_code == 200
    assert r.json()["status"] == "blocked"


def test_blocked_user_cannot_login(client, store, admin_headers):
    client.post("/auth/register", json={"phoneE164": PHONE, "password": "s3cret-pass"})
    tokens = _login_by_otp(client)
    me = client.get("/users/me", headers=_bearer(tokens["accessToken"])).json()

    client.post(f"/users/{me['id']}/block", headers=admin_headers)

    r = client.post("/auth/login", json={"phoneE164": PHONE, "password": "s3cret-pass"})
    assert r.status_code == 403
    assert r.json()["detail"] == "User is not active"


def test_send_mail_admin_only(client, admin_headers):
    payload = {"to": "someone@example.com", "subject": "Hi", "text": "hello"}

    assert client.post("/mail/send", json=payload).status_code == 401

    r = client.post("/mail/send", json=payload, headers=admin_headers)
    assert r.status_code == 200
    assert r.json()["message"] == "Email sent"
    assert r.json()["accepted"] == ["someone@example.com"]

    r = client.post("/mail/send", json={"to": ["a@example.com"], "subject": "Hi"}, headers=admin_headers)
    assert r.status_code == 400


def test_sms_health_endpoints(client, admin_headers):
    r = client.get("/health/send-sms", params={"to": "96550000001"}, headers=admin_headers)
    assert r.json()["success"] is True

    r = client.get("/health/sms-status/abc", headers=admin_headers)
    assert r.json()["delivered"] is True


def test_anonymous_create_cannot_assign_admin(client, store):
    r = client.post("/users", json={"phoneE164": "+15559990000", "roles": ["admin"]})
    assert r.status_code == 403
    assert r.json()["detail"] == "Only admins can assign roles"
    assert store.records == {}

    # the phone can still sign up as a plain client and gets no admin rights
    tokens = _login_by_otp(client, phone="+15559990000")
    payload = {"to": "someone@example.com", "subject": "Hi", "text": "hello"}
    r = client.post("/mail/send", json=payload, headers=_bearer(tokens["accessToken"]))
    assert r.status_code == 403


def test_client_role_may_be_requested_anonymously(client):
    r = client.post("/users", json={"phoneE164": PHONE, "roles": ["client"]})
    assert r.status_code == 200
    assert r.json()["roles"] == ["client"]


def test_non_admin_cannot_assign_roles_on_create(client):
    tokens = _login_by_otp(client)
    r = client.post(
        "/users",
        json={"phoneE164": "+15559990000", "roles": ["vendor"]},
        headers=_bearer(tokens["accessToken"]),
    )
    assert r.status_code == 403


def test_admin_creates_vendor(client, admin_headers):
    r = client.post(
        "/users",
        json={"phoneE164": "+15559990000", "roles": ["vendor"]},
        headers=admin_headers,
    )
    assert r.status_code == 200
    assert r.json()["roles"] == ["vendor"]


def test_create_with_bad_token_is_rejected(client):
    r = client.post("/users", json={"phoneE164": PHONE}, headers=_bearer("garbage"))
    assert r.status_code == 401
