from __future__ import annotations

import time

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from jose import jwt

from routers.auth import router


ADMIN_SECRET = "test-admin-secret"


@pytest.fixture
def client(otp_config):
    app = FastAPI()
    app.include_router(router, prefix="/api")
    app.state.otp = otp_config
    return TestClient(app)


def _admin_token(secret: str = ADMIN_SECRET, **claims) -> str:
    payload = {"sub": "ops", "is_admin": True, "exp": int(time.time()) + 60}
    payload.update(claims)
    return jwt.encode(payload, secret, algorithm="HS256")


def test_request_and_verify(client, sender, store):
    r = client.post("/api/auth/otp/request", json={"email": "A@b.com"})
    assert r.status_code == 200
    assert r.json()["ok"] is True
    assert sender.last_code not in r.text

    r = client.post("/api/auth/otp/verify", json={"email": "a@b.com", "otp": sender.last_code})
    assert r.status_code == 200
    assert r.json() == {"ok": True}
    assert store.all() == []


def test_rejects_malformed_email(client):
    r = client.post("/api/auth/otp/request", json={"email": "not-an-email"})
    assert r.status_code == 422


def test_verify_errors_map_to_status(client, sender):
    r = client.post("/api/auth/otp/verify", json={"email": "a@b.com", "otp": "123456"})
    assert r.status_code == 404
    assert r.json()["detail"] == "OTP not found"

    client.post("/api/auth/otp/request", json={"email": "a@b.com"})
    wrong = "000000" if sender.last_code != "000000" else "111111"
    r = client.post("/api/auth/otp/verify", json={"email": "a@b.com", "otp": wrong})
    assert r.status_code == 401
    assert r.json()["detail"] == "Invalid OTP"


def test_delivery_failure_is_502(client, sender):
    sender.fail_with = RuntimeError("Brevo send failed (500)")
    r = client.post("/api/auth/otp/request", json={"email": "a@b.com"})
    assert r.status_code == 502


def test_admin_token_bypasses_check(client, store, monkeypatch):
    monkeypatch.setenv("OTP_ADMIN_JWT_SECRET", ADMIN_SECRET)
    r = client.post(
        "/api/auth/otp/verify",
        json={"email": "linked@b.com", "otp": "000000"},
        headers={"Authorization": f"Bearer {_admin_token()}"},
    )
    assert r.status_code == 200


def test_non_admin_token_gets_no_bypass(client, monkeypatch):
    monkeypatch.setenv("OTP_ADMIN_JWT_SECRET", ADMIN_SECRET)
    r = client.post(
        "/api/auth/otp/verify",
        json={"email": "linked@b.com", "otp": "000000"},
        headers={"Authorization": f"Bearer {_admin_token(is_admin='yes')}"},
    )
    assert r.status_code == 404


def test_forged_token_is_rejected(client, monkeypatch):
    monkeypatch.setenv("OTP_ADMIN_JWT_SECRET", ADMIN_SECRET)
    r = client.post(
        "/api/auth/otp/verify",
        json={"email": "linked@b.com", "otp": "000000"},
        headers={"Authorization": f"Bearer {_admin_token(secret='guessed')}"},
    )
    assert r.status_code == 401


def test_expired_admin_token_is_rejected(client, monkeypatch):
    monkeypatch.setenv("OTP_ADMIN_JWT_SECRET", ADMIN_SECRET)
    token = _admin_token(exp=int(time.time()) - 10)
    r = client.post(
        "/api/auth/otp/verify",
        json={"email": "linked@b.com", "otp": "000000"},
        headers={"Authorization": f"Bearer {token}"},
    )
    assert r.status_code == 401


def test_no_secret_means_no_privilege(client, monkeypatch):
    monkeypatch.delenv("OTP_ADMIN_JWT_SECRET", raising=False)
    r = client.post(
        "/api/auth/otp/verify",
        json={"email": "linked@b.com", "otp": "000000"},
        headers={"Authorization": f"Bearer {_admin_token()}"},
    )
    assert r.status_code == 404


def test_uninitialized_app_is_503():
    app = FastAPI()
    app.include_router(router, prefix="/api")
    r = TestClient(app).post("/api/auth/otp/request", json={"email": "a@b.com"})
    assert r.status_code == 503
