from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time

import pytest
from fastapi import HTTPException
from starlette.requests import Request

from apps.api.authz import (
    RequestIdentity,
    assert_org_access,
    get_request_identity,
    hipaa_enforcement_enabled,
    require_role,
)


def _request(method: str = "GET", path: str = "/diagnosis-runs/r1") -> Request:
    scope = {
        "type": "http",
        "http_version": "1.1",
        "method": method,
        "path": path,
        "raw_path": path.encode("utf-8"),
        "headers": [],
        "query_string": b"",
        "server": ("testserver", 80),
        "client": ("127.0.0.1", 12345),
        "scheme": "http",
    }
    return Request(scope)


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _make_jwt(
    secret: str,
    *,
    user_id: str,
    org_id: str,
    role: str,
    method: str,
    path: str,
    ttl: int = 60,
) -> str:
    now = int(time.time())
    header = {"alg": "HS256", "typ": "JWT"}
    payload = {
        "sub": user_id,
        "org_id": org_id,
        "role": role,
        "iat": now,
        "exp": now + ttl,
        "mth": method.upper(),
        "pth": path,
    }
    h = _b64url(json.dumps(header).encode("utf-8"))
    p = _b64url(json.dumps(payload).encode("utf-8"))
    signing_input = f"{h}.{p}".encode("utf-8")
    sig = hmac.new(secret.encode("utf-8"), signing_input, hashlib.sha256).digest()
    return f"{h}.{p}.{_b64url(sig)}"


def _enable_jwt(monkeypatch: pytest.MonkeyPatch) -> str:
    secret = "s" * 32
    monkeypatch.setenv("HIPAA_ENFORCEMENT", "true")
    monkeypatch.setenv("API_INTERNAL_AUTH_MODE", "jwt")
    monkeypatch.setenv("API_INTERNAL_JWT_SECRET", secret)
    return secret


def test_hipaa_enforcement_disabled_by_default(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.delenv("HIPAA_ENFORCEMENT", raising=False)
    assert hipaa_enforcement_enabled() is False


def test_get_request_identity_returns_none_when_disabled(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("HIPAA_ENFORCEMENT", "false")
    assert get_request_identity(_request(), x_user_id=None, x_org_id=None) is None


def test_get_request_identity_requires_internal_auth_when_enabled(monkeypatch: pytest.MonkeyPatch):
    _enable_jwt(monkeypatch)
    with pytest.raises(HTTPException) as exc:
        get_request_identity(_request(), x_internal_auth=None, x_internal_token=None)
    assert exc.value.status_code == 401


def test_get_request_identity_resolves_from_jwt(monkeypatch: pytest.MonkeyPatch):
    secret = _enable_jwt(monkeypatch)
    token = _make_jwt(secret, user_id="u1", org_id="org-1", role="Clinician", method="GET", path="/diagnosis-runs/r1")

    identity = get_request_identity(
        _request(),
        x_user_id=None,
        x_org_id=None,
        x_user_role=None,
        x_internal_token=None,
        x_internal_auth=f"Bearer {token}",
    )
    assert identity == RequestIdentity(user_id="u1", org_id="org-1", role="clinician")


def test_get_request_identity_rejects_jwt_path_mismatch(monkeypatch: pytest.MonkeyPatch):
    secret = _enable_jwt(monkeypatch)
    token = _make_jwt(secret, user_id="u1", org_id="org-1", role="admin", method="GET", path="/diagnosis-runs/r2")

    with pytest.raises(HTTPException) as exc:
        get_request_identity(
            _request(),
            x_user_id=None,
            x_org_id=None,
            x_user_role=None,
            x_internal_token=None,
            x_internal_auth=token,
        )
    assert exc.value.status_code == 401


def test_get_request_identity_rejects_expired_jwt(monkeypatch: pytest.MonkeyPatch):
    secret = _enable_jwt(monkeypatch)
    token = _make_jwt(
        secret, user_id="u1", org_id="org-1", role="admin", method="GET", path="/diagnosis-runs/r1", ttl=-5
    )
    with pytest.raises(HTTPException) as exc:
        get_request_identity(
            _request(),
            x_user_id=None,
            x_org_id=None,
            x_user_role=None,
            x_internal_token=None,
            x_internal_auth=token,
        )
    assert exc.value.status_code == 401


def test_get_request_identity_rejects_org_header_mismatch(monkeypatch: pytest.MonkeyPatch):
    secret = _enable_jwt(monkeypatch)
    token = _make_jwt(secret, user_id="u1", org_id="org-1", role="admin", method="GET", path="/diagnosis-runs/r1")
    with pytest.raises(HTTPException) as exc:
        get_request_identity(
            _request(),
            x_user_id=None,
            x_org_id="org-2",
            x_user_role=None,
            x_internal_token=None,
            x_internal_auth=token,
        )
    assert exc.value.status_code == 401


def test_get_request_identity_static_mode(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("HIPAA_ENFORCEMENT", "true")
    monkeypatch.setenv("API_INTERNAL_AUTH_MODE", "static")
    monkeypatch.setenv("API_INTERNAL_TOKEN", "x" * 32)

    identity = get_request_identity(
        _request(),
        x_user_id="u1",
        x_org_id="org-1",
        x_user_role="worker",
        x_internal_token="x" * 32,
        x_internal_auth=None,
    )
    assert identity == RequestIdentity(user_id="u1", org_id="org-1", role="worker")


def test_get_request_identity_static_mode_requires_role_header(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("HIPAA_ENFORCEMENT", "true")
    monkeypatch.setenv("API_INTERNAL_AUTH_MODE", "static")
    monkeypatch.setenv("API_INTERNAL_TOKEN", "x" * 32)

    with pytest.raises(HTTPException) as exc:
        get_request_identity(
            _request(),
            x_user_id="u1",
            x_org_id="org-1",
            x_user_role=None,
            x_internal_token="x" * 32,
            x_internal_auth=None,
        )
    assert exc.value.status_code == 401


def test_assert_org_access():
    assert_org_access(None, "org-2")
    assert_org_access(RequestIdentity(user_id="u1", org_id="org-1", role="admin"), "org-1")
    with pytest.raises(HTTPException) as exc:
        assert_org_access(RequestIdentity(user_id="u1", org_id="org-1", role="admin"), "org-2")
    assert exc.value.status_code == 403


def test_require_role():
    require_role(None)
    require_role(RequestIdentity(user_id="u1", org_id="org-1", role="clinician"))
    require_role(RequestIdentity(user_id="u1", org_id="org-1", role="worker"), {"worker"})
    with pytest.raises(HTTPException) as exc:
        require_role(RequestIdentity(user_id="u1", org_id="org-1", role="viewer"))
    assert exc.value.status_code == 403
