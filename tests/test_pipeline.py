"""
Request pipeline tests: middleware behaviour seen from the outside.
"""
import asyncio
import json
from datetime import datetime

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from app.middleware.body_size import BodySizeLimitMiddleware
from app.middleware.rate_limit import RateLimit, limit_for
from app.middleware.recovery import RecoveryMiddleware
from app.middleware.request_id import RequestIDMiddleware
from app.middleware.timeout import RequestTimeoutMiddleware
from app.models.tenant import TenantStatus
from app.models.user import UserStatus
from conftest import auth_headers, make_tenant, make_user


class TestHealthAndHeaders:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.json()["database"] == "ok"

    def test_security_headers(self, client):
        response = client.get("/health")
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Frame-Options"] == "DENY"
        assert "Content-Security-Policy" in response.headers
        # HSTS only in production
        assert "Strict-Transport-Security" not in response.headers

    def test_request_id_generated(self, client):
        response = client.get("/health")
        assert len(response.headers["X-Request-ID"]) == 36
        assert "X-Process-Time" in response.headers

    def test_request_id_echoed_when_sane(self, client):
        response = client.get("/health", headers={"X-Request-ID": "lb-7f3a.01"})
        assert response.headers["X-Request-ID"] == "lb-7f3a.01"

    def test_request_id_replaced_when_not(self, client):
        response = client.get("/health", headers={"X-Request-ID": "bad id <script>"})
        assert response.headers["X-Request-ID"] != "bad id <script>"

    def test_unknown_route_uses_error_shape(self, client):
        response = client.get("/api/v1/nope")
        assert response.status_code == 404
        assert "error" in response.json()


class TestTenantResolution:
    def test_unknown_tenant(self, client):
        response = client.get("/api/v1/clients", headers={"X-Tenant-Slug": "ghost"})
        assert response.status_code == 404
        assert response.json() == {"error": "Tenant not found: ghost"}

    def test_suspended_tenant(self, client, db_session, plan):
        make_tenant(db_session, "frozen", plan, status=TenantStatus.SUSPENDED)
        response = client.get("/api/v1/clients", headers={"X-Tenant-Slug": "frozen"})
        assert response.status_code == 403

    def test_tenant_by_id_header(self, client, tenant, owner):
        headers = auth_headers(owner)
        headers["X-Tenant-ID"] = tenant.id
        assert client.get("/api/v1/clients", headers=headers).status_code == 200

    def test_missing_token(self, client, tenant):
        response = client.get("/api/v1/clients", headers={"X-Tenant-Slug": tenant.slug})
        assert response.status_code == 401
        assert response.json()["error"] == "Missing bearer token"

    def test_invalid_token(self, client, tenant):
        response = client.get("/api/v1/clients", headers={
            "X-Tenant-Slug": tenant.slug,
            "Authorization": "Bearer not-a-token",
        })
        assert response.status_code == 401

    def test_token_for_other_tenant(self, client, db_session, plan, owner):
        other = make_tenant(db_session, "beta", plan)
        headers = auth_headers(owner)
        headers["X-Tenant-Slug"] = other.slug

        response = client.get("/api/v1/clients", headers=headers)
        assert response.status_code == 403
        assert response.json()["error"] == "Token tenant mismatch"

    def test_token_tenant_used_without_header(self, client, owner):
        response = client.get("/api/v1/clients", headers=auth_headers(owner))
        assert response.status_code == 200

    @pytest.mark.parametrize("with_header", [True, False])
    def test_suspended_tenant_token_rejected(self, client, db_session, tenant, owner, with_header):
        headers = auth_headers(owner, tenant if with_header else None)
        tenant.status = TenantStatus.SUSPENDED
        db_session.commit()

        response = client.get("/api/v1/clients", headers=headers)
        assert response.status_code == 403
        assert response.json()["error"] == "Tenant not active"

    def test_deleted_tenant_token_rejected_without_header(self, client, db_session, tenant, owner):
        headers = auth_headers(owner)
        tenant.status = TenantStatus.DELETED
        db_session.commit()
        assert client.get("/api/v1/auth/me", headers=headers).status_code == 403


class TestUserStatus:
    """A token stops working as soon as its user is no longer active."""

    @pytest.mark.parametrize("with_header", [True, False])
    def test_suspended_user_token_rejected(self, client, db_session, tenant, owner, with_header):
        headers = auth_headers(owner, tenant if with_header else None)
        owner.status = UserStatus.SUSPENDED
        db_session.commit()

        response = client.get("/api/v1/clients", headers=headers)
        assert response.status_code == 401
        assert response.json()["error"] == "User account is inactive"

    def test_disabled_user_loses_access(self, client, db_session, tenant, owner_headers):
        technician = make_user(db_session, tenant, "technician")
        technician_headers = auth_headers(technician, tenant)
        assert client.get("/api/v1/clients", headers=technician_headers).status_code == 200

        client.post(f"/api/v1/users/{technician.id}/disable", headers=owner_headers)
        assert client.get("/api/v1/clients", headers=technician_headers).status_code == 401

    def test_deleted_user_token_rejected(self, client, db_session, tenant, owner, owner_headers):
        owner.deleted_at = datetime(2024, 1, 1)
        db_session.commit()
        response = client.get("/api/v1/auth/me", headers=owner_headers)
        assert response.status_code == 401
        assert response.json()["error"] == "User not found"


class TestRateLimit:
    def test_limit_lookup(self):
        assert limit_for("/api/v1/auth/login") == RateLimit(5, 60)
        assert limit_for("/api/v1/wa-gateway/connect") == RateLimit(30, 60)
        assert limit_for("/api/v1/wa-gateway/status") == RateLimit(600, 60)
        assert limit_for("/api/v1/clients") == RateLimit(100, 60)

    def test_login_blocked_after_five(self, client, tenant):
        body = {"email": "nobody@acme.example.com", "password": "whatever-123"}
        headers = {"X-Tenant-Slug": tenant.slug}
        for _ in range(5):
            assert client.post("/api/v1/auth/login", json=body, headers=headers).status_code == 401

        response = client.post("/api/v1/auth/login", json=body, headers=headers)
        assert response.status_code == 429
        assert response.json()["error"] == "Rate limit exceeded"
        assert response.headers["Retry-After"] == "60"
        assert response.headers["X-RateLimit-Remaining"] == "0"

    def test_counters_are_per_tenant(self, client, db_session, plan, tenant):
        other = make_tenant(db_session, "beta", plan)
        body = {"email": "nobody@example.com", "password": "whatever-123"}
        for _ in range(5):
            client.post("/api/v1/auth/login", json=body, headers={"X-Tenant-Slug": tenant.slug})

        response = client.post("/api/v1/auth/login", json=body, headers={"X-Tenant-Slug": other.slug})
        assert response.status_code == 401

    def test_headers_on_allowed_request(self, client, owner_headers):
        response = client.get("/api/v1/clients", headers=owner_headers)
        assert response.headers["X-RateLimit-Limit"] == "100"
        assert response.headers["X-RateLimit-Remaining"] == "99"

    def test_health_not_limited(self, client, fake_redis):
        client.get("/health")
        assert fake_redis.counts == {}


class TestCSRF:
    def test_cookie_request_without_token_rejected(self, client, tenant):
        client.cookies.set("session", "abc")
        response = client.post("/api/v1/client-groups", json={"name": "x"},
                               headers={"X-Tenant-Slug": tenant.slug})
        assert response.status_code == 403
        assert response.json()["error"] == "CSRF token missing or invalid"

    def test_double_submit_passes_to_auth(self, client, tenant):
        client.get("/health")
        token = client.cookies.get("csrf_token")
        assert token

        response = client.post("/api/v1/client-groups", json={"name": "x"},
                               headers={"X-Tenant-Slug": tenant.slug, "X-CSRF-Token": token})
        # CSRF satisfied; authentication is next
        assert response.status_code == 401

    def test_bearer_bypasses(self, client, owner_headers):
        client.cookies.set("session", "abc")
        response = client.post("/api/v1/client-groups", json={"name": "Business"}, headers=owner_headers)
        assert response.status_code == 201


def _mini_app(**body_limits):
    mini = FastAPI()

    @mini.post("/echo")
    async def echo(payload: dict):
        return payload

    @mini.get("/boom")
    async def boom():
        raise RuntimeError("kaboom")

    @mini.get("/slow")
    async def slow():
        await asyncio.sleep(1)
        return {"done": True}

    mini.add_middleware(BodySizeLimitMiddleware, **body_limits)
    mini.add_middleware(RequestTimeoutMiddleware, read_timeout=5, write_timeout=0.1)
    mini.add_middleware(RequestIDMiddleware)
    mini.add_middleware(RecoveryMiddleware)
    return mini


class TestBodySizeAndRecovery:
    @pytest.fixture
    def mini_client(self):
        with TestClient(_mini_app(max_json=64, max_request=128)) as test_client:
            yield test_client

    def test_small_json_passes(self, mini_client):
        assert mini_client.post("/echo", json={"a": 1}).json() == {"a": 1}

    def test_large_json_rejected(self, mini_client):
        response = mini_client.post("/echo", json={"a": "x" * 100})
        assert response.status_code == 413

    def test_unhandled_error_becomes_500_json(self, mini_client):
        response = mini_client.get("/boom")
        assert response.status_code == 500
        assert response.json() == {"error": "Internal server error"}

    def test_chunked_body_counted(self, mini_client):
        # No Content-Length: the size is only known while reading
        chunks = iter([b'{"a": "' + b"x" * 40, b"x" * 40, b'"}'])
        response = mini_client.post("/echo", content=chunks, headers={"Content-Type": "application/json"})
        assert response.status_code == 413
        assert response.json() == {"error": "Request body too large (limit 64 bytes)"}

    def test_small_chunked_body_passes(self, mini_client):
        chunks = iter([b'{"a": ', b"1}"])
        response = mini_client.post("/echo", content=chunks, headers={"Content-Type": "application/json"})
        assert response.json() == {"a": 1}

    def test_bad_content_length(self, mini_client):
        response = mini_client.post("/echo", content=b"{}", headers={
            "Content-Type": "application/json",
            "Content-Length": "lots",
        })
        assert response.status_code == 400

    def test_slow_handler_times_out(self, mini_client):
        response = mini_client.get("/slow")
        assert response.status_code == 503
        assert response.json() == {"error": "Request timed out"}
        assert "X-Request-ID" in response.headers


def _scope(method="POST", content_type=b"application/json"):
    return {
        "type": "http",
        "method": method,
        "path": "/upload",
        "headers": [(b"content-type", content_type)],
        "query_string": b"",
    }


async def _drain_body(scope, receive, send):
    """Bare ASGI endpoint: read the whole body, answer with its size."""
    body = b""
    while True:
        message = await receive()
        body += message.get("body", b"")
        if not message.get("more_body", False):
            break
    payload = json.dumps({"size": len(body)}).encode()
    await send({"type": "http.response.start", "status": 200, "headers": [(b"content-type", b"application/json")]})
    await send({"type": "http.response.body", "body": payload})


def _run(app, receive, scope=None):
    sent = []

    async def send(message):
        sent.append(message)

    asyncio.run(app(scope or _scope(), receive, send))
    start = next(m for m in sent if m["type"] == "http.response.start")
    body = b"".join(m.get("body", b"") for m in sent if m["type"] == "http.response.body")
    return start["status"], json.loads(body)


class TestStreamingLimits:
    def test_stops_reading_past_limit(self):
        pulled = []

        async def receive():
            pulled.append(1)
            return {"type": "http.request", "body": b"x" * 50, "more_body": True}

        app = BodySizeLimitMiddleware(_drain_body, max_json=200)
        status, body = _run(app, receive)

        assert status == 413
        assert body == {"error": "Request body too large (limit 200 bytes)"}
        # 5 chunks of 50 cross 200; an endless body is never drained
        assert len(pulled) == 5

    def test_body_under_limit_passes(self):
        messages = iter([
            {"type": "http.request", "body": b"x" * 50, "more_body": True},
            {"type": "http.request", "body": b"x" * 50, "more_body": False},
        ])

        async def receive():
            return next(messages)

        status, body = _run(BodySizeLimitMiddleware(_drain_body, max_json=200), receive)
        assert status == 200
        assert body == {"size": 100}

    def test_get_is_not_counted(self):
        async def receive():
            return {"type": "http.request", "body": b"x" * 500, "more_body": False}

        app = BodySizeLimitMiddleware(_drain_body, max_request=10)
        assert _run(app, receive, _scope(method="GET"))[0] == 200

    def test_multipart_limit(self):
        async def receive():
            return {"type": "http.request", "body": b"x" * 300, "more_body": False}

        app = BodySizeLimitMiddleware(_drain_body, max_json=100, max_multipart=1000)
        assert _run(app, receive, _scope(content_type=b"multipart/form-data; boundary=z"))[0] == 200
        assert _run(app, receive)[0] == 413


class TestRequestTimeouts:
    def test_slow_body_read(self):
        async def receive():
            await asyncio.sleep(1)
            return {"type": "http.request", "body": b"{}", "more_body": False}

        app = RequestTimeoutMiddleware(_drain_body, read_timeout=0.05, write_timeout=5)
        assert _run(app, receive) == (408, {"error": "Request timeout"})

    def test_read_deadline_covers_whole_body(self):
        async def receive():
            await asyncio.sleep(0.03)
            return {"type": "http.request", "body": b"x", "more_body": True}

        # Each chunk is quick but the body never finishes
        app = RequestTimeoutMiddleware(_drain_body, read_timeout=0.1, write_timeout=5)
        assert _run(app, receive)[0] == 408

    def test_prompt_request_untouched(self):
        async def receive():
            return {"type": "http.request", "body": b"abc", "more_body": False}

        app = RequestTimeoutMiddleware(_drain_body, read_timeout=0.05, write_timeout=0.05)
        assert _run(app, receive) == (200, {"size": 3})

    def test_slow_handler(self):
        async def stalled(scope, receive, send):
            await asyncio.sleep(1)

        async def receive():
            return {"type": "http.request", "body": b"", "more_body": False}

        app = RequestTimeoutMiddleware(stalled, read_timeout=5, write_timeout=0.05)
        assert _run(app, receive) == (503, {"error": "Request timed out"})
