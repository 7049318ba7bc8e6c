"""
RADIUS REST tests: voucher auth, accounting and the secret gate.
"""
from datetime import datetime, timedelta

import pytest

from app.core.clock import FrozenClock
from app.core.exceptions import NASNotRegisteredError
from app.models.radius import RadiusAuthAttempt, RadiusSession, Router, Voucher, VoucherPackage, VoucherStatus
from app.schemas.radius import RadiusAcctRequest, RadiusAuthRequest
from app.services.radius import RadiusService, secret_matches
from conftest import auth_headers, make_tenant, make_user

NOW = datetime(2024, 3, 15, 9, 0, 0)
SECRET = {"X-RRNET-RADIUS-SECRET": "test-radius-secret"}


@pytest.fixture
def router(db_session, tenant):
    row = Router(tenant_id=tenant.id, name="Hotspot-1", nas_identifier="hs-1", nas_ip="10.0.0.1")
    db_session.add(row)
    db_session.commit()
    return row


@pytest.fixture
def package(db_session, tenant):
    row = VoucherPackage(tenant_id=tenant.id, name="Daily-2M", download_kbps=2048, upload_kbps=1024,
                         duration_hours=24)
    db_session.add(row)
    db_session.commit()
    return row


@pytest.fixture
def voucher(db_session, tenant, package):
    row = Voucher(tenant_id=tenant.id, package_id=package.id, code="ABC123", password="pw77")
    db_session.add(row)
    db_session.commit()
    return row


@pytest.fixture
def clock():
    return FrozenClock(NOW)


@pytest.fixture
def radius(clock):
    return RadiusService(clock)


def auth_request(user="ABC123", password="pw77", nas_id="hs-1", nas_ip="10.0.0.1"):
    return RadiusAuthRequest(**{
        "User-Name": user,
        "User-Password": password,
        "NAS-Identifier": nas_id,
        "NAS-IP-Address": nas_ip,
    })


def acct_request(status="Start", session_id="sess-1", user="ABC123", **extra):
    body = {
        "Acct-Status-Type": status,
        "Acct-Session-Id": session_id,
        "User-Name": user,
        "NAS-Identifier": "hs-1",
        "NAS-IP-Address": "10.0.0.1",
    }
    body.update(extra)
    return RadiusAcctRequest(**body)


class TestSecret:
    def test_secret_matches(self):
        assert secret_matches("s3cret", "s3cret")
        assert not secret_matches("s3cret", "other")
        assert not secret_matches("s3cret", None)
        assert not secret_matches("", "")


class TestRouterResolution:
    def test_by_identifier_updates_ip(self, db_session, radius, router):
        found = radius.resolve_router(db_session, "hs-1", "10.9.9.9")
        assert found.id == router.id
        db_session.refresh(router)
        assert router.nas_ip == "10.9.9.9"

    def test_by_ip_fallback(self, db_session, radius, router):
        assert radius.resolve_router(db_session, None, "10.0.0.1").id == router.id

    def test_revoked_router(self, db_session, radius, router):
        router.is_revoked = True
        db_session.commit()
        with pytest.raises(NASNotRegisteredError):
            radius.resolve_router(db_session, "hs-1", "10.0.0.1")


class TestAuthenticate:
    def test_accept_with_rate_limit(self, db_session, radius, router, voucher):
        decision = radius.authenticate(db_session, auth_request())
        assert decision.accepted
        assert decision.reply["Mikrotik-Rate-Limit"] == "2048k/1024k"
        assert "Class" not in decision.reply

        attempt = db_session.query(RadiusAuthAttempt).one()
        assert attempt.accepted
        assert attempt.voucher_id == voucher.id

    def test_auth_only_package_replies_with_class(self, db_session, radius, router, voucher, package):
        package.rate_limit_mode = "radius_auth_only"
        db_session.commit()
        decision = radius.authenticate(db_session, auth_request())
        assert decision.reply["Class"] == "Daily-2M"
        assert "Mikrotik-Rate-Limit" not in decision.reply

    @pytest.mark.parametrize("user,password,reason", [
        ("NOPE", "pw77", "voucher not found"),
        ("ABC123", "wrong", "password incorrect"),
    ])
    def test_reject_reasons(self, db_session, radius, router, voucher, user, password, reason):
        decision = radius.authenticate(db_session, auth_request(user=user, password=password))
        assert not decision.accepted
        assert decision.message == f"Voucher rejected: {reason}"
        assert db_session.query(RadiusAuthAttempt).one().reason == reason

    def test_disabled_voucher(self, db_session, radius, router, voucher):
        voucher.status = VoucherStatus.DISABLED
        db_session.commit()
        assert not radius.authenticate(db_session, auth_request()).accepted

    def test_voucher_bound_to_other_router(self, db_session, radius, tenant, router, voucher):
        other = Router(tenant_id=tenant.id, name="Hotspot-2", nas_identifier="hs-2", nas_ip="10.0.0.2")
        db_session.add(other)
        db_session.commit()
        voucher.router_id = other.id
        db_session.commit()

        decision = radius.authenticate(db_session, auth_request())
        assert decision.message == "Voucher rejected: voucher not valid on this router"

    def test_voucher_of_other_tenant_not_found(self, db_session, radius, plan, router, package):
        other = make_tenant(db_session, "beta", plan)
        db_session.add(Voucher(tenant_id=other.id, package_id=package.id, code="XYZ", password="pw"))
        db_session.commit()
        decision = radius.authenticate(db_session, auth_request(user="XYZ", password="pw"))
        assert decision.message == "Voucher rejected: voucher not found"

    def test_unknown_nas(self, db_session, radius, router):
        with pytest.raises(NASNotRegisteredError):
            radius.authenticate(db_session, auth_request(nas_id="ghost", nas_ip="192.0.2.1"))


class TestAccounting:
    def test_first_start_activates_voucher(self, db_session, radius, router, voucher):
        radius.account(db_session, acct_request())

        db_session.refresh(voucher)
        assert voucher.status == VoucherStatus.USED
        assert voucher.used_at == NOW
        assert voucher.expires_at == NOW + timedelta(hours=24)

    def test_second_start_does_not_extend(self, db_session, radius, clock, router, voucher):
        radius.account(db_session, acct_request(session_id="sess-1"))
        clock.advance(timedelta(hours=2))
        radius.account(db_session, acct_request(session_id="sess-2"))

        db_session.refresh(voucher)
        assert voucher.used_at == NOW
        assert voucher.expires_at == NOW + timedelta(hours=24)

    def test_expired_after_duration(self, db_session, radius, clock, router, voucher):
        radius.account(db_session, acct_request())
        db_session.refresh(voucher)
        clock.advance(timedelta(hours=24))

        decision = radius.authenticate(db_session, auth_request())
        assert decision.message == "Voucher rejected: voucher expired"
        db_session.refresh(voucher)
        assert voucher.status == VoucherStatus.EXPIRED

    def test_session_upsert_and_stop(self, db_session, radius, clock, router, voucher):
        radius.account(db_session, acct_request())
        clock.advance(timedelta(minutes=5))
        radius.account(db_session, acct_request("Interim-Update", **{"Acct-Input-Octets": "1024",
                                                                      "Acct-Session-Time": 300}))
        clock.advance(timedelta(minutes=5))
        radius.account(db_session, acct_request("Stop", **{"Acct-Terminate-Cause": "User-Request",
                                                           "Acct-Output-Octets": ""}))

        session = db_session.query(RadiusSession).one()
        assert session.started_at == NOW
        assert session.stopped_at == NOW + timedelta(minutes=10)
        assert session.input_octets == 1024
        assert session.session_time == 300
        assert session.output_octets is None
        assert session.terminate_cause == "User-Request"

    def test_stop_does_not_activate(self, db_session, radius, router, voucher):
        radius.account(db_session, acct_request("Stop"))
        db_session.refresh(voucher)
        assert voucher.used_at is None

    def test_unknown_status_type_rejected(self):
        with pytest.raises(ValueError):
            acct_request("Accounting-On")


class TestRadiusEndpoints:
    def test_missing_secret(self, client, router, voucher):
        response = client.post("/api/v1/radius/auth", json={"User-Name": "ABC123", "User-Password": "pw77",
                                                            "NAS-Identifier": "hs-1"})
        assert response.status_code == 401
        assert response.json() == {"error": "Invalid RADIUS secret"}

    def test_accept(self, client, router, voucher):
        response = client.post("/api/v1/radius/auth", json={
            "User-Name": "ABC123", "User-Password": "pw77", "NAS-Identifier": "hs-1",
        }, headers=SECRET)
        assert response.status_code == 200
        assert response.json()["Mikrotik-Rate-Limit"] == "2048k/1024k"

    def test_reject_is_401_reply_message(self, client, router, voucher):
        response = client.post("/api/v1/radius/auth", json={
            "User-Name": "ABC123", "User-Password": "nope", "NAS-Identifier": "hs-1",
        }, headers=SECRET)
        assert response.status_code == 401
        assert response.json() == {"Reply-Message": "Voucher rejected: password incorrect"}

    def test_unknown_nas_is_403(self, client, router):
        response = client.post("/api/v1/radius/auth", json={
            "User-Name": "ABC123", "User-Password": "pw77", "NAS-Identifier": "ghost",
        }, headers=SECRET)
        assert response.status_code == 403

    def test_acct_is_204(self, client, db_session, router, voucher):
        response = client.post("/api/v1/radius/acct", json={
            "Acct-Status-Type": "Start", "Acct-Session-Id": "s-1", "User-Name": "ABC123",
            "NAS-Identifier": "hs-1",
        }, headers=SECRET)
        assert response.status_code == 204
        db_session.refresh(voucher)
        assert voucher.status == VoucherStatus.USED

    def test_acct_bad_status_type_is_400(self, client, router):
        response = client.post("/api/v1/radius/acct", json={
            "Acct-Status-Type": "Bogus", "Acct-Session-Id": "s-1", "NAS-Identifier": "hs-1",
        }, headers=SECRET)
        assert response.status_code == 400

    def test_sessions_and_attempts_listing(self, client, db_session, tenant, owner_headers, router, voucher):
        client.post("/api/v1/radius/auth", json={
            "User-Name": "ABC123", "User-Password": "pw77", "NAS-Identifier": "hs-1",
        }, headers=SECRET)
        client.post("/api/v1/radius/acct", json={
            "Acct-Status-Type": "Start", "Acct-Session-Id": "s-1", "User-Name": "ABC123",
            "NAS-Identifier": "hs-1",
        }, headers=SECRET)

        sessions = client.get("/api/v1/radius/sessions", params={"active": True}, headers=owner_headers).json()
        assert [s["acct_session_id"] for s in sessions] == ["s-1"]

        attempts = client.get("/api/v1/radius/auth-attempts", headers=owner_headers).json()
        assert len(attempts) == 1
        assert attempts[0]["accepted"] is True

    def test_listing_needs_network_view(self, client, db_session, tenant):
        headers = auth_headers(make_user(db_session, tenant, "finance"), tenant)
        assert client.get("/api/v1/radius/sessions", headers=headers).status_code == 403
