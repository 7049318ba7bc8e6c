"""
Pytest configuration and shared fixtures.

The environment is set before anything from `app` is imported: settings
are cached on first use, and TenantMiddleware opens its own sessions
against app.database, so the tests and the app must share one database.
"""
import os

os.environ["APP_ENV"] = "test"
os.environ["DATABASE_URL"] = "sqlite:///./test_rrnet.db"
os.environ["SCHEDULERS_ENABLED"] = "false"
os.environ["JWT_SECRET"] = "test-jwt-secret-0123456789abcdef0123456789"
os.environ["RRNET_RADIUS_REST_SECRET"] = "test-radius-secret"
os.environ["WA_GATEWAY_ADMIN_TOKEN"] = "test-wa-token"
os.environ["CELERY_TASK_ALWAYS_EAGER"] = "true"

from datetime import datetime, timedelta
from typing import Dict, List, Optional

import pytest
from fastapi.testclient import TestClient

from app.database import Base, SessionLocal, engine, get_db
from app.main import app
import app.middleware.rate_limit as rate_limit_module
from app.core.exceptions import UpstreamError
from app.core.security import get_jwt_manager, hash_password
from app.models.client import Client, ClientGroup
from app.models.plan import Plan
from app.models.tenant import Tenant
from app.models.user import User, UserRole
from app.services.entitlements import EntitlementResolver, set_entitlement_resolver
from app.services.wa_gateway import SendResult

TEST_PASSWORD = "Test123456!"

DEFAULT_FEATURES = ["wa_gateway", "isolir_manual", "isolir_auto", "radius_basic"]
DEFAULT_LIMITS = {
    "max_users": 10,
    "max_clients": 100,
    "max_routers": 2,
    "wa_quota_monthly": 1000,
}

_password_hash: Optional[str] = None


def password_hash() -> str:
    """bcrypt is slow; hash the shared test password once per run."""
    global _password_hash
    if _password_hash is None:
        _password_hash = hash_password(TEST_PASSWORD)
    return _password_hash


# ============================================================================
# Fakes
# ============================================================================

class FakeRedis:
    """The slice of redis-py the rate limiter uses."""

    def __init__(self):
        self.counts: Dict[str, int] = {}
        self.ttls: Dict[str, int] = {}

    def incr(self, key):
        self.counts[key] = self.counts.get(key, 0) + 1
        return self.counts[key]

    def expire(self, key, seconds):
        self.ttls[key] = int(seconds)
        return True

    def ttl(self, key):
        if key not in self.counts:
            return -2
        return self.ttls.get(key, -1)


class RecordingQueue:
    """TaskQueue that keeps the payloads instead of sending them to Celery."""

    def __init__(self):
        self.jobs: List[Dict] = []

    def enqueue_send(self, payload, countdown):
        self.jobs.append(dict(payload, countdown=countdown))


class FakeGateway:
    """
    Scripted WA gateway. `fail_for` phones get ok=false, `down` raises
    UpstreamError for every call.
    """

    def __init__(self, fail_for=(), down: bool = False):
        self.fail_for = set(fail_for)
        self.down = down
        self.sent: List[Dict] = []

    def send(self, tenant_id, to, text):
        if self.down:
            raise UpstreamError("WA gateway unreachable")
        self.sent.append({"tenant_id": tenant_id, "to": to, "text": text})
        if to in self.fail_for:
            return SendResult(ok=False, error="number not on whatsapp")
        return SendResult(ok=True, message_id=f"msg-{len(self.sent)}")

    def connect(self, tenant_id):
        return {"status": "connecting"}

    def status(self, tenant_id):
        return {"status": "connected", "tenant_id": tenant_id}

    def qr(self, tenant_id):
        return {"qr": "data:image/png;base64,AAAA"}


# ============================================================================
# Database / app fixtures
# ============================================================================

@pytest.fixture(scope="function")
def db_session():
    """Fresh schema per test."""
    from app import models  # noqa: F401

    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def client(db_session):
    """TestClient whose routes share the test session."""

    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


@pytest.fixture(autouse=True)
def fake_redis(monkeypatch):
    fake = FakeRedis()
    monkeypatch.setattr(rate_limit_module, "get_redis", lambda: fake)
    return fake


@pytest.fixture(autouse=True)
def entitlement_resolver():
    resolver = EntitlementResolver(timedelta(seconds=60))
    set_entitlement_resolver(resolver)
    yield resolver
    set_entitlement_resolver(None)


@pytest.fixture
def recording_queue():
    return RecordingQueue()


@pytest.fixture
def fake_gateway():
    return FakeGateway()


# ============================================================================
# Seed helpers
# ============================================================================

def make_plan(db, code="pro", features=None, limits=None, **kwargs) -> Plan:
    plan = Plan(
        code=code,
        name=kwargs.pop("name", code.title()),
        features=list(DEFAULT_FEATURES if features is None else features),
        limits=dict(DEFAULT_LIMITS if limits is None else limits),
        price_monthly=kwargs.pop("price_monthly", 500000),
        **kwargs,
    )
    db.add(plan)
    db.commit()
    return plan


def make_tenant(db, slug="acme", plan: Optional[Plan] = None, **kwargs) -> Tenant:
    tenant = Tenant(
        name=kwargs.pop("name", slug.title()),
        slug=slug,
        plan_id=plan.id if plan is not None else None,
        settings=kwargs.pop("settings", {}),
        **kwargs,
    )
    db.add(tenant)
    db.commit()
    return tenant


def make_user(db, tenant: Optional[Tenant], role: str = "owner", email: Optional[str] = None, **kwargs) -> User:
    user = User(
        tenant_id=tenant.id if tenant is not None else None,
        email=email or f"{role}@{tenant.slug if tenant else 'platform'}.example.com",
        password_hash=password_hash(),
        name=kwargs.pop("name", role.title()),
        role=UserRole(role),
        **kwargs,
    )
    db.add(user)
    db.commit()
    return user


def make_group(db, tenant: Tenant, name="Residential") -> ClientGroup:
    group = ClientGroup(tenant_id=tenant.id, name=name)
    db.add(group)
    db.commit()
    return group


def make_client(db, tenant: Tenant, code="CL00001", **kwargs) -> Client:
    client = Client(
        tenant_id=tenant.id,
        client_code=code,
        name=kwargs.pop("name", f"Client {code}"),
        phone=kwargs.pop("phone", "628100000001"),
        monthly_fee=kwargs.pop("monthly_fee", 150000),
        payment_due_day=kwargs.pop("payment_due_day", 10),
        **kwargs,
    )
    db.add(client)
    db.commit()
    return client


def auth_headers(user: User, tenant: Optional[Tenant] = None) -> Dict[str, str]:
    """Bearer token minted straight from the JWT manager, plus the tenant header."""
    tokens = get_jwt_manager().issue_tokens(user.id, user.tenant_id, user.role_code, user.email)
    headers = {"Authorization": f"Bearer {tokens.access_token}"}
    if tenant is not None:
        headers["X-Tenant-Slug"] = tenant.slug
    return headers


@pytest.fixture
def plan(db_session):
    return make_plan(db_session)


@pytest.fixture
def tenant(db_session, plan):
    return make_tenant(db_session, "acme", plan)


@pytest.fixture
def owner(db_session, tenant):
    return make_user(db_session, tenant, "owner")


@pytest.fixture
def owner_headers(owner, tenant):
    return auth_headers(owner, tenant)


@pytest.fixture
def super_admin(db_session):
    return make_user(db_session, None, "super_admin", email="root@example.com")


@pytest.fixture
def frozen_now():
    return datetime(2024, 3, 15, 9, 0, 0)
