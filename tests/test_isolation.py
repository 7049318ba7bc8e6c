"""
Isolation state machine tests
"""
from datetime import date, datetime, timedelta

import pytest

from app.core.clock import FrozenClock
from app.core.exceptions import InvalidTransitionError, NotFoundError, ValidationError
from app.models.billing import IsolirLog, InvoiceStatus
from app.models.client import ClientStatus, can_transition_client
from app.models.tenant import TenantStatus
from app.services.billing import BillingService
from app.services.isolation import IsolationService
from conftest import make_client, make_tenant

NOW = datetime(2024, 3, 25, 8, 0, 0)


@pytest.fixture
def clock():
    return FrozenClock(NOW)


@pytest.fixture
def billing(clock):
    return BillingService(clock)


@pytest.fixture
def isolation(clock, billing):
    return IsolationService(clock, billing)


@pytest.fixture
def isp(db_session, plan):
    return make_tenant(db_session, "iso-isp", plan)


def _overdue_invoice(billing, db, tenant, client, due=date(2024, 3, 20), total=150000):
    return billing.create_invoice(
        db, tenant.id, client.id,
        items=[{"description": "Internet Service", "quantity": 1, "unit_price": total}],
        period_start=date(due.year, due.month, 1),
        period_end=date(due.year, due.month, 28),
        due_date=due,
        tax_percent=0,
    )


class TestTransitionTable:
    @pytest.mark.parametrize("current,target,allowed", [
        ("active", "isolir", True),
        ("active", "suspended", True),
        ("isolir", "active", True),
        ("isolir", "suspended", False),
        ("suspended", "isolir", False),
        ("terminated", "active", False),
        ("active", "active", False),
    ])
    def test_table(self, current, target, allowed):
        assert can_transition_client(current, target) is allowed


class TestSweep:
    def test_isolates_client_with_past_due_invoice(self, db_session, billing, isolation, isp):
        client = make_client(db_session, isp, "CL00001")
        invoice = _overdue_invoice(billing, db_session, isp, client)

        totals = isolation.sweep(db_session)

        db_session.refresh(client)
        db_session.refresh(invoice)
        assert totals["isolated"] == 1
        assert totals["overdue_marked"] == 1
        assert client.status == ClientStatus.ISOLIR
        assert client.isolir_reason == f"overdue:{invoice.invoice_number}"
        assert invoice.status == InvoiceStatus.OVERDUE

        log = db_session.query(IsolirLog).filter(IsolirLog.client_id == client.id).one()
        assert log.action == "isolate"
        assert log.is_automatic
        assert log.invoice_id == invoice.id

    def test_not_yet_due_is_left_alone(self, db_session, billing, isolation, isp):
        client = make_client(db_session, isp, "CL00001")
        _overdue_invoice(billing, db_session, isp, client, due=date(2024, 3, 25))

        assert isolation.sweep(db_session)["isolated"] == 0
        db_session.refresh(client)
        assert client.status == ClientStatus.ACTIVE

    def test_reactivates_once_paid(self, db_session, billing, isolation, isp):
        client = make_client(db_session, isp, "CL00001")
        invoice = _overdue_invoice(billing, db_session, isp, client)
        isolation.sweep(db_session)

        billing.record_payment(db_session, isp.id, invoice.id, invoice.total_amount)
        totals = isolation.sweep(db_session)

        db_session.refresh(client)
        assert totals["reactivated"] == 1
        assert client.status == ClientStatus.ACTIVE
        assert client.isolir_reason is None
        assert db_session.query(IsolirLog).filter(IsolirLog.client_id == client.id).count() == 2

    def test_partial_payment_keeps_isolation(self, db_session, billing, isolation, isp):
        client = make_client(db_session, isp, "CL00001")
        invoice = _overdue_invoice(billing, db_session, isp, client)
        isolation.sweep(db_session)

        billing.record_payment(db_session, isp.id, invoice.id, 1000)
        assert isolation.sweep(db_session)["reactivated"] == 0
        db_session.refresh(client)
        assert client.status == ClientStatus.ISOLIR

    def test_manual_isolation_is_not_auto_lifted(self, db_session, isolation, isp):
        client = make_client(db_session, isp, "CL00001")
        isolation.isolate_client(db_session, isp.id, client.id, reason="abuse report")

        assert isolation.sweep(db_session)["reactivated"] == 0
        db_session.refresh(client)
        assert client.status == ClientStatus.ISOLIR

    def test_suspended_and_deleted_untouched(self, db_session, billing, isolation, isp):
        suspended = make_client(db_session, isp, "CL00001", status=ClientStatus.SUSPENDED)
        deleted = make_client(db_session, isp, "CL00002")
        _overdue_invoice(billing, db_session, isp, suspended)
        _overdue_invoice(billing, db_session, isp, deleted)
        deleted.deleted_at = NOW - timedelta(days=1)
        db_session.commit()

        assert isolation.sweep(db_session)["isolated"] == 0
        db_session.refresh(suspended)
        assert suspended.status == ClientStatus.SUSPENDED

    def test_suspended_tenant_skipped(self, db_session, billing, isolation, plan):
        frozen = make_tenant(db_session, "frozen-isp", plan, status=TenantStatus.SUSPENDED)
        client = make_client(db_session, frozen, "CL00001")
        _overdue_invoice(billing, db_session, frozen, client)

        assert isolation.sweep(db_session)["tenants"] == 0
        db_session.refresh(client)
        assert client.status == ClientStatus.ACTIVE

    def test_second_sweep_is_a_no_op(self, db_session, billing, isolation, isp):
        client = make_client(db_session, isp, "CL00001")
        _overdue_invoice(billing, db_session, isp, client)
        isolation.sweep(db_session)

        totals = isolation.sweep(db_session)
        assert totals["isolated"] == 0
        assert totals["reactivated"] == 0
        assert db_session.query(IsolirLog).count() == 1


class TestManualStatusChange:
    def test_suspend_and_back(self, db_session, isolation, isp):
        client = make_client(db_session, isp, "CL00001")
        isolation.change_status(db_session, isp.id, client.id, ClientStatus.SUSPENDED)
        assert client.status == ClientStatus.SUSPENDED
        isolation.change_status(db_session, isp.id, client.id, ClientStatus.ACTIVE)
        assert client.status == ClientStatus.ACTIVE

    def test_isolir_via_status_change_is_logged(self, db_session, isolation, isp):
        client = make_client(db_session, isp, "CL00001")
        isolation.change_status(db_session, isp.id, client.id, ClientStatus.ISOLIR, reason="manual check",
                                user_id="operator-1")
        log = isolation.logs_for(db_session, isp.id, client.id)[0]
        assert not log.is_automatic
        assert log.created_by == "operator-1"
        assert log.reason == "manual check"

    def test_invalid_transition(self, db_session, isolation, isp):
        client = make_client(db_session, isp, "CL00001", status=ClientStatus.SUSPENDED)
        with pytest.raises(InvalidTransitionError):
            isolation.change_status(db_session, isp.id, client.id, ClientStatus.ISOLIR)
        db_session.refresh(client)
        assert client.status == ClientStatus.SUSPENDED

    def test_terminated_is_absorbing(self, db_session, isolation, isp):
        client = make_client(db_session, isp, "CL00001")
        isolation.change_status(db_session, isp.id, client.id, ClientStatus.TERMINATED)
        with pytest.raises(InvalidTransitionError):
            isolation.change_status(db_session, isp.id, client.id, ClientStatus.ACTIVE)

    def test_unknown_status(self, db_session, isolation, isp):
        client = make_client(db_session, isp, "CL00001")
        with pytest.raises(ValidationError):
            isolation.change_status(db_session, isp.id, client.id, "paused")

    def test_other_tenant_not_found(self, db_session, isolation, isp, plan):
        other = make_tenant(db_session, "other", plan)
        client = make_client(db_session, other, "CL00001")
        with pytest.raises(NotFoundError):
            isolation.change_status(db_session, isp.id, client.id, ClientStatus.SUSPENDED)
