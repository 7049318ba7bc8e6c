"""
Billing service tests: money math, invoice lifecycle and payments
"""
import threading
from datetime import date, datetime

import pytest

from app.core.clock import FrozenClock
from app.core.exceptions import ConflictError, InvalidTransitionError, NotFoundError, ValidationError
from app.database import SessionLocal
from app.models.billing import Invoice, InvoiceStatus, Payment, can_transition_invoice
from app.models.client import Discount, ServicePackage
from app.services.billing import (
    BillingService,
    billing_period,
    compute_totals,
    next_due_date,
    percent_of,
)
from conftest import make_client, make_tenant


@pytest.fixture
def clock(frozen_now):
    return FrozenClock(frozen_now)


@pytest.fixture
def billing(clock):
    return BillingService(clock)


@pytest.fixture
def isp(db_session, plan):
    return make_tenant(db_session, "billing-isp", plan, settings={"tax_percent": 11})


@pytest.fixture
def subscriber(db_session, isp):
    return make_client(db_session, isp, "CL00001", monthly_fee=150000, payment_due_day=20)


def _invoice(billing, db, tenant, client, total=100000, status=InvoiceStatus.PENDING):
    return billing.create_invoice(
        db, tenant.id, client.id,
        items=[{"description": "Internet Service", "quantity": 1, "unit_price": total}],
        period_start=date(2024, 3, 1),
        period_end=date(2024, 3, 31),
        due_date=date(2024, 3, 20),
        tax_percent=0,
        status=status,
    )


class TestMoneyMath:
    def test_percent_rounds_half_even(self):
        assert percent_of(150, 1) == 2      # 1.5 -> 2
        assert percent_of(250, 1) == 2      # 2.5 -> 2
        assert percent_of(100000, 11) == 11000

    def test_compute_totals(self):
        assert compute_totals(100000, 11, 0) == (11000, 0, 111000)
        # discount comes off before tax
        assert compute_totals(100000, 10, 20000) == (8000, 20000, 88000)

    def test_discount_capped_at_subtotal(self):
        tax, discount, total = compute_totals(50000, 10, 80000)
        assert discount == 50000
        assert total == 0

    def test_negative_inputs_rejected(self):
        with pytest.raises(ValidationError):
            compute_totals(-1)
        with pytest.raises(ValidationError):
            compute_totals(100, -5)


class TestDueDates:
    def test_same_month_when_not_passed(self):
        assert next_due_date(date(2024, 3, 15), 20) == date(2024, 3, 20)

    def test_today_counts(self):
        assert next_due_date(date(2024, 3, 20), 20) == date(2024, 3, 20)

    def test_rolls_to_next_month(self):
        assert next_due_date(date(2024, 3, 21), 20) == date(2024, 4, 20)

    def test_short_month_uses_last_day(self):
        assert next_due_date(date(2024, 2, 1), 31) == date(2024, 2, 29)
        assert next_due_date(date(2023, 2, 1), 31) == date(2023, 2, 28)

    def test_year_boundary(self):
        assert next_due_date(date(2024, 12, 28), 5) == date(2025, 1, 5)

    def test_billing_period_is_calendar_month(self):
        assert billing_period(date(2024, 2, 10)) == (date(2024, 2, 1), date(2024, 2, 29))


class TestCreateInvoice:
    def test_totals_use_tenant_tax(self, db_session, billing, isp, subscriber):
        invoice = billing.create_invoice(
            db_session, isp.id, subscriber.id,
            items=[
                {"description": "Internet 20 Mbps", "quantity": 1, "unit_price": 150000},
                {"description": "Router rental", "quantity": 2, "unit_price": 25000},
            ],
            period_start=date(2024, 3, 1),
            period_end=date(2024, 3, 31),
            due_date=date(2024, 3, 20),
        )
        assert invoice.subtotal == 200000
        assert invoice.tax_amount == 22000
        assert invoice.total_amount == 222000
        assert invoice.paid_amount == 0
        assert invoice.status == InvoiceStatus.PENDING
        assert [item.amount for item in invoice.items] == [150000, 50000]

    def test_numbers_are_sequential_per_month(self, db_session, billing, isp, subscriber):
        first = _invoice(billing, db_session, isp, subscriber)
        second = _invoice(billing, db_session, isp, subscriber)
        assert first.invoice_number == "INV-202403-0001"
        assert second.invoice_number == "INV-202403-0002"

    def test_numbers_are_per_tenant(self, db_session, billing, isp, subscriber, plan):
        other = make_tenant(db_session, "other-isp", plan)
        other_client = make_client(db_session, other, "CL00001")
        _invoice(billing, db_session, isp, subscriber)
        assert _invoice(billing, db_session, other, other_client).invoice_number == "INV-202403-0001"

    def test_requires_items(self, db_session, billing, isp, subscriber):
        with pytest.raises(ValidationError):
            billing.create_invoice(
                db_session, isp.id, subscriber.id, items=[],
                period_start=date(2024, 3, 1), period_end=date(2024, 3, 31), due_date=date(2024, 3, 20),
            )

    def test_other_tenants_client_not_found(self, db_session, billing, isp, plan):
        other = make_tenant(db_session, "foreign", plan)
        stranger = make_client(db_session, other, "CL00009")
        with pytest.raises(NotFoundError):
            _invoice(billing, db_session, isp, stranger)


class TestInvoiceTransitions:
    def test_draft_issue_then_cancel(self, db_session, billing, isp, subscriber):
        invoice = _invoice(billing, db_session, isp, subscriber, status=InvoiceStatus.DRAFT)
        billing.issue_invoice(db_session, isp.id, invoice.id)
        assert invoice.status == InvoiceStatus.PENDING
        billing.cancel_invoice(db_session, isp.id, invoice.id)
        assert invoice.status == InvoiceStatus.CANCELLED

    def test_draft_is_deleted_not_cancelled(self, db_session, billing, isp, subscriber):
        draft = _invoice(billing, db_session, isp, subscriber, status=InvoiceStatus.DRAFT)
        with pytest.raises(InvalidTransitionError):
            billing.cancel_invoice(db_session, isp.id, draft.id)

    def test_overdue_cannot_be_cancelled(self, db_session, billing, isp, subscriber):
        invoice = _invoice(billing, db_session, isp, subscriber)
        billing.mark_overdue(db_session, isp.id, date(2024, 4, 1))
        db_session.refresh(invoice)
        with pytest.raises(InvalidTransitionError):
            billing.cancel_invoice(db_session, isp.id, invoice.id)

    @pytest.mark.parametrize("current,target,allowed", [
        ("draft", "pending", True),
        ("draft", "cancelled", False),
        ("draft", "paid", False),
        ("pending", "paid", True),
        ("pending", "overdue", True),
        ("pending", "cancelled", True),
        ("pending", "draft", False),
        ("overdue", "paid", True),
        ("overdue", "cancelled", False),
        ("overdue", "pending", False),
        ("paid", "cancelled", False),
        ("cancelled", "pending", False),
    ])
    def test_transition_table(self, current, target, allowed):
        assert can_transition_invoice(current, target) is allowed

    def test_cancelled_is_terminal(self, db_session, billing, isp, subscriber):
        invoice = _invoice(billing, db_session, isp, subscriber)
        billing.cancel_invoice(db_session, isp.id, invoice.id)
        with pytest.raises(InvalidTransitionError):
            billing.issue_invoice(db_session, isp.id, invoice.id)

    def test_cannot_cancel_with_payments(self, db_session, billing, isp, subscriber):
        invoice = _invoice(billing, db_session, isp, subscriber)
        billing.record_payment(db_session, isp.id, invoice.id, 40000)
        with pytest.raises(ConflictError):
            billing.cancel_invoice(db_session, isp.id, invoice.id)

    def test_only_drafts_deleted(self, db_session, billing, isp, subscriber):
        pending = _invoice(billing, db_session, isp, subscriber)
        with pytest.raises(ConflictError):
            billing.delete_invoice(db_session, isp.id, pending.id)

        draft = _invoice(billing, db_session, isp, subscriber, status=InvoiceStatus.DRAFT)
        billing.delete_invoice(db_session, isp.id, draft.id)
        assert db_session.query(Invoice).filter(Invoice.id == draft.id).first() is None

    def test_mark_overdue(self, db_session, billing, isp, subscriber):
        invoice = _invoice(billing, db_session, isp, subscriber)
        assert billing.mark_overdue(db_session, isp.id, date(2024, 3, 20)) == 0
        assert billing.mark_overdue(db_session, isp.id, date(2024, 3, 21)) == 1
        db_session.refresh(invoice)
        assert invoice.status == InvoiceStatus.OVERDUE


class TestRecordPayment:
    def test_partial_then_full(self, db_session, billing, isp, subscriber):
        invoice = _invoice(billing, db_session, isp, subscriber, total=100000)

        billing.record_payment(db_session, isp.id, invoice.id, 40000)
        db_session.refresh(invoice)
        assert invoice.paid_amount == 40000
        assert invoice.status == InvoiceStatus.PENDING
        assert invoice.remaining_amount == 60000

        billing.record_payment(db_session, isp.id, invoice.id, 60000, method="bank_transfer", reference="TRX-1")
        db_session.refresh(invoice)
        assert invoice.paid_amount == 100000
        assert invoice.status == InvoiceStatus.PAID
        assert invoice.paid_at is not None

    def test_overpayment_rejected_and_nothing_written(self, db_session, billing, isp, subscriber):
        invoice = _invoice(billing, db_session, isp, subscriber, total=100000)
        with pytest.raises(ConflictError):
            billing.record_payment(db_session, isp.id, invoice.id, 100001)

        db_session.refresh(invoice)
        assert invoice.paid_amount == 0
        assert db_session.query(Payment).count() == 0

    def test_paid_invoice_rejects_more(self, db_session, billing, isp, subscriber):
        invoice = _invoice(billing, db_session, isp, subscriber, total=50000)
        billing.record_payment(db_session, isp.id, invoice.id, 50000)
        with pytest.raises(ConflictError):
            billing.record_payment(db_session, isp.id, invoice.id, 1)

    def test_draft_and_cancelled_not_payable(self, db_session, billing, isp, subscriber):
        draft = _invoice(billing, db_session, isp, subscriber, status=InvoiceStatus.DRAFT)
        with pytest.raises(ConflictError):
            billing.record_payment(db_session, isp.id, draft.id, 1000)

        cancelled = _invoice(billing, db_session, isp, subscriber)
        billing.cancel_invoice(db_session, isp.id, cancelled.id)
        with pytest.raises(ConflictError):
            billing.record_payment(db_session, isp.id, cancelled.id, 1000)

    def test_overdue_invoice_is_payable(self, db_session, billing, isp, subscriber):
        invoice = _invoice(billing, db_session, isp, subscriber, total=100000)
        billing.mark_overdue(db_session, isp.id, date(2024, 4, 1))
        billing.record_payment(db_session, isp.id, invoice.id, 100000)
        db_session.refresh(invoice)
        assert invoice.status == InvoiceStatus.PAID

    @pytest.mark.parametrize("amount", [0, -10])
    def test_non_positive_amount(self, db_session, billing, isp, subscriber, amount):
        invoice = _invoice(billing, db_session, isp, subscriber)
        with pytest.raises(ValidationError):
            billing.record_payment(db_session, isp.id, invoice.id, amount)

    def test_unknown_method(self, db_session, billing, isp, subscriber):
        invoice = _invoice(billing, db_session, isp, subscriber)
        with pytest.raises(ValidationError):
            billing.record_payment(db_session, isp.id, invoice.id, 1000, method="barter")

    def test_cross_tenant_invoice_not_found(self, db_session, billing, isp, subscriber, plan):
        invoice = _invoice(billing, db_session, isp, subscriber)
        other = make_tenant(db_session, "thief", plan)
        with pytest.raises(NotFoundError):
            billing.record_payment(db_session, other.id, invoice.id, 1000)


class TestMonthlyGeneration:
    def test_generates_for_next_due_date(self, db_session, billing, isp, subscriber, frozen_now):
        invoice, created = billing.generate_monthly_invoice(db_session, isp.id, subscriber, frozen_now)
        assert created
        assert invoice.due_date == date(2024, 3, 20)
        assert invoice.period_start == date(2024, 3, 1)
        assert invoice.subtotal == 150000
        assert invoice.total_amount == 166500  # 11% tax

    def test_idempotent_per_period(self, db_session, billing, isp, subscriber, frozen_now):
        first, created = billing.generate_monthly_invoice(db_session, isp.id, subscriber, frozen_now)
        again, created_again = billing.generate_monthly_invoice(db_session, isp.id, subscriber, frozen_now)
        assert created and not created_again
        assert again.id == first.id
        assert db_session.query(Invoice).count() == 1

    def test_service_package_and_global_discount(self, db_session, billing, isp, frozen_now):
        package = ServicePackage(tenant_id=isp.id, name="Home 50", price_monthly=300000)
        db_session.add(package)
        db_session.add(Discount(tenant_id=isp.id, name="Ramadan", discount_type="percent",
                                value=10, is_global=True))
        db_session.commit()
        subscriber = make_client(db_session, isp, "CL00002", service_package_id=package.id, payment_due_day=25)

        invoice, _ = billing.generate_monthly_invoice(db_session, isp.id, subscriber, frozen_now)
        assert invoice.items[0].description == "Internet Service - Home 50"
        assert invoice.subtotal == 300000
        assert invoice.discount_amount == 30000
        assert invoice.tax_amount == 29700
        assert invoice.total_amount == 299700

    def test_no_fee_configured(self, db_session, billing, isp, frozen_now):
        free = make_client(db_session, isp, "CL00003", monthly_fee=0)
        with pytest.raises(ValidationError):
            billing.generate_monthly_invoice(db_session, isp.id, free, frozen_now)


class TestReports:
    def test_summary(self, db_session, billing, isp, subscriber, frozen_now):
        paid = _invoice(billing, db_session, isp, subscriber, total=100000)
        billing.record_payment(db_session, isp.id, paid.id, 100000)
        partial = _invoice(billing, db_session, isp, subscriber, total=80000)
        billing.record_payment(db_session, isp.id, partial.id, 30000)
        _invoice(billing, db_session, isp, subscriber, total=999, status=InvoiceStatus.DRAFT)

        summary = billing.summary(db_session, isp.id, now=frozen_now)
        assert summary["invoice_counts"]["paid"] == 1
        assert summary["invoice_counts"]["pending"] == 1
        assert summary["invoice_counts"]["draft"] == 1
        assert summary["total_billed"] == 180000
        assert summary["total_paid"] == 130000
        assert summary["total_outstanding"] == 50000
        assert summary["collected_this_month"] == 130000

    def test_payment_matrix(self, db_session, billing, isp, subscriber, frozen_now):
        invoice = _invoice(billing, db_session, isp, subscriber, total=100000)
        billing.record_payment(db_session, isp.id, invoice.id, 100000)

        entries = billing.payment_matrix(db_session, isp.id, 2024, now=frozen_now)
        assert len(entries) == 1
        months = entries[0]["months"]
        assert len(months) == 12
        assert months[2]["status"] == "paid_on_time"
        assert months[0]["status"] == "empty"

    def test_matrix_year_range(self, db_session, billing, isp):
        with pytest.raises(ValidationError):
            billing.payment_matrix(db_session, isp.id, 1999)

    def test_matrix_cell_status(self):
        invoice = Invoice(status=InvoiceStatus.PENDING, due_date=date(2024, 3, 20))
        assert BillingService.matrix_cell_status(invoice, date(2024, 3, 20)) == "pending"
        assert BillingService.matrix_cell_status(invoice, date(2024, 3, 21)) == "overdue"

        invoice.status = InvoiceStatus.PAID
        invoice.paid_at = datetime(2024, 3, 25, 10, 0)
        assert BillingService.matrix_cell_status(invoice, date(2024, 4, 1)) == "paid_late"


class TestConcurrentPayments:
    """Parallel payers on one invoice, each on its own session."""

    def _pay_in_parallel(self, billing, tenant_id, invoice_id, amounts):
        barrier = threading.Barrier(len(amounts))
        outcomes = []
        lock = threading.Lock()

        def pay(amount):
            db = SessionLocal()
            try:
                barrier.wait()
                billing.record_payment(db, tenant_id, invoice_id, amount)
                outcome = "ok"
            except ConflictError:
                outcome = "conflict"
            except Exception as e:  # surfaced by the assertion below
                outcome = repr(e)
            finally:
                db.close()
            with lock:
                outcomes.append(outcome)

        threads = [threading.Thread(target=pay, args=(amount,)) for amount in amounts]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)
        return sorted(outcomes)

    def test_surplus_payments_conflict(self, db_session, billing, isp, subscriber):
        invoice = _invoice(billing, db_session, isp, subscriber, total=100000)

        outcomes = self._pay_in_parallel(billing, isp.id, invoice.id, [30000] * 5)
        assert outcomes == ["conflict", "conflict", "ok", "ok", "ok"]

        db_session.refresh(invoice)
        assert invoice.paid_amount == 90000
        assert invoice.paid_amount <= invoice.total_amount
        assert invoice.status == InvoiceStatus.PENDING
        assert db_session.query(Payment).filter(Payment.invoice_id == invoice.id).count() == 3

    def test_exact_total_reached_once(self, db_session, billing, isp, subscriber):
        invoice = _invoice(billing, db_session, isp, subscriber, total=100000)

        outcomes = self._pay_in_parallel(billing, isp.id, invoice.id, [25000] * 6)
        assert outcomes == ["conflict", "conflict", "ok", "ok", "ok", "ok"]

        db_session.refresh(invoice)
        assert invoice.paid_amount == 100000
        assert invoice.status == InvoiceStatus.PAID
        assert invoice.paid_at is not None
