"""
Billing Service

Invoice lifecycle, payment application and billing reports.

MONEY: every amount is an int in the minor unit. Percentages are applied
with Decimal and rounded half-even; floats never touch an amount.

CONCURRENCY: payments against one invoice serialize on the invoice row.
The row is locked with SELECT ... FOR UPDATE where the database supports
it, and the paid_amount increment is a conditional UPDATE so the ceiling
holds even where it does not (SQLite).
"""
import calendar
from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_EVEN
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.clock import Clock, system_clock
from app.core.exceptions import (
    ClientNotFoundError,
    ConflictError,
    InvalidTransitionError,
    InvoiceNotFoundError,
    PaymentNotFoundError,
    ValidationError,
)
from app.models.billing import (
    Invoice,
    InvoiceItem,
    InvoiceStatus,
    Payment,
    PaymentMethod,
    can_transition_invoice,
)
from app.models.client import Client, Discount, DiscountType
from app.models.tenant import Tenant
import logging

logger = logging.getLogger(__name__)

INVOICE_NUMBER_RETRIES = 5
MAX_PAGE_SIZE = 100


def _round(value: Decimal) -> int:
    return int(value.quantize(Decimal(1), rounding=ROUND_HALF_EVEN))


def percent_of(amount: int, percent) -> int:
    """`percent`% of `amount`, rounded half-even."""
    return _round(Decimal(int(amount)) * Decimal(str(percent)) / Decimal(100))


def compute_totals(subtotal: int, tax_percent=0, discount: int = 0) -> Tuple[int, int, int]:
    """
    Returns (tax, discount, total).

    The discount is taken off before tax and is capped at the subtotal, so
    total = subtotal + tax - discount is never negative.
    """
    if subtotal < 0:
        raise ValidationError("Subtotal must not be negative")
    if Decimal(str(tax_percent)) < 0:
        raise ValidationError("Tax percent must not be negative")
    discount = min(max(int(discount), 0), subtotal)
    tax = percent_of(subtotal - discount, tax_percent)
    return tax, discount, subtotal + tax - discount


def next_due_date(on_or_after: date, due_day: int) -> date:
    """
    The first calendar day `due_day` on or after `on_or_after`.

    Months shorter than due_day use their last day (31 -> Feb 28/29).
    """
    due_day = min(max(int(due_day or 1), 1), 31)
    year, month = on_or_after.year, on_or_after.month
    for _ in range(2):
        last = calendar.monthrange(year, month)[1]
        candidate = date(year, month, min(due_day, last))
        if candidate >= on_or_after:
            return candidate
        year, month = (year + 1, 1) if month == 12 else (year, month + 1)
    raise AssertionError("unreachable")


def billing_period(due: date) -> Tuple[date, date]:
    """The calendar month containing the due date."""
    last = calendar.monthrange(due.year, due.month)[1]
    return date(due.year, due.month, 1), date(due.year, due.month, last)


def invoice_number_prefix(period_start: date) -> str:
    return f"INV-{period_start.year:04d}{period_start.month:02d}-"


class BillingService:
    """
    Invoices and payments for one tenant at a time.

    Every public method takes the tenant id explicitly and filters by it.
    Methods that write commit their own transaction.
    """

    def __init__(self, clock: Clock = system_clock):
        self.clock = clock

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_invoice(self, db: Session, tenant_id: str, invoice_id: str) -> Invoice:
        invoice = db.query(Invoice).filter(
            Invoice.id == invoice_id,
            Invoice.tenant_id == tenant_id,
        ).first()
        if not invoice:
            raise InvoiceNotFoundError(invoice_id)
        return invoice

    def get_payment(self, db: Session, tenant_id: str, payment_id: str) -> Payment:
        payment = db.query(Payment).filter(
            Payment.id == payment_id,
            Payment.tenant_id == tenant_id,
        ).first()
        if not payment:
            raise PaymentNotFoundError(payment_id)
        return payment

    def _get_client(self, db: Session, tenant_id: str, client_id: str) -> Client:
        client = db.query(Client).filter(
            Client.id == client_id,
            Client.tenant_id == tenant_id,
            Client.deleted_at.is_(None),
        ).first()
        if not client:
            raise ClientNotFoundError(client_id)
        return client

    def list_invoices(
        self,
        db: Session,
        tenant_id: str,
        status: Optional[str] = None,
        client_id: Optional[str] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> Tuple[List[Invoice], int]:
        page_size = min(max(page_size, 1), MAX_PAGE_SIZE)
        query = db.query(Invoice).filter(Invoice.tenant_id == tenant_id)
        if status:
            if status not in InvoiceStatus.ALL:
                raise ValidationError(f"Unknown invoice status: {status}")
            query = query.filter(Invoice.status == status)
        if client_id:
            query = query.filter(Invoice.client_id == client_id)
        total = query.count()
        items = (
            query.order_by(Invoice.created_at.desc())
            .offset((max(page, 1) - 1) * page_size)
            .limit(page_size)
            .all()
        )
        return items, total

    def list_overdue(self, db: Session, tenant_id: str, today: Optional[date] = None) -> List[Invoice]:
        """Invoices marked overdue plus pending ones already past due."""
        today = today or self.clock.now().date()
        return db.query(Invoice).filter(
            Invoice.tenant_id == tenant_id,
            Invoice.paid_amount < Invoice.total_amount,
            (Invoice.status == InvoiceStatus.OVERDUE)
            | ((Invoice.status == InvoiceStatus.PENDING) & (Invoice.due_date < today)),
        ).order_by(Invoice.due_date.asc()).all()

    def list_payments(
        self,
        db: Session,
        tenant_id: str,
        invoice_id: Optional[str] = None,
        client_id: Optional[str] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> Tuple[List[Payment], int]:
        page_size = min(max(page_size, 1), MAX_PAGE_SIZE)
        query = db.query(Payment).filter(Payment.tenant_id == tenant_id)
        if invoice_id:
            query = query.filter(Payment.invoice_id == invoice_id)
        if client_id:
            query = query.filter(Payment.client_id == client_id)
        total = query.count()
        items = (
            query.order_by(Payment.received_at.desc())
            .offset((max(page, 1) - 1) * page_size)
            .limit(page_size)
            .all()
        )
        return items, total

    def invoice_payments(self, db: Session, tenant_id: str, invoice_id: str) -> List[Payment]:
        self.get_invoice(db, tenant_id, invoice_id)
        return db.query(Payment).filter(
            Payment.tenant_id == tenant_id,
            Payment.invoice_id == invoice_id,
        ).order_by(Payment.received_at.asc()).all()

    # ------------------------------------------------------------------
    # Invoice creation
    # ------------------------------------------------------------------

    def next_invoice_number(self, db: Session, tenant_id: str, period_start: date) -> str:
        """INV-<yyyymm>-<seq:04d>: one past the highest sequence for the month."""
        prefix = invoice_number_prefix(period_start)
        numbers = db.query(Invoice.invoice_number).filter(
            Invoice.tenant_id == tenant_id,
            Invoice.invoice_number.like(f"{prefix}%"),
        ).all()

        highest = 0
        for (number,) in numbers:
            try:
                highest = max(highest, int(number[len(prefix):]))
            except ValueError:
                continue
        return f"{prefix}{highest + 1:04d}"

    def _insert_invoice(self, db: Session, tenant_id: str, build) -> Invoice:
        """
        Insert the invoice returned by `build()` and commit.

        Two writers can compute the same number; the unique index rejects
        the loser, which rolls back and tries the next number.
        """
        for attempt in range(1, INVOICE_NUMBER_RETRIES + 1):
            invoice = build()
            invoice.invoice_number = self.next_invoice_number(db, tenant_id, invoice.period_start)
            db.add(invoice)
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                logger.warning(
                    f"Invoice number collision on {invoice.invoice_number}, retrying ({attempt})",
                    extra={"tenant_id": tenant_id},
                )
                continue
            db.refresh(invoice)
            return invoice
        raise ConflictError("Could not allocate a unique invoice number")

    def create_invoice(
        self,
        db: Session,
        tenant_id: str,
        client_id: str,
        items: Sequence[Dict],
        period_start: date,
        period_end: date,
        due_date: date,
        tax_percent=None,
        discount_amount: int = 0,
        notes: Optional[str] = None,
        status: str = InvoiceStatus.PENDING,
    ) -> Invoice:
        """
        Manual invoice. `items` are dicts with description, quantity and
        unit_price. Only draft or pending may be requested.
        """
        if status not in (InvoiceStatus.DRAFT, InvoiceStatus.PENDING):
            raise ValidationError("New invoices must be draft or pending")
        if not items:
            raise ValidationError("Invoice needs at least one item")
        if period_end < period_start:
            raise ValidationError("period_end must not be before period_start")
        if discount_amount < 0:
            raise ValidationError("discount_amount must not be negative")

        self._get_client(db, tenant_id, client_id)
        tenant = db.query(Tenant).filter(Tenant.id == tenant_id).first()
        if tax_percent is None:
            tax_percent = tenant.tax_percent if tenant else 0

        lines = []
        subtotal = 0
        for index, raw in enumerate(items):
            description = (raw.get("description") or "").strip()
            quantity = int(raw.get("quantity") or 1)
            unit_price = int(raw.get("unit_price") or 0)
            if not description:
                raise ValidationError("Item description is required")
            if quantity <= 0 or unit_price < 0:
                raise ValidationError("Item quantity must be positive and unit_price non-negative")
            amount = quantity * unit_price
            subtotal += amount
            lines.append((description, quantity, unit_price, amount, index))

        tax, discount, total = compute_totals(subtotal, tax_percent, discount_amount)
        currency = tenant.currency if tenant else "IDR"

        def build():
            invoice = Invoice(
                tenant_id=tenant_id,
                client_id=client_id,
                period_start=period_start,
                period_end=period_end,
                due_date=due_date,
                subtotal=subtotal,
                tax_amount=tax,
                discount_amount=discount,
                total_amount=total,
                paid_amount=0,
                currency=currency,
                status=status,
                notes=notes,
            )
            invoice.items = [
                InvoiceItem(description=d, quantity=q, unit_price=u, amount=a, sort_order=i)
                for d, q, u, a, i in lines
            ]
            return invoice

        invoice = self._insert_invoice(db, tenant_id, build)
        logger.info(
            f"Invoice {invoice.invoice_number} created ({invoice.status}, total={invoice.total_amount})",
            extra={"tenant_id": tenant_id, "invoice_id": invoice.id, "client_id": client_id},
        )
        return invoice

    def effective_monthly_fee(self, db: Session, client: Client) -> Tuple[int, str]:
        """(fee, line description) from the service package, else client.monthly_fee."""
        package = client.service_package
        if package is not None and package.tenant_id == client.tenant_id:
            return package.fee_for(client.device_count), f"Internet Service - {package.name}"
        return int(client.monthly_fee or 0), "Internet Service"

    def global_discount(self, db: Session, tenant_id: str, subtotal: int, now: datetime) -> int:
        """Discount from the tenant's active global discount, if any."""
        discounts = db.query(Discount).filter(
            Discount.tenant_id == tenant_id,
            Discount.is_global.is_(True),
            Discount.is_active.is_(True),
        ).order_by(Discount.created_at.desc()).all()

        for discount in discounts:
            if not discount.applies_at(now):
                continue
            if discount.discount_type == DiscountType.PERCENT:
                return min(percent_of(subtotal, discount.value), subtotal)
            return min(_round(Decimal(str(discount.value))), subtotal)
        return 0

    def find_period_invoice(self, db: Session, tenant_id: str, client_id: str,
                            period_start: date) -> Optional[Invoice]:
        return db.query(Invoice).filter(
            Invoice.tenant_id == tenant_id,
            Invoice.client_id == client_id,
            Invoice.period_start == period_start,
            Invoice.status != InvoiceStatus.CANCELLED,
        ).order_by(Invoice.created_at.desc()).first()

    def generate_monthly_invoice(
        self,
        db: Session,
        tenant_id: str,
        client: Client,
        now: Optional[datetime] = None,
    ) -> Tuple[Invoice, bool]:
        """
        Generate the client's invoice for the month of its next due date.

        Returns (invoice, created). An invoice already present for the
        period is returned unchanged with created=False.
        """
        now = now or self.clock.now()
        if client.tenant_id != tenant_id:
            raise ClientNotFoundError(client.id)

        due = next_due_date(now.date(), client.payment_due_day)
        period_start, period_end = billing_period(due)

        existing = self.find_period_invoice(db, tenant_id, client.id, period_start)
        if existing is not None:
            return existing, False

        fee, description = self.effective_monthly_fee(db, client)
        if fee <= 0:
            raise ValidationError("Client has no service package or monthly fee configured")

        months = 1
        subtotal = fee * months
        discount = self.global_discount(db, tenant_id, subtotal, now)

        invoice = self.create_invoice(
            db,
            tenant_id,
            client.id,
            items=[{"description": description, "quantity": months, "unit_price": fee}],
            period_start=period_start,
            period_end=period_end,
            due_date=due,
            discount_amount=discount,
        )
        return invoice, True

    # ------------------------------------------------------------------
    # Status changes
    # ------------------------------------------------------------------

    def transition_invoice(self, invoice: Invoice, target: str) -> None:
        """Guarded status write. paid is only reachable through record_payment."""
        if not can_transition_invoice(invoice.status, target):
            raise InvalidTransitionError("invoice", invoice.status, target)
        if target == InvoiceStatus.PAID and invoice.paid_amount < invoice.total_amount:
            raise ConflictError("Invoice is not fully paid")
        invoice.status = target

    def issue_invoice(self, db: Session, tenant_id: str, invoice_id: str) -> Invoice:
        invoice = self.get_invoice(db, tenant_id, invoice_id)
        self.transition_invoice(invoice, InvoiceStatus.PENDING)
        db.commit()
        return invoice

    def cancel_invoice(self, db: Session, tenant_id: str, invoice_id: str) -> Invoice:
        invoice = self.get_invoice(db, tenant_id, invoice_id)
        if invoice.paid_amount > 0:
            raise ConflictError("Cannot cancel an invoice with payments")
        self.transition_invoice(invoice, InvoiceStatus.CANCELLED)
        db.commit()
        logger.info(f"Invoice {invoice.invoice_number} cancelled",
                    extra={"tenant_id": tenant_id, "invoice_id": invoice.id})
        return invoice

    def delete_invoice(self, db: Session, tenant_id: str, invoice_id: str) -> None:
        invoice = self.get_invoice(db, tenant_id, invoice_id)
        if invoice.status != InvoiceStatus.DRAFT:
            raise ConflictError("Only draft invoices can be deleted")
        db.delete(invoice)
        db.commit()

    def mark_overdue(self, db: Session, tenant_id: str, today: date) -> int:
        """pending -> overdue for every unpaid invoice due before `today`."""
        result = db.execute(
            update(Invoice)
            .where(
                Invoice.tenant_id == tenant_id,
                Invoice.status == InvoiceStatus.PENDING,
                Invoice.due_date < today,
                Invoice.paid_amount < Invoice.total_amount,
            )
            .values(status=InvoiceStatus.OVERDUE, updated_at=self.clock.now())
            .execution_options(synchronize_session=False)
        )
        db.commit()
        if result.rowcount:
            logger.info(f"Marked {result.rowcount} invoices overdue", extra={"tenant_id": tenant_id})
        return result.rowcount

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    def record_payment(
        self,
        db: Session,
        tenant_id: str,
        invoice_id: str,
        amount: int,
        method: str = PaymentMethod.CASH,
        reference: Optional[str] = None,
        notes: Optional[str] = None,
        received_at: Optional[datetime] = None,
        created_by: Optional[str] = None,
    ) -> Payment:
        """
        Apply a payment to an invoice.

        One transaction: insert the payment, raise paid_amount, promote to
        paid when paid_amount reaches total. Overpayment and payments on
        draft/paid/cancelled invoices are conflicts.
        """
        if amount is None or int(amount) <= 0:
            raise ValidationError("Payment amount must be positive")
        amount = int(amount)
        method = method or PaymentMethod.CASH
        if method not in PaymentMethod.ALL:
            raise ValidationError(f"Unknown payment method: {method}")

        now = self.clock.now()

        # Serialize concurrent payers on the invoice row
        invoice = db.query(Invoice).filter(
            Invoice.id == invoice_id,
            Invoice.tenant_id == tenant_id,
        ).with_for_update().first()
        if not invoice:
            db.rollback()
            raise InvoiceNotFoundError(invoice_id)

        if invoice.status == InvoiceStatus.PAID:
            db.rollback()
            raise ConflictError("Invoice is already paid")
        if invoice.status == InvoiceStatus.CANCELLED:
            db.rollback()
            raise ConflictError("Cannot pay a cancelled invoice")
        if invoice.status == InvoiceStatus.DRAFT:
            db.rollback()
            raise ConflictError("Invoice has not been issued")

        result = db.execute(
            update(Invoice)
            .where(
                Invoice.id == invoice.id,
                Invoice.status.in_(InvoiceStatus.PAYABLE),
                Invoice.paid_amount + amount <= Invoice.total_amount,
            )
            .values(paid_amount=Invoice.paid_amount + amount, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            db.rollback()
            raise ConflictError("Payment exceeds the outstanding amount")

        payment = Payment(
            tenant_id=tenant_id,
            invoice_id=invoice.id,
            client_id=invoice.client_id,
            amount=amount,
            method=method,
            reference=reference,
            notes=notes,
            received_at=received_at or now,
            created_by=created_by,
        )
        db.add(payment)

        db.execute(
            update(Invoice)
            .where(
                Invoice.id == invoice.id,
                Invoice.status.in_(InvoiceStatus.PAYABLE),
                Invoice.paid_amount >= Invoice.total_amount,
            )
            .values(status=InvoiceStatus.PAID, paid_at=now)
            .execution_options(synchronize_session=False)
        )

        db.commit()
        db.refresh(invoice)
        db.refresh(payment)

        logger.info(
            f"Payment {amount} applied to {invoice.invoice_number} "
            f"({invoice.paid_amount}/{invoice.total_amount}, {invoice.status})",
            extra={"tenant_id": tenant_id, "invoice_id": invoice.id},
        )
        return payment

    # ------------------------------------------------------------------
    # Reports
    # ------------------------------------------------------------------

    def summary(self, db: Session, tenant_id: str, now: Optional[datetime] = None) -> Dict:
        now = now or self.clock.now()
        rows = db.query(
            Invoice.status,
            func.count(Invoice.id),
            func.coalesce(func.sum(Invoice.total_amount), 0),
            func.coalesce(func.sum(Invoice.paid_amount), 0),
        ).filter(Invoice.tenant_id == tenant_id).group_by(Invoice.status).all()

        counts = {status: 0 for status in InvoiceStatus.ALL}
        amounts = {status: 0 for status in InvoiceStatus.ALL}
        total_billed = total_paid = outstanding = 0
        for status, count, total, paid in rows:
            counts[status] = int(count)
            amounts[status] = int(total)
            if status in (InvoiceStatus.DRAFT, InvoiceStatus.CANCELLED):
                continue
            total_billed += int(total)
            total_paid += int(paid)
            if status in InvoiceStatus.PAYABLE:
                outstanding += int(total) - int(paid)

        month_start = datetime(now.year, now.month, 1)
        collected = db.query(func.coalesce(func.sum(Payment.amount), 0)).filter(
            Payment.tenant_id == tenant_id,
            Payment.received_at >= month_start,
        ).scalar()

        return {
            "invoice_counts": counts,
            "invoice_amounts": amounts,
            "total_billed": total_billed,
            "total_paid": total_paid,
            "total_outstanding": outstanding,
            "collected_this_month": int(collected or 0),
        }

    @staticmethod
    def matrix_cell_status(invoice: Invoice, today: date) -> str:
        if invoice.status == InvoiceStatus.PAID:
            if invoice.paid_at is not None and invoice.paid_at.date() <= invoice.due_date:
                return "paid_on_time"
            return "paid_late"
        if invoice.status == InvoiceStatus.OVERDUE:
            return "overdue"
        if invoice.status == InvoiceStatus.CANCELLED:
            return "cancelled"
        if invoice.status == InvoiceStatus.PENDING and invoice.due_date < today:
            return "overdue"
        return "pending"

    def payment_matrix(self, db: Session, tenant_id: str, year: int,
                       now: Optional[datetime] = None) -> List[Dict]:
        """Twelve monthly cells per client for `year`."""
        if year < 2000 or year > 2100:
            raise ValidationError("year out of range")
        today = (now or self.clock.now()).date()

        clients = db.query(Client).filter(
            Client.tenant_id == tenant_id,
            Client.deleted_at.is_(None),
        ).order_by(Client.name.asc()).all()

        invoices = db.query(Invoice).filter(
            Invoice.tenant_id == tenant_id,
            Invoice.period_start >= date(year, 1, 1),
            Invoice.period_start <= date(year, 12, 31),
        ).all()

        # latest invoice per (client, month)
        by_client: Dict[str, Dict[int, Invoice]] = {}
        for invoice in invoices:
            months = by_client.setdefault(invoice.client_id, {})
            month = invoice.period_start.month
            current = months.get(month)
            if current is None or invoice.created_at > current.created_at:
                months[month] = invoice

        entries = []
        for client in clients:
            months = by_client.get(client.id, {})
            cells = []
            amount = 0
            for month in range(1, 13):
                invoice = months.get(month)
                if invoice is None:
                    cells.append({"month": month, "status": "empty", "amount": 0})
                    continue
                amount = int(invoice.total_amount)
                cells.append({
                    "month": month,
                    "status": self.matrix_cell_status(invoice, today),
                    "amount": int(invoice.total_amount),
                    "invoice_id": invoice.id,
                })
            entries.append({
                "client_id": client.id,
                "client_name": client.name,
                "client_code": client.client_code,
                "amount": amount,
                "months": cells,
            })
        return entries


def unpaid_overdue_invoices(db: Session, tenant_id: str, client_ids: Iterable[str], today: date) -> Dict[str, List[Invoice]]:
    """client id -> unpaid invoices past due (pending or overdue), earliest first."""
    client_ids = list(client_ids)
    if not client_ids:
        return {}
    rows = db.query(Invoice).filter(
        Invoice.tenant_id == tenant_id,
        Invoice.client_id.in_(client_ids),
        Invoice.status.in_(InvoiceStatus.PAYABLE),
        Invoice.due_date < today,
        Invoice.paid_amount < Invoice.total_amount,
    ).order_by(Invoice.due_date.asc(), Invoice.invoice_number.asc()).all()

    grouped: Dict[str, List[Invoice]] = {}
    for invoice in rows:
        grouped.setdefault(invoice.client_id, []).append(invoice)
    return grouped
