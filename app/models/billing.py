"""
Billing Models

Money is stored as integers in the minor unit (IDR has none, so rupiah).

Invoice invariants:
- total = subtotal + tax - discount
- 0 <= paid_amount <= total, paid_amount only grows
- status == paid  iff  paid_amount >= total
"""
from sqlalchemy import (
    Column, String, Text, Boolean, DateTime, Date, ForeignKey, Index, Integer, BigInteger,
    CheckConstraint,
)
from sqlalchemy.orm import relationship
from app.core.clock import utcnow
from app.database import Base
import uuid


class InvoiceStatus:
    DRAFT = "draft"
    PENDING = "pending"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"

    ALL = (DRAFT, PENDING, PAID, OVERDUE, CANCELLED)
    TERMINAL = (PAID, CANCELLED)
    # States a payment may be applied to
    PAYABLE = (PENDING, OVERDUE)


# Drafts are discarded with a delete, never cancelled
INVOICE_TRANSITIONS = {
    InvoiceStatus.DRAFT: {InvoiceStatus.PENDING},
    InvoiceStatus.PENDING: {InvoiceStatus.PAID, InvoiceStatus.OVERDUE, InvoiceStatus.CANCELLED},
    InvoiceStatus.OVERDUE: {InvoiceStatus.PAID},
    InvoiceStatus.PAID: set(),
    InvoiceStatus.CANCELLED: set(),
}


def can_transition_invoice(current: str, target: str) -> bool:
    return target in INVOICE_TRANSITIONS.get(current, set())


class Invoice(Base):
    __tablename__ = "invoices"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant_id = Column(
        String(36),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    client_id = Column(
        String(36),
        ForeignKey("clients.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    # INV-<yyyymm>-<seq:04d>, unique per tenant
    invoice_number = Column(String(50), nullable=False)

    period_start = Column(Date, nullable=False)
    period_end = Column(Date, nullable=False)
    due_date = Column(Date, nullable=False, index=True)

    subtotal = Column(BigInteger, default=0, nullable=False)
    tax_amount = Column(BigInteger, default=0, nullable=False)
    discount_amount = Column(BigInteger, default=0, nullable=False)
    total_amount = Column(BigInteger, default=0, nullable=False)
    paid_amount = Column(BigInteger, default=0, nullable=False)
    currency = Column(String(3), default="IDR", nullable=False)

    status = Column(String(20), default=InvoiceStatus.PENDING, nullable=False, index=True)
    notes = Column(Text, nullable=True)
    paid_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    client = relationship("Client")
    items = relationship(
        "InvoiceItem",
        back_populates="invoice",
        cascade="all, delete-orphan",
        order_by="InvoiceItem.sort_order",
    )
    payments = relationship("Payment", back_populates="invoice", passive_deletes=True)

    __table_args__ = (
        Index('idx_invoice_tenant_number', 'tenant_id', 'invoice_number', unique=True),
        Index('idx_invoice_tenant_client_period', 'tenant_id', 'client_id', 'period_start'),
        Index('idx_invoice_tenant_status_due', 'tenant_id', 'status', 'due_date'),
        CheckConstraint('paid_amount >= 0', name='ck_invoice_paid_non_negative'),
        CheckConstraint('paid_amount <= total_amount', name='ck_invoice_no_overpayment'),
    )

    def __repr__(self):
        return f"<Invoice {self.invoice_number} {self.status} {self.paid_amount}/{self.total_amount}>"

    @property
    def remaining_amount(self) -> int:
        return max(int(self.total_amount) - int(self.paid_amount), 0)

    @property
    def is_terminal(self) -> bool:
        return self.status in InvoiceStatus.TERMINAL


class InvoiceItem(Base):
    __tablename__ = "invoice_items"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    invoice_id = Column(
        String(36),
        ForeignKey("invoices.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    description = Column(String(255), nullable=False)
    quantity = Column(Integer, default=1, nullable=False)
    unit_price = Column(BigInteger, default=0, nullable=False)
    amount = Column(BigInteger, default=0, nullable=False)
    sort_order = Column(Integer, default=0, nullable=False)

    invoice = relationship("Invoice", back_populates="items")

    def __repr__(self):
        return f"<InvoiceItem {self.description} {self.amount}>"


class PaymentMethod:
    CASH = "cash"
    BANK_TRANSFER = "bank_transfer"
    E_WALLET = "e_wallet"
    QRIS = "qris"
    VIRTUAL_ACCOUNT = "virtual_account"
    COLLECTOR = "collector"

    ALL = (CASH, BANK_TRANSFER, E_WALLET, QRIS, VIRTUAL_ACCOUNT, COLLECTOR)


class Payment(Base):
    __tablename__ = "payments"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant_id = Column(
        String(36),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    invoice_id = Column(
        String(36),
        ForeignKey("invoices.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    client_id = Column(
        String(36),
        ForeignKey("clients.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    amount = Column(BigInteger, nullable=False)
    method = Column(String(30), default=PaymentMethod.CASH, nullable=False)
    reference = Column(String(255), nullable=True)
    notes = Column(Text, nullable=True)
    received_at = Column(DateTime, default=utcnow, nullable=False)

    created_by = Column(
        String(36),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True
    )
    created_at = Column(DateTime, default=utcnow, nullable=False)

    invoice = relationship("Invoice", back_populates="payments")

    __table_args__ = (
        Index('idx_payment_tenant_received', 'tenant_id', 'received_at'),
        CheckConstraint('amount > 0', name='ck_payment_positive'),
    )

    def __repr__(self):
        return f"<Payment {self.amount} invoice={self.invoice_id}>"


class IsolirAction:
    ISOLATE = "isolate"
    REACTIVATE = "reactivate"


class IsolirLogStatus:
    PENDING = "pending"
    EXECUTED = "executed"
    FAILED = "failed"
    REVERTED = "reverted"


class IsolirLog(Base):
    """Append-only audit of isolation decisions."""
    __tablename__ = "isolir_logs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant_id = Column(
        String(36),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    client_id = Column(
        String(36),
        ForeignKey("clients.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    invoice_id = Column(
        String(36),
        ForeignKey("invoices.id", ondelete="SET NULL"),
        nullable=True
    )

    action = Column(String(20), nullable=False)
    status = Column(String(20), default=IsolirLogStatus.PENDING, nullable=False)
    is_automatic = Column(Boolean, default=True, nullable=False)
    reason = Column(String(255), nullable=True)
    executed_at = Column(DateTime, nullable=True)
    error = Column(Text, nullable=True)

    created_by = Column(String(36), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index('idx_isolir_log_client_created', 'client_id', 'created_at'),
    )

    def __repr__(self):
        return f"<IsolirLog {self.action} client={self.client_id} auto={self.is_automatic}>"
