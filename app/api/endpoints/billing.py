"""
Billing Endpoints

Invoices, payments and billing reports for the current tenant.

RBAC:
- Read invoices, payments, reports: billing.view
- Create invoice: billing.create
- Issue / cancel / delete invoice: billing.update
- Record payment: billing.collect or billing.confirm

Invariants live in BillingService; the handlers only map HTTP to it.
"""
from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session
from typing import List, Optional

from app.database import get_db
from app.models.billing import InvoiceStatus
from app.schemas.billing import (
    BillingSummaryResponse,
    InvoiceCreate,
    InvoiceDetailResponse,
    InvoiceListResponse,
    InvoiceResponse,
    PaymentCreate,
    PaymentListResponse,
    PaymentMatrixResponse,
    PaymentResponse,
)
from app.api.deps import Principal, get_tenant_id, require_any_capability, require_capability
from app.api.endpoints.clients import get_billing_service
from app.core.permissions import (
    CAP_BILLING_COLLECT,
    CAP_BILLING_CONFIRM,
    CAP_BILLING_CREATE,
    CAP_BILLING_UPDATE,
    CAP_BILLING_VIEW,
)
from app.services.billing import BillingService
from app.utils.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"])


# ============================================================================
# Invoices
# ============================================================================

@router.get("/invoices", response_model=InvoiceListResponse)
async def list_invoices(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    invoice_status: Optional[str] = Query(None, alias="status"),
    client_id: Optional[str] = None,
    tenant_id: str = Depends(get_tenant_id),
    principal: Principal = Depends(require_capability(CAP_BILLING_VIEW)),
    db: Session = Depends(get_db),
    billing: BillingService = Depends(get_billing_service),
):
    invoices, total = billing.list_invoices(
        db, tenant_id, status=invoice_status, client_id=client_id, page=page, page_size=page_size
    )
    return InvoiceListResponse(invoices=invoices, total=total, page=page, page_size=page_size)


@router.get("/invoices/overdue", response_model=List[InvoiceResponse])
async def list_overdue_invoices(
    tenant_id: str = Depends(get_tenant_id),
    principal: Principal = Depends(require_capability(CAP_BILLING_VIEW)),
    db: Session = Depends(get_db),
    billing: BillingService = Depends(get_billing_service),
):
    return billing.list_overdue(db, tenant_id)


@router.post("/invoices", response_model=InvoiceDetailResponse, status_code=status.HTTP_201_CREATED)
async def create_invoice(
    invoice_data: InvoiceCreate,
    tenant_id: str = Depends(get_tenant_id),
    principal: Principal = Depends(require_capability(CAP_BILLING_CREATE)),
    db: Session = Depends(get_db),
    billing: BillingService = Depends(get_billing_service),
):
    """Manual invoice. issue_now=false keeps it as a draft."""
    invoice = billing.create_invoice(
        db,
        tenant_id,
        invoice_data.client_id,
        items=[item.model_dump() for item in invoice_data.items],
        period_start=invoice_data.period_start,
        period_end=invoice_data.period_end,
        due_date=invoice_data.due_date,
        tax_percent=invoice_data.tax_percent,
        discount_amount=invoice_data.discount_amount,
        notes=invoice_data.notes,
        status=InvoiceStatus.PENDING if invoice_data.issue_now else InvoiceStatus.DRAFT,
    )
    return invoice


@router.get("/invoices/{invoice_id}", response_model=InvoiceDetailResponse)
async def get_invoice(
    invoice_id: str,
    tenant_id: str = Depends(get_tenant_id),
    principal: Principal = Depends(require_capability(CAP_BILLING_VIEW)),
    db: Session = Depends(get_db),
    billing: BillingService = Depends(get_billing_service),
):
    return billing.get_invoice(db, tenant_id, invoice_id)


@router.post("/invoices/{invoice_id}/issue", response_model=InvoiceResponse)
async def issue_invoice(
    invoice_id: str,
    tenant_id: str = Depends(get_tenant_id),
    principal: Principal = Depends(require_capability(CAP_BILLING_UPDATE)),
    db: Session = Depends(get_db),
    billing: BillingService = Depends(get_billing_service),
):
    return billing.issue_invoice(db, tenant_id, invoice_id)


@router.post("/invoices/{invoice_id}/cancel", response_model=InvoiceResponse)
async def cancel_invoice(
    invoice_id: str,
    tenant_id: str = Depends(get_tenant_id),
    principal: Principal = Depends(require_capability(CAP_BILLING_UPDATE)),
    db: Session = Depends(get_db),
    billing: BillingService = Depends(get_billing_service),
):
    return billing.cancel_invoice(db, tenant_id, invoice_id)


@router.delete("/invoices/{invoice_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_invoice(
    invoice_id: str,
    tenant_id: str = Depends(get_tenant_id),
    principal: Principal = Depends(require_capability(CAP_BILLING_UPDATE)),
    db: Session = Depends(get_db),
    billing: BillingService = Depends(get_billing_service),
):
    """Drafts only; issued invoices are cancelled, never deleted."""
    billing.delete_invoice(db, tenant_id, invoice_id)
    logger.info(f"Invoice {invoice_id} deleted by {principal.user_id}", extra={"tenant_id": tenant_id})
    return None


@router.get("/invoices/{invoice_id}/payments", response_model=List[PaymentResponse])
async def invoice_payments(
    invoice_id: str,
    tenant_id: str = Depends(get_tenant_id),
    principal: Principal = Depends(require_capability(CAP_BILLING_VIEW)),
    db: Session = Depends(get_db),
    billing: BillingService = Depends(get_billing_service),
):
    return billing.invoice_payments(db, tenant_id, invoice_id)


# ============================================================================
# Payments
# ============================================================================

@router.get("/payments", response_model=PaymentListResponse)
async def list_payments(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    invoice_id: Optional[str] = None,
    client_id: Optional[str] = None,
    tenant_id: str = Depends(get_tenant_id),
    principal: Principal = Depends(require_capability(CAP_BILLING_VIEW)),
    db: Session = Depends(get_db),
    billing: BillingService = Depends(get_billing_service),
):
    payments, total = billing.list_payments(
        db, tenant_id, invoice_id=invoice_id, client_id=client_id, page=page, page_size=page_size
    )
    return PaymentListResponse(payments=payments, total=total, page=page, page_size=page_size)


@router.post("/payments", response_model=PaymentResponse, status_code=status.HTTP_201_CREATED)
async def record_payment(
    payment_data: PaymentCreate,
    tenant_id: str = Depends(get_tenant_id),
    principal: Principal = Depends(require_any_capability(CAP_BILLING_COLLECT, CAP_BILLING_CONFIRM)),
    db: Session = Depends(get_db),
    billing: BillingService = Depends(get_billing_service),
):
    """
    Apply a payment. Overpayment and payments on paid, cancelled or
    draft invoices are 409.
    """
    return billing.record_payment(
        db,
        tenant_id,
        payment_data.invoice_id,
        payment_data.amount,
        method=payment_data.method,
        reference=payment_data.reference,
        notes=payment_data.notes,
        received_at=payment_data.received_at,
        created_by=principal.user_id,
    )


@router.get("/payments/{payment_id}", response_model=PaymentResponse)
async def get_payment(
    payment_id: str,
    tenant_id: str = Depends(get_tenant_id),
    principal: Principal = Depends(require_capability(CAP_BILLING_VIEW)),
    db: Session = Depends(get_db),
    billing: BillingService = Depends(get_billing_service),
):
    return billing.get_payment(db, tenant_id, payment_id)


# ============================================================================
# Reports
# ============================================================================

@router.get("/summary", response_model=BillingSummaryResponse)
async def billing_summary(
    tenant_id: str = Depends(get_tenant_id),
    principal: Principal = Depends(require_capability(CAP_BILLING_VIEW)),
    db: Session = Depends(get_db),
    billing: BillingService = Depends(get_billing_service),
):
    return billing.summary(db, tenant_id)


@router.get("/payment-matrix", response_model=PaymentMatrixResponse)
async def payment_matrix(
    year: Optional[int] = Query(None),
    tenant_id: str = Depends(get_tenant_id),
    principal: Principal = Depends(require_capability(CAP_BILLING_VIEW)),
    db: Session = Depends(get_db),
    billing: BillingService = Depends(get_billing_service),
):
    """Twelve cells per client; defaults to the current year."""
    year = year or billing.clock.now().year
    return PaymentMatrixResponse(year=year, entries=billing.payment_matrix(db, tenant_id, year))
