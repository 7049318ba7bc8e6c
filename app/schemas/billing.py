"""
Billing Schemas

Invoices, payments and the billing reports. Money fields are integers in
the minor unit.
"""
from pydantic import BaseModel, Field, model_validator
from typing import Dict, List, Optional
from datetime import date, datetime


class InvoiceItemCreate(BaseModel):
    description: str = Field(..., min_length=1, max_length=255)
    quantity: int = Field(1, ge=1)
    unit_price: int = Field(..., ge=0)


class InvoiceCreate(BaseModel):
    """Manual invoice. Created as draft unless issue_now is set."""
    client_id: str
    items: List[InvoiceItemCreate] = Field(..., min_length=1)
    period_start: date
    period_end: date
    due_date: date
    tax_percent: Optional[float] = Field(None, ge=0, le=100)
    discount_amount: int = Field(0, ge=0)
    notes: Optional[str] = None
    issue_now: bool = True

    @model_validator(mode="after")
    def check_period(self):
        if self.period_end < self.period_start:
            raise ValueError("period_end must not be before period_start")
        return self


class InvoiceItemResponse(BaseModel):
    id: str
    description: str
    quantity: int
    unit_price: int
    amount: int

    class Config:
        from_attributes = True


class InvoiceResponse(BaseModel):
    id: str
    tenant_id: str
    client_id: str
    invoice_number: str
    period_start: date
    period_end: date
    due_date: date
    subtotal: int
    tax_amount: int
    discount_amount: int
    total_amount: int
    paid_amount: int
    remaining_amount: int
    currency: str
    status: str
    notes: Optional[str]
    paid_at: Optional[datetime]
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class InvoiceDetailResponse(InvoiceResponse):
    items: List[InvoiceItemResponse]


class InvoiceListResponse(BaseModel):
    invoices: List[InvoiceResponse]
    total: int
    page: int
    page_size: int


class GenerateInvoiceResponse(BaseModel):
    invoice: InvoiceDetailResponse
    created: bool


class PaymentCreate(BaseModel):
    invoice_id: str
    amount: int = Field(..., gt=0)
    method: str = Field("cash", pattern="^(cash|bank_transfer|e_wallet|qris|virtual_account|collector)$")
    reference: Optional[str] = Field(None, max_length=255)
    notes: Optional[str] = None
    received_at: Optional[datetime] = None


class PaymentResponse(BaseModel):
    id: str
    tenant_id: str
    invoice_id: str
    client_id: str
    amount: int
    method: str
    reference: Optional[str]
    notes: Optional[str]
    received_at: datetime
    created_by: Optional[str]
    created_at: datetime

    class Config:
        from_attributes = True


class PaymentListResponse(BaseModel):
    payments: List[PaymentResponse]
    total: int
    page: int
    page_size: int


class BillingSummaryResponse(BaseModel):
    invoice_counts: Dict[str, int]
    invoice_amounts: Dict[str, int]
    total_billed: int
    total_paid: int
    total_outstanding: int
    collected_this_month: int


class MatrixCell(BaseModel):
    month: int
    status: str
    amount: int
    invoice_id: Optional[str] = None


class MatrixEntry(BaseModel):
    client_id: str
    client_name: str
    client_code: str
    amount: int
    months: List[MatrixCell]


class PaymentMatrixResponse(BaseModel):
    year: int
    entries: List[MatrixEntry]
