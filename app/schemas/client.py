"""
Client Schemas

Request/response models for subscribers and client groups.
"""
from pydantic import BaseModel, Field
from typing import Optional
from datetime import date, datetime


class ClientBase(BaseModel):
    """Base client schema."""
    name: str = Field(..., min_length=1, max_length=255)
    phone: Optional[str] = Field(None, max_length=32)
    email: Optional[str] = Field(None, max_length=255)
    address: Optional[str] = None
    category: str = Field("regular", pattern="^(regular|business|lite)$")
    group_id: Optional[str] = None
    service_package_id: Optional[str] = None
    device_count: int = Field(1, ge=1)
    payment_due_day: int = Field(1, ge=1, le=31)
    monthly_fee: int = Field(0, ge=0)
    pppoe_username: Optional[str] = Field(None, max_length=100)


class ClientCreate(ClientBase):
    """Schema for creating a client. client_code is generated when omitted."""
    client_code: Optional[str] = Field(None, min_length=1, max_length=50)


class ClientUpdate(BaseModel):
    """Schema for updating a client. All fields optional; status has its own endpoint."""
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    phone: Optional[str] = Field(None, max_length=32)
    email: Optional[str] = Field(None, max_length=255)
    address: Optional[str] = None
    category: Optional[str] = Field(None, pattern="^(regular|business|lite)$")
    group_id: Optional[str] = None
    service_package_id: Optional[str] = None
    device_count: Optional[int] = Field(None, ge=1)
    payment_due_day: Optional[int] = Field(None, ge=1, le=31)
    monthly_fee: Optional[int] = Field(None, ge=0)
    pppoe_username: Optional[str] = Field(None, max_length=100)


class ClientResponse(ClientBase):
    """Client response schema."""
    id: str
    tenant_id: str
    client_code: str
    status: str
    billing_date: Optional[date]
    isolir_reason: Optional[str]
    isolir_at: Optional[datetime]
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class ClientListResponse(BaseModel):
    """Paginated list of clients."""
    clients: list[ClientResponse]
    total: int
    page: int
    page_size: int


class ClientStatusChange(BaseModel):
    status: str = Field(..., pattern="^(active|isolir|suspended|terminated)$")
    reason: Optional[str] = Field(None, max_length=255)


class IsolirLogResponse(BaseModel):
    id: str
    client_id: str
    invoice_id: Optional[str]
    action: str
    status: str
    is_automatic: bool
    reason: Optional[str]
    executed_at: Optional[datetime]
    error: Optional[str]
    created_by: Optional[str]
    created_at: datetime

    class Config:
        from_attributes = True


class ClientGroupCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None


class ClientGroupResponse(ClientGroupCreate):
    id: str
    tenant_id: str
    created_at: datetime

    class Config:
        from_attributes = True
