"""
Client Management Endpoints

CRUD for an ISP's subscribers and client groups, status changes and the
isolation audit log.

RBAC:
- List/view clients and groups: client.view
- Create client or group: client.create (clients count against max_clients)
- Update client: client.update
- Status change: client.suspend; isolir additionally needs the
  isolir_manual feature
- Delete client: client.delete (soft delete, purged by the cleanup scheduler)
- Generate invoice: billing.create
"""
from fastapi import APIRouter, Depends, Query, status
from sqlalchemy import func
from sqlalchemy.orm import Session
from typing import List, Optional

from app.database import get_db
from app.models.billing import IsolirLog
from app.models.client import Client, ClientGroup, ClientStatus, ServicePackage
from app.schemas.billing import GenerateInvoiceResponse
from app.schemas.client import (
    ClientCreate,
    ClientGroupCreate,
    ClientGroupResponse,
    ClientListResponse,
    ClientResponse,
    ClientStatusChange,
    ClientUpdate,
    IsolirLogResponse,
)
from app.api.deps import Principal, get_tenant_id, require_capability
from app.core.clock import utcnow
from app.core.exceptions import ClientNotFoundError, ConflictError, NotFoundError, ValidationError
from app.core.features import LIMIT_MAX_CLIENTS
from app.core.permissions import (
    CAP_BILLING_CREATE,
    CAP_CLIENT_CREATE,
    CAP_CLIENT_DELETE,
    CAP_CLIENT_SUSPEND,
    CAP_CLIENT_UPDATE,
    CAP_CLIENT_VIEW,
)
from app.services.billing import BillingService
from app.services.entitlements import get_entitlement_resolver
from app.services.isolation import IsolationService
from app.utils.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(tags=["clients"])

FEATURE_ISOLIR_MANUAL = "isolir_manual"


def get_billing_service() -> BillingService:
    return BillingService()


def get_isolation_service() -> IsolationService:
    return IsolationService()


def _load_client(db: Session, tenant_id: str, client_id: str) -> Client:
    client = db.query(Client).filter(
        Client.id == client_id,
        Client.tenant_id == tenant_id,  # CRITICAL: Tenant isolation
        Client.deleted_at.is_(None),
    ).first()
    if not client:
        raise ClientNotFoundError(client_id)
    return client


def _check_references(db: Session, tenant_id: str, group_id: Optional[str], package_id: Optional[str]) -> None:
    """Group and service package must belong to the same tenant."""
    if group_id and not db.query(ClientGroup.id).filter(
        ClientGroup.id == group_id, ClientGroup.tenant_id == tenant_id
    ).first():
        raise NotFoundError("Client group not found")
    if package_id and not db.query(ServicePackage.id).filter(
        ServicePackage.id == package_id, ServicePackage.tenant_id == tenant_id
    ).first():
        raise NotFoundError("Service package not found")


def next_client_code(db: Session, tenant_id: str) -> str:
    """CL<seq:05d> over every client row the tenant has, tombstones included."""
    seq = (db.query(func.count(Client.id)).filter(Client.tenant_id == tenant_id).scalar() or 0) + 1
    # Hard-deleted rows shrink the count; step past codes still in use
    while db.query(Client.id).filter(Client.tenant_id == tenant_id, Client.client_code == f"CL{seq:05d}").first():
        seq += 1
    return f"CL{seq:05d}"


# ============================================================================
# Clients
# ============================================================================

@router.get("/clients", response_model=ClientListResponse)
async def list_clients(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    client_status: Optional[str] = Query(None, alias="status", pattern="^(active|isolir|suspended|terminated)$"),
    group_id: Optional[str] = None,
    search: Optional[str] = Query(None, max_length=100),
    tenant_id: str = Depends(get_tenant_id),
    principal: Principal = Depends(require_capability(CAP_CLIENT_VIEW)),
    db: Session = Depends(get_db)
):
    """
    List clients in the current tenant.

    TENANT_ISOLATION: Automatically filtered by current tenant.
    """
    query = db.query(Client).filter(
        Client.tenant_id == tenant_id,
        Client.deleted_at.is_(None),
    )
    if client_status:
        query = query.filter(Client.status == client_status)
    if group_id:
        query = query.filter(Client.group_id == group_id)
    if search:
        pattern = f"%{search.strip()}%"
        query = query.filter(Client.name.ilike(pattern) | Client.client_code.ilike(pattern))

    total = query.count()
    clients = query.order_by(Client.created_at.desc()).offset((page - 1) * page_size).limit(page_size).all()

    return ClientListResponse(clients=clients, total=total, page=page, page_size=page_size)


@router.get("/clients/{client_id}", response_model=ClientResponse)
async def get_client(
    client_id: str,
    tenant_id: str = Depends(get_tenant_id),
    principal: Principal = Depends(require_capability(CAP_CLIENT_VIEW)),
    db: Session = Depends(get_db)
):
    return _load_client(db, tenant_id, client_id)


@router.post("/clients", response_model=ClientResponse, status_code=status.HTTP_201_CREATED)
async def create_client(
    client_data: ClientCreate,
    tenant_id: str = Depends(get_tenant_id),
    principal: Principal = Depends(require_capability(CAP_CLIENT_CREATE)),
    db: Session = Depends(get_db)
):
    """
    Create a client.

    BUSINESS LOGIC: enforces the plan's max_clients limit; client_code is
    unique per tenant.
    """
    current = db.query(func.count(Client.id)).filter(
        Client.tenant_id == tenant_id,
        Client.deleted_at.is_(None),
    ).scalar() or 0
    get_entitlement_resolver().check_limit(db, tenant_id, LIMIT_MAX_CLIENTS, current)

    _check_references(db, tenant_id, client_data.group_id, client_data.service_package_id)

    data = client_data.model_dump()
    code = (data.pop("client_code") or "").strip() or next_client_code(db, tenant_id)
    if db.query(Client.id).filter(Client.tenant_id == tenant_id, Client.client_code == code).first():
        raise ConflictError(f"Client code already exists: {code}")

    client = Client(tenant_id=tenant_id, client_code=code, status=ClientStatus.ACTIVE, **data)
    db.add(client)
    db.commit()
    db.refresh(client)

    logger.info(f"Client created: {client.client_code} by {principal.user_id}", extra={"tenant_id": tenant_id})
    return client


@router.patch("/clients/{client_id}", response_model=ClientResponse)
async def update_client(
    client_id: str,
    client_data: ClientUpdate,
    tenant_id: str = Depends(get_tenant_id),
    principal: Principal = Depends(require_capability(CAP_CLIENT_UPDATE)),
    db: Session = Depends(get_db)
):
    client = _load_client(db, tenant_id, client_id)

    update_data = client_data.model_dump(exclude_unset=True)
    _check_references(db, tenant_id, update_data.get("group_id"), update_data.get("service_package_id"))
    for field, value in update_data.items():
        setattr(client, field, value)

    db.commit()
    db.refresh(client)

    logger.info(f"Client updated: {client.client_code} by {principal.user_id}", extra={"tenant_id": tenant_id})
    return client


@router.delete("/clients/{client_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_client(
    client_id: str,
    tenant_id: str = Depends(get_tenant_id),
    principal: Principal = Depends(require_capability(CAP_CLIENT_DELETE)),
    db: Session = Depends(get_db)
):
    """
    Soft delete. The row is hard-deleted by ClientCleanupScheduler once
    the retention window has passed.
    """
    client = _load_client(db, tenant_id, client_id)
    client.soft_delete(utcnow())
    db.commit()

    logger.info(f"Client deleted: {client.client_code} by {principal.user_id}", extra={"tenant_id": tenant_id})
    return None


@router.post("/clients/{client_id}/status", response_model=ClientResponse)
async def change_client_status(
    client_id: str,
    body: ClientStatusChange,
    tenant_id: str = Depends(get_tenant_id),
    principal: Principal = Depends(require_capability(CAP_CLIENT_SUSPEND)),
    db: Session = Depends(get_db),
    isolation: IsolationService = Depends(get_isolation_service),
):
    """Guarded status change. Invalid transitions are 409."""
    if body.status == ClientStatus.ISOLIR:
        get_entitlement_resolver().require_features(db, tenant_id, [FEATURE_ISOLIR_MANUAL])
    return isolation.change_status(
        db, tenant_id, client_id, body.status, reason=body.reason, user_id=principal.user_id
    )


@router.get("/clients/{client_id}/isolir-logs", response_model=List[IsolirLogResponse])
async def client_isolir_logs(
    client_id: str,
    tenant_id: str = Depends(get_tenant_id),
    principal: Principal = Depends(require_capability(CAP_CLIENT_VIEW)),
    db: Session = Depends(get_db),
    isolation: IsolationService = Depends(get_isolation_service),
):
    client = db.query(Client.id).filter(Client.id == client_id, Client.tenant_id == tenant_id).first()
    if not client:
        raise ClientNotFoundError(client_id)
    return isolation.logs_for(db, tenant_id, client_id)


@router.post("/clients/{client_id}/invoices/generate", response_model=GenerateInvoiceResponse)
async def generate_client_invoice(
    client_id: str,
    tenant_id: str = Depends(get_tenant_id),
    principal: Principal = Depends(require_capability(CAP_BILLING_CREATE)),
    db: Session = Depends(get_db),
    billing: BillingService = Depends(get_billing_service),
):
    """
    Generate the invoice for the client's next due date now, instead of
    waiting for the scheduler. Returns the existing invoice when the
    period is already billed.
    """
    client = _load_client(db, tenant_id, client_id)
    if client.status not in ClientStatus.BILLABLE:
        raise ValidationError(f"Client is {client.status}; only active or isolir clients are billed")
    invoice, created = billing.generate_monthly_invoice(db, tenant_id, client)
    return GenerateInvoiceResponse(invoice=invoice, created=created)


# ============================================================================
# Client groups
# ============================================================================

@router.get("/client-groups", response_model=List[ClientGroupResponse])
async def list_client_groups(
    tenant_id: str = Depends(get_tenant_id),
    principal: Principal = Depends(require_capability(CAP_CLIENT_VIEW)),
    db: Session = Depends(get_db)
):
    return db.query(ClientGroup).filter(
        ClientGroup.tenant_id == tenant_id,
    ).order_by(ClientGroup.name.asc()).all()


@router.post("/client-groups", response_model=ClientGroupResponse, status_code=status.HTTP_201_CREATED)
async def create_client_group(
    group_data: ClientGroupCreate,
    tenant_id: str = Depends(get_tenant_id),
    principal: Principal = Depends(require_capability(CAP_CLIENT_CREATE)),
    db: Session = Depends(get_db)
):
    name = group_data.name.strip()
    if db.query(ClientGroup.id).filter(ClientGroup.tenant_id == tenant_id, ClientGroup.name == name).first():
        raise ConflictError(f"Client group already exists: {name}")

    group = ClientGroup(tenant_id=tenant_id, name=name, description=group_data.description)
    db.add(group)
    db.commit()
    db.refresh(group)
    return group
