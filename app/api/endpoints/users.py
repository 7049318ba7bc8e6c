"""
User Management Endpoints

Staff and client accounts within a tenant.
All operations are scoped to the caller's tenant.

RBAC:
- List/get users: user.view
- Create user: user.create (counts against max_users)
- Update user: user.update
- Disable user: user.disable
- Delete user: user.delete (soft delete)
"""
from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session
from typing import Optional

from app.database import get_db
from app.models.user import User, UserRole, UserStatus
from app.schemas.user import (
    UserResponse,
    UserCreate,
    UserUpdate,
    UserListResponse
)
from app.api.deps import Principal, get_tenant_id, require_capability
from app.api.endpoints.auth import get_auth_service
from app.core.clock import utcnow
from app.core.exceptions import UserNotFoundError, ValidationError
from app.core.permissions import (
    CAP_USER_CREATE,
    CAP_USER_DELETE,
    CAP_USER_DISABLE,
    CAP_USER_UPDATE,
    CAP_USER_VIEW,
)
from app.services.auth_service import AuthService
from app.utils.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/users", tags=["users"])


def _load_user(db: Session, tenant_id: str, user_id: str) -> User:
    user = db.query(User).filter(
        User.id == user_id,
        User.tenant_id == tenant_id,  # CRITICAL: Tenant isolation
        User.deleted_at.is_(None),
    ).first()
    if not user:
        raise UserNotFoundError(user_id)
    return user


@router.get("", response_model=UserListResponse)
async def list_users(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    role: Optional[UserRole] = Query(None),
    user_status: Optional[str] = Query(None, alias="status", pattern="^(active|inactive|suspended)$"),
    tenant_id: str = Depends(get_tenant_id),
    principal: Principal = Depends(require_capability(CAP_USER_VIEW)),
    db: Session = Depends(get_db)
):
    """
    List users in the current tenant.

    TENANT_ISOLATION: Automatically filtered by current tenant.
    """
    query = db.query(User).filter(
        User.tenant_id == tenant_id,
        User.deleted_at.is_(None),
    )
    if role:
        query = query.filter(User.role == role)
    if user_status:
        query = query.filter(User.status == user_status)

    total = query.count()
    users = query.order_by(User.created_at.asc()).offset((page - 1) * page_size).limit(page_size).all()

    return UserListResponse(users=users, total=total, page=page, page_size=page_size)


@router.get("/{user_id}", response_model=UserResponse)
async def get_user(
    user_id: str,
    tenant_id: str = Depends(get_tenant_id),
    principal: Principal = Depends(require_capability(CAP_USER_VIEW)),
    db: Session = Depends(get_db)
):
    return _load_user(db, tenant_id, user_id)


@router.post("", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
async def create_user(
    user_data: UserCreate,
    tenant_id: str = Depends(get_tenant_id),
    principal: Principal = Depends(require_capability(CAP_USER_CREATE)),
    db: Session = Depends(get_db),
    auth: AuthService = Depends(get_auth_service),
):
    """
    Create a user in the current tenant.

    BUSINESS LOGIC: enforces the plan's max_users limit and per-tenant
    unique email. super_admin can't be assigned here.
    """
    user = auth.create_user(
        db,
        tenant_id,
        email=user_data.email,
        password=user_data.password,
        name=user_data.name,
        phone=user_data.phone,
        role=user_data.role.value,
    )
    logger.info(f"User created: {user.id} by {principal.user_id}")
    return user


@router.patch("/{user_id}", response_model=UserResponse)
async def update_user(
    user_id: str,
    user_data: UserUpdate,
    tenant_id: str = Depends(get_tenant_id),
    principal: Principal = Depends(require_capability(CAP_USER_UPDATE)),
    db: Session = Depends(get_db)
):
    user = _load_user(db, tenant_id, user_id)

    update_data = user_data.model_dump(exclude_unset=True)
    if update_data.get("role") == UserRole.SUPER_ADMIN:
        raise ValidationError("Invalid role: super_admin")
    if "status" in update_data and update_data["status"] not in UserStatus.ALL:
        raise ValidationError(f"Invalid status: {update_data['status']}")
    if user.id == principal.user_id and ("role" in update_data or "status" in update_data):
        raise ValidationError("Cannot change your own role or status")

    for field, value in update_data.items():
        setattr(user, field, value)

    db.commit()
    db.refresh(user)

    logger.info(f"User updated: {user.id} by {principal.user_id}")
    return user


@router.post("/{user_id}/disable", response_model=UserResponse)
async def disable_user(
    user_id: str,
    tenant_id: str = Depends(get_tenant_id),
    principal: Principal = Depends(require_capability(CAP_USER_DISABLE)),
    db: Session = Depends(get_db)
):
    """Disabled users can't log in or refresh; issued access tokens stop at get_principal."""
    user = _load_user(db, tenant_id, user_id)
    if user.id == principal.user_id:
        raise ValidationError("Cannot disable your own account")

    user.status = UserStatus.INACTIVE
    db.commit()
    db.refresh(user)

    logger.info(f"User disabled: {user.id} by {principal.user_id}")
    return user


@router.delete("/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_user(
    user_id: str,
    tenant_id: str = Depends(get_tenant_id),
    principal: Principal = Depends(require_capability(CAP_USER_DELETE)),
    db: Session = Depends(get_db)
):
    """Soft delete. The email stays reserved in the tenant."""
    user = _load_user(db, tenant_id, user_id)
    if user.id == principal.user_id:
        raise ValidationError("Cannot delete your own account")

    user.deleted_at = utcnow()
    user.status = UserStatus.INACTIVE
    db.commit()

    logger.info(f"User deleted: {user_id} by {principal.user_id}")
    return None
