"""
Authentication Service

Login, refresh, registration and password changes.

SECURITY:
- Unknown email and wrong password produce the same 401 so accounts can't
  be enumerated; the difference only shows up in the security log
- Login is scoped to the tenant resolved by TenantMiddleware. Without a
  tenant only platform super admins (tenant_id NULL) can log in
- Refresh re-reads the user and tenant; a disabled account or a suspended
  tenant stops getting new tokens even while its refresh token is valid
"""
from typing import Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.core.clock import Clock, system_clock
from app.core.exceptions import (
    AuthenticationError,
    ConflictError,
    TenantInactiveError,
    UserInactiveError,
    ValidationError,
)
from app.core.features import LIMIT_MAX_USERS
from app.core.permissions import KNOWN_ROLES
from app.core.security import JWTManager, TokenPair, get_jwt_manager, hash_password, verify_password
from app.models.tenant import Tenant
from app.models.user import User, UserRole, UserStatus
from app.services.entitlements import EntitlementResolver, get_entitlement_resolver
from app.utils.logging import get_logger, log_security_event

logger = get_logger(__name__)


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


class AuthService:
    def __init__(
        self,
        jwt_manager: Optional[JWTManager] = None,
        resolver: Optional[EntitlementResolver] = None,
        clock: Clock = system_clock,
    ):
        self._jwt = jwt_manager
        self._resolver = resolver
        self.clock = clock

    @property
    def jwt(self) -> JWTManager:
        return self._jwt or get_jwt_manager()

    @property
    def resolver(self) -> EntitlementResolver:
        return self._resolver or get_entitlement_resolver()

    def issue_for(self, user: User) -> TokenPair:
        return self.jwt.issue_tokens(user.id, user.tenant_id, user.role_code, user.email)

    def login(self, db: Session, tenant: Optional[Tenant], email: str, password: str) -> Tuple[User, TokenPair]:
        email = normalize_email(email)

        if tenant is not None:
            if not tenant.is_serving:
                raise TenantInactiveError()
            user = db.query(User).filter(
                User.tenant_id == tenant.id,
                func.lower(User.email) == email,
                User.deleted_at.is_(None),
            ).first()
        else:
            user = db.query(User).filter(
                User.tenant_id.is_(None),
                func.lower(User.email) == email,
                User.role == UserRole.SUPER_ADMIN,
                User.deleted_at.is_(None),
            ).first()

        tenant_id = tenant.id if tenant is not None else None
        if user is None:
            log_security_event("failed_login", {"reason": "user_not_found", "email": email, "tenant_id": tenant_id}, logger)
            raise AuthenticationError("Invalid credentials")

        if not verify_password(password, user.password_hash):
            log_security_event("failed_login", {"reason": "invalid_password", "user_id": user.id, "tenant_id": tenant_id}, logger)
            raise AuthenticationError("Invalid credentials")

        if not user.is_active:
            log_security_event("failed_login", {"reason": "user_inactive", "user_id": user.id}, logger)
            raise UserInactiveError()

        user.last_login_at = self.clock.now()
        db.commit()

        logger.info(f"Successful login: user={user.id}, tenant={tenant_id}")
        return user, self.issue_for(user)

    def refresh(self, db: Session, refresh_token: str) -> Tuple[User, TokenPair]:
        claims = self.jwt.validate_refresh(refresh_token)

        user = db.query(User).filter(User.id == claims.user_id).first()
        if user is None or user.deleted_at is not None:
            raise AuthenticationError("User not found")
        if (user.tenant_id or None) != claims.tenant_id:
            log_security_event(
                "tenant_isolation_violation",
                {"user_id": user.id, "token_tenant": claims.tenant_id, "user_tenant": user.tenant_id},
                logger,
            )
            raise AuthenticationError("Invalid token")
        if not user.is_active:
            raise UserInactiveError()
        if user.tenant_id is not None:
            tenant = db.query(Tenant).filter(Tenant.id == user.tenant_id).first()
            if tenant is None or not tenant.is_serving:
                raise TenantInactiveError()

        return user, self.issue_for(user)

    def create_user(
        self,
        db: Session,
        tenant_id: str,
        email: str,
        password: str,
        name: Optional[str] = None,
        phone: Optional[str] = None,
        role: str = UserRole.CLIENT.value,
    ) -> User:
        """Create a tenant user. Enforces the max_users plan limit and per-tenant unique email."""
        if not tenant_id:
            raise ValidationError("No tenant context")
        if role not in KNOWN_ROLES or role == UserRole.SUPER_ADMIN.value:
            raise ValidationError(f"Invalid role: {role}")

        email = normalize_email(email)
        existing = db.query(User.id).filter(
            User.tenant_id == tenant_id,
            func.lower(User.email) == email,
        ).first()
        if existing:
            raise ConflictError("User with this email already exists in this tenant")

        current = db.query(func.count(User.id)).filter(
            User.tenant_id == tenant_id,
            User.deleted_at.is_(None),
        ).scalar() or 0
        self.resolver.check_limit(db, tenant_id, LIMIT_MAX_USERS, current)

        user = User(
            tenant_id=tenant_id,
            email=email,
            password_hash=hash_password(password),
            name=name,
            phone=phone,
            role=UserRole(role),
            status=UserStatus.ACTIVE,
        )
        db.add(user)
        db.commit()
        db.refresh(user)

        logger.info(f"User created: {user.id} ({role}) in tenant {tenant_id}")
        return user

    def register(self, db: Session, tenant: Optional[Tenant], email: str, password: str,
                 name: Optional[str] = None, phone: Optional[str] = None) -> User:
        """Self-service sign-up. Always creates a `client` user."""
        if tenant is None:
            raise ValidationError("No tenant context")
        if not tenant.is_serving:
            raise TenantInactiveError("Tenant is not accepting new registrations")
        return self.create_user(db, tenant.id, email, password, name=name, phone=phone)

    def change_password(self, db: Session, user: User, current_password: str, new_password: str) -> None:
        if not verify_password(current_password, user.password_hash):
            log_security_event("failed_login", {"reason": "change_password_mismatch", "user_id": user.id}, logger)
            raise ValidationError("Current password is incorrect")
        if current_password == new_password:
            raise ValidationError("New password must differ from the current password")

        user.password_hash = hash_password(new_password)
        db.commit()
        logger.info(f"Password changed for user {user.id}")
