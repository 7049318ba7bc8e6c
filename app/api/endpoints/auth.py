"""
Authentication Endpoints

Login, token refresh, self-service registration and the current user.

The tenant comes from the request (X-Tenant-Slug, subdomain or
X-Tenant-ID, resolved by TenantMiddleware), never from the body. A login
without a tenant is only accepted for platform super admins.
"""
from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.orm import Session

from app.database import get_db
from app.models.user import User
from app.schemas.auth import (
    ChangePasswordRequest,
    LoginRequest,
    MessageResponse,
    RefreshRequest,
    RegisterRequest,
    TokenResponse,
)
from app.schemas.user import UserResponse
from app.core.security import TokenPair
from app.api.deps import Principal, get_current_user, get_principal, get_request_tenant
from app.services.auth_service import AuthService
from app.utils.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/auth", tags=["authentication"])


def get_auth_service() -> AuthService:
    return AuthService()


def _token_response(user: User, tokens: TokenPair) -> TokenResponse:
    return TokenResponse(
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        expires_in=tokens.expires_in,
        user=UserResponse.model_validate(user),
    )


@router.post("/login", response_model=TokenResponse)
async def login(
    credentials: LoginRequest,
    request: Request,
    db: Session = Depends(get_db),
    auth: AuthService = Depends(get_auth_service),
):
    """
    Authenticate and return an access/refresh token pair.

    SECURITY: unknown email and wrong password both return 401
    "Invalid credentials".
    """
    user, tokens = auth.login(db, get_request_tenant(request), credentials.email, credentials.password)
    return _token_response(user, tokens)


@router.post("/refresh", response_model=TokenResponse)
async def refresh(
    body: RefreshRequest,
    db: Session = Depends(get_db),
    auth: AuthService = Depends(get_auth_service),
):
    """Exchange a refresh token for a new pair."""
    user, tokens = auth.refresh(db, body.refresh_token)
    return _token_response(user, tokens)


@router.post("/register", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
async def register(
    user_data: RegisterRequest,
    request: Request,
    db: Session = Depends(get_db),
    auth: AuthService = Depends(get_auth_service),
):
    """
    Register a new `client` user in the request's tenant.

    BUSINESS LOGIC: counts against the plan's max_users limit.
    """
    user = auth.register(
        db,
        get_request_tenant(request),
        email=user_data.email,
        password=user_data.password,
        name=user_data.name,
        phone=user_data.phone,
    )
    return user


@router.get("/me", response_model=UserResponse)
async def me(current_user: User = Depends(get_current_user)):
    return current_user


@router.post("/change-password", response_model=MessageResponse)
async def change_password(
    body: ChangePasswordRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    auth: AuthService = Depends(get_auth_service),
):
    auth.change_password(db, current_user, body.current_password, body.new_password)
    return MessageResponse(message="Password changed")


@router.post("/logout", response_model=MessageResponse)
async def logout(principal: Principal = Depends(get_principal)):
    """
    Tokens are stateless; the client drops them.

    NOTE: no server-side revocation list. An access token stays valid
    until it expires.
    """
    logger.info(f"Logout: user={principal.user_id}, tenant={principal.tenant_id}")
    return MessageResponse(message="Logged out")
