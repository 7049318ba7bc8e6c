"""
Custom Exceptions

The API error taxonomy. Domain code raises these directly; FastAPI turns
them into responses through the handlers registered in app.main, which
always render {"error": <message>} plus any structured payload.

    ValidationError      400
    AuthenticationError  401  (TokenExpiredError, TokenInvalidError)
    ForbiddenError       403  (permission, feature, tenant, limit)
    NotFoundError        404
    ConflictError        409  (unique keys, invalid state transitions)
    RateLimitExceeded    429
    UpstreamError        502
"""
from typing import Any, Dict, Optional, Sequence
from fastapi import HTTPException, status


class AppError(HTTPException):
    """Base class. `payload` is merged into the JSON error body."""

    def __init__(
        self,
        status_code: int,
        detail: str,
        headers: Optional[Dict[str, str]] = None,
        payload: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(status_code=status_code, detail=detail, headers=headers)
        self.payload = payload or {}


class ValidationError(AppError):
    """Bad input, wrong shape or out-of-range value."""

    def __init__(self, detail: str = "Invalid input"):
        super().__init__(status.HTTP_400_BAD_REQUEST, detail)


# Older name, still used by a few call sites
InvalidInputError = ValidationError


class AuthenticationError(AppError):
    """Raised when authentication fails."""

    def __init__(self, detail: str = "Could not validate credentials"):
        super().__init__(
            status.HTTP_401_UNAUTHORIZED,
            detail,
            headers={"WWW-Authenticate": "Bearer"},
        )


class TokenExpiredError(AuthenticationError):
    def __init__(self, detail: str = "Token has expired"):
        super().__init__(detail)


class TokenInvalidError(AuthenticationError):
    def __init__(self, detail: str = "Invalid token"):
        super().__init__(detail)


class ForbiddenError(AppError):
    def __init__(self, detail: str = "Forbidden", payload: Optional[Dict[str, Any]] = None):
        super().__init__(status.HTTP_403_FORBIDDEN, detail, payload=payload)


class PermissionDenied(ForbiddenError):
    """RBAC miss."""

    def __init__(self, detail: str = "Permission denied", capabilities: Sequence[str] = ()):
        payload = {"capabilities": list(capabilities)} if capabilities else None
        super().__init__(detail, payload=payload)


class FeatureNotAvailable(ForbiddenError):
    """Tenant's plan/add-ons/toggles do not grant the feature."""

    def __init__(self, features: Sequence[str]):
        features = list(features)
        super().__init__(
            f"Feature not available for this tenant: {', '.join(features)}",
            payload={"features": features},
        )


class TenantIsolationError(ForbiddenError):
    """
    Raised when a tenant isolation violation is detected.

    This is a CRITICAL security error and should be logged/alerted on.
    """

    def __init__(self, detail: str = "Tenant isolation violation"):
        super().__init__(detail)


class TenantInactiveError(ForbiddenError):
    def __init__(self, detail: str = "Tenant not active"):
        super().__init__(detail)


class UserInactiveError(ForbiddenError):
    def __init__(self, detail: str = "User account is inactive"):
        super().__init__(detail)


class LimitExceededError(ForbiddenError):
    """Plan limit reached."""

    def __init__(self, limit_name: str, limit: int, current: int):
        super().__init__(
            f"Plan limit reached for {limit_name} ({current}/{limit}). "
            f"Upgrade your plan or purchase an add-on.",
            payload={"limit": limit_name, "max": limit, "current": current},
        )


class NotFoundError(AppError):
    def __init__(self, detail: str = "Not found"):
        super().__init__(status.HTTP_404_NOT_FOUND, detail)


def _not_found(kind: str, identifier: str) -> str:
    return f"{kind} not found: {identifier}" if identifier else f"{kind} not found"


class TenantNotFoundError(NotFoundError):
    def __init__(self, tenant_identifier: str = ""):
        super().__init__(_not_found("Tenant", tenant_identifier))


class UserNotFoundError(NotFoundError):
    def __init__(self, user_id: str = ""):
        super().__init__(_not_found("User", user_id))


class ClientNotFoundError(NotFoundError):
    def __init__(self, client_id: str = ""):
        super().__init__(_not_found("Client", client_id))


class InvoiceNotFoundError(NotFoundError):
    def __init__(self, invoice_id: str = ""):
        super().__init__(_not_found("Invoice", invoice_id))


class PaymentNotFoundError(NotFoundError):
    def __init__(self, payment_id: str = ""):
        super().__init__(_not_found("Payment", payment_id))


class CampaignNotFoundError(NotFoundError):
    def __init__(self, campaign_id: str = ""):
        super().__init__(_not_found("Campaign", campaign_id))


class ConflictError(AppError):
    def __init__(self, detail: str = "Conflict"):
        super().__init__(status.HTTP_409_CONFLICT, detail)


class InvalidTransitionError(ConflictError):
    def __init__(self, entity: str, current: str, target: str):
        super().__init__(f"Invalid {entity} status transition: {current} -> {target}")


class NoRecipientsError(ValidationError):
    def __init__(self):
        super().__init__("No recipients found")


class RateLimitExceeded(AppError):
    """Raised when rate limit is exceeded."""

    def __init__(self, retry_after: int = 60):
        super().__init__(
            status.HTTP_429_TOO_MANY_REQUESTS,
            "Rate limit exceeded",
            headers={"Retry-After": str(retry_after)},
            payload={"retry_after": retry_after},
        )


class UpstreamError(AppError):
    """Gateway refused the call or the network failed."""

    def __init__(self, detail: str = "Upstream service error"):
        super().__init__(status.HTTP_502_BAD_GATEWAY, detail)


class NASNotRegisteredError(ForbiddenError):
    """RADIUS request from a NAS that matches no usable router."""

    def __init__(self, detail: str = "NAS not registered"):
        super().__init__(detail)
