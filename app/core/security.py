"""
Security Module

Password hashing and JWT issuing/validation.
Uses passlib (bcrypt) and python-jose.

SECURITY NOTES:
- Passwords are hashed with bcrypt, cost 12
- Access tokens are short-lived (JWT_ACCESS_TTL), refresh tokens longer
  (JWT_REFRESH_TTL); the token_type claim keeps them from being swapped
- Expiry and not-before are checked against the injected Clock, not the
  library's own time source, so token behaviour is testable
"""
import calendar
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import JWTError, jwt
from passlib.context import CryptContext

from app.config import get_settings
from app.core.clock import Clock, system_clock
from app.core.exceptions import TokenExpiredError, TokenInvalidError, ValidationError

BCRYPT_ROUNDS = 12
MIN_PASSWORD_LENGTH = 8
# bcrypt only looks at the first 72 bytes
MAX_PASSWORD_BYTES = 72

ACCESS_TOKEN = "access"
REFRESH_TOKEN = "refresh"
ALGORITHM = "HS256"

pwd_context = CryptContext(
    schemes=["bcrypt"],
    deprecated="auto",
    bcrypt__rounds=BCRYPT_ROUNDS,
)


def validate_password_strength(password: str) -> None:
    if password is None or len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
    if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
        raise ValidationError(f"Password must be at most {MAX_PASSWORD_BYTES} bytes")


def hash_password(password: str) -> str:
    """
    Hash a password using bcrypt.

    NOTE: This is intentionally slow (~250ms at cost 12).
    Don't call this in hot paths or tight loops.
    """
    validate_password_strength(password)
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """
    Verify a password against its hash (constant-time comparison).

    Malformed hashes and over-long passwords verify as False.
    """
    if not plain_password or not hashed_password:
        return False
    if len(plain_password.encode("utf-8")) > MAX_PASSWORD_BYTES:
        return False
    try:
        return pwd_context.verify(plain_password, hashed_password)
    except (ValueError, TypeError):
        return False


@dataclass(frozen=True)
class TokenClaims:
    """Validated claims carried by an access or refresh token."""
    user_id: str
    tenant_id: Optional[str]
    role: str
    email: str
    token_type: str
    issued_at: datetime
    expires_at: datetime
    jti: str

    @property
    def is_super_admin(self) -> bool:
        return self.tenant_id is None and self.role == "super_admin"


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int  # access token lifetime, seconds


def _timestamp(dt: datetime) -> int:
    return calendar.timegm(dt.utctimetuple())


class JWTManager:
    """
    Issues and validates HS256 tokens.

    Claims: sub, user_id, tenant_id (omitted for super admin), role, email,
    token_type, iat, nbf, exp, iss, jti.
    """

    def __init__(
        self,
        secret: str,
        access_ttl: timedelta,
        refresh_ttl: timedelta,
        issuer: str,
        clock: Clock = system_clock,
    ):
        if not secret:
            raise ValueError("JWT secret must not be empty")
        self.secret = secret
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.issuer = issuer
        self.clock = clock

    def _encode(self, kind: str, ttl: timedelta, user_id: str, tenant_id: Optional[str],
                role: str, email: str) -> str:
        now = self.clock.now()
        claims: Dict[str, Any] = {
            "sub": str(user_id),
            "user_id": str(user_id),
            "role": role,
            "email": email,
            "token_type": kind,
            "iat": _timestamp(now),
            "nbf": _timestamp(now),
            "exp": _timestamp(now + ttl),
            "iss": self.issuer,
            "jti": str(uuid.uuid4()),
        }
        if tenant_id:
            claims["tenant_id"] = str(tenant_id)
        return jwt.encode(claims, self.secret, algorithm=ALGORITHM)

    def issue_tokens(self, user_id: str, tenant_id: Optional[str], role: str, email: str) -> TokenPair:
        access = self._encode(ACCESS_TOKEN, self.access_ttl, user_id, tenant_id, role, email)
        refresh = self._encode(REFRESH_TOKEN, self.refresh_ttl, user_id, tenant_id, role, email)
        return TokenPair(
            access_token=access,
            refresh_token=refresh,
            expires_in=int(self.access_ttl.total_seconds()),
        )

    def validate(self, kind: str, token: str) -> TokenClaims:
        """
        Validate a token of the given kind.

        Raises TokenExpiredError when past expiry, TokenInvalidError on bad
        signature, wrong kind, wrong issuer or malformed payload.
        """
        if not token:
            raise TokenInvalidError("Missing token")
        try:
            payload = jwt.decode(
                token,
                self.secret,
                algorithms=[ALGORITHM],
                issuer=self.issuer,
                # time based claims are checked below against self.clock
                options={"verify_exp": False, "verify_nbf": False, "verify_iat": False},
            )
        except JWTError:
            raise TokenInvalidError()

        try:
            exp = int(payload["exp"])
            nbf = int(payload.get("nbf", payload["iat"]))
            iat = int(payload["iat"])
            user_id = str(payload["sub"])
            role = str(payload["role"])
        except (KeyError, TypeError, ValueError):
            raise TokenInvalidError("Invalid token payload")

        if payload.get("token_type") != kind:
            raise TokenInvalidError("Invalid token type")

        now = _timestamp(self.clock.now())
        if now >= exp:
            raise TokenExpiredError()
        if now < nbf:
            raise TokenInvalidError("Token not yet valid")

        return TokenClaims(
            user_id=user_id,
            tenant_id=payload.get("tenant_id") or None,
            role=role,
            email=str(payload.get("email", "")),
            token_type=kind,
            issued_at=datetime.fromtimestamp(iat, tz=timezone.utc).replace(tzinfo=None),
            expires_at=datetime.fromtimestamp(exp, tz=timezone.utc).replace(tzinfo=None),
            jti=str(payload.get("jti", "")),
        )

    def validate_access(self, token: str) -> TokenClaims:
        return self.validate(ACCESS_TOKEN, token)

    def validate_refresh(self, token: str) -> TokenClaims:
        return self.validate(REFRESH_TOKEN, token)


_jwt_manager: Optional[JWTManager] = None


def get_jwt_manager() -> JWTManager:
    """Process-wide JWTManager built from settings."""
    global _jwt_manager
    if _jwt_manager is None:
        settings = get_settings()
        _jwt_manager = JWTManager(
            secret=settings.JWT_SECRET,
            access_ttl=settings.access_token_ttl,
            refresh_ttl=settings.refresh_token_ttl,
            issuer=settings.APP_NAME,
        )
    return _jwt_manager


def set_jwt_manager(manager: Optional[JWTManager]) -> None:
    """Replace the process-wide manager (tests use this to inject a clock)."""
    global _jwt_manager
    _jwt_manager = manager
