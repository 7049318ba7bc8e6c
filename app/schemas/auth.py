"""
Authentication Schemas

Request/response models for authentication endpoints.

Token responses use camelCase keys (accessToken, refreshToken, expiresIn);
the dashboard and the mobile collector app both read them that way.
"""
from typing import Optional

from pydantic import AliasChoices, BaseModel, EmailStr, Field

from app.schemas.user import UserResponse


class LoginRequest(BaseModel):
    """Login request body. The tenant comes from the request, not the body."""
    # Plain str: super admin accounts may use addresses EmailStr rejects
    email: str = Field(..., min_length=1, max_length=255)
    password: str = Field(..., min_length=1, max_length=128)


class TokenResponse(BaseModel):
    """Issued token pair plus the user it belongs to."""
    access_token: str = Field(..., alias="accessToken")
    refresh_token: str = Field(..., alias="refreshToken")
    token_type: str = Field("Bearer", alias="tokenType")
    expires_in: int = Field(..., alias="expiresIn")
    user: UserResponse

    class Config:
        populate_by_name = True


class RefreshRequest(BaseModel):
    refresh_token: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("refreshToken", "refresh_token"),
    )


class RegisterRequest(BaseModel):
    """Self-service registration into the request's tenant."""
    email: EmailStr
    password: str = Field(..., min_length=8, max_length=72)
    name: str = Field(..., min_length=1, max_length=255)
    phone: Optional[str] = Field(None, max_length=32)

    class Config:
        json_schema_extra = {
            "example": {
                "email": "budi@example.com",
                "password": "securepassword123",
                "name": "Budi Santoso",
                "phone": "+628123456789"
            }
        }


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(..., min_length=1)
    new_password: str = Field(..., min_length=8, max_length=72)


class MessageResponse(BaseModel):
    message: str
