"""
User Schemas

Request/response models for user operations.
"""
from pydantic import BaseModel, EmailStr, Field
from typing import Optional
from datetime import datetime
from app.models.user import UserRole


class UserBase(BaseModel):
    """Base user schema with common fields."""
    email: EmailStr
    name: Optional[str] = Field(None, max_length=255)
    phone: Optional[str] = Field(None, max_length=32)


class UserCreate(UserBase):
    """Schema for creating a new user."""
    password: str = Field(..., min_length=8, max_length=72)
    role: UserRole = UserRole.CLIENT


class UserUpdate(BaseModel):
    """Schema for updating a user. All fields optional."""
    name: Optional[str] = Field(None, max_length=255)
    phone: Optional[str] = Field(None, max_length=32)
    role: Optional[UserRole] = None
    status: Optional[str] = None


class UserResponse(BaseModel):
    """User response schema (excludes sensitive data)."""
    id: str
    tenant_id: Optional[str]
    email: str
    name: Optional[str]
    phone: Optional[str]
    role: UserRole
    status: str
    created_at: datetime
    last_login_at: Optional[datetime]

    class Config:
        from_attributes = True  # Allows creating from ORM models


class UserListResponse(BaseModel):
    """Paginated list of users."""
    users: list[UserResponse]
    total: int
    page: int
    page_size: int
