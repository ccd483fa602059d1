"""Pydantic models for the auth API."""

from typing import Literal

from pydantic import BaseModel, Field, field_validator

# =============================================================================
# Auth Models
# =============================================================================


class UserRegister(BaseModel):
    """Request to create a student or client account."""
    email: str = Field(..., min_length=3, max_length=254)
    password: str = Field(..., min_length=8, max_length=128)
    role: Literal["student", "client"]
    phone: str | None = Field(None, max_length=32)
    first_name: str | None = Field(None, max_length=100)
    last_name: str | None = Field(None, max_length=100)
    company_name: str | None = Field(None, max_length=200)  # clients only
    school_name: str | None = Field(None, max_length=200)  # students only

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        v = v.strip().lower()
        if "@" not in v or v.startswith("@") or v.endswith("@"):
            raise ValueError("Invalid email address")
        return v


class UserLogin(BaseModel):
    """Request for a token."""
    email: str
    password: str


class UserInfo(BaseModel):
    """Public user information."""
    id: int
    email: str
    role: Literal["student", "client", "admin"]
    phone: str | None = None


class TokenResponse(BaseModel):
    """JWT token response."""
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    user: UserInfo
