"""
Pydantic schemas for the authenticated caller.
"""
from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field


class UserRole(str, Enum):
    """User role enum."""
    ADMIN = "admin"
    PRACTITIONER = "practitioner"
    ASSISTANT = "assistant"


class User(BaseModel):
    """Caller identity resolved from the access token."""
    id: str = Field(..., description="User ID")
    tenant_id: str = Field(..., description="Practice the user acts for")
    email: Optional[str] = None
    role: UserRole = UserRole.PRACTITIONER


class TokenData(BaseModel):
    """Claims carried by an access token."""
    sub: str
    tenant_id: str
    email: Optional[str] = None
    role: UserRole = UserRole.PRACTITIONER
    exp: Optional[datetime] = None
