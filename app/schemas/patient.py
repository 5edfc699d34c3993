"""
Pydantic schemas for the canonical patient record produced by imports.
"""
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field


class Sex(str, Enum):
    """Administrative sex as stored on patient records."""
    MALE = "male"
    FEMALE = "female"


class PatientRecord(BaseModel):
    """
    Canonical patient shape every imported row is normalized into.

    Only rows that passed validation carry one; the birth date is an ISO
    yyyy-mm-dd string so it can be stored as-is in JSON row outcomes.
    """
    file_number: Optional[str] = Field(None, description="File number in the previous software")
    ssn: Optional[str] = Field(None, description="National id without separators")
    last_name: str = Field(..., description="Family name")
    first_name: str = Field(..., description="Given name")
    birth_date: str = Field(..., description="Date of birth (yyyy-mm-dd)")
    sex: Sex = Field(..., description="Administrative sex")
    phone: Optional[str] = Field(None, description="Phone number without separators")
    email: Optional[str] = Field(None, description="Lower-cased, validated email")
    address: Optional[str] = Field(None, description="Free-form postal address")
    postal_code: Optional[str] = Field(None, description="Postal code")
    city: Optional[str] = Field(None, description="City")
    country: Optional[str] = Field(None, description="Country")

    @property
    def identity_key(self) -> tuple:
        """Case-insensitive name plus date of birth, used to spot duplicates."""
        return (self.last_name.lower(), self.first_name.lower(), self.birth_date)
