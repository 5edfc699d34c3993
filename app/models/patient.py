"""
Database model for the practice's patient records.
"""
from sqlalchemy import Column, String, Date, Text, Index

from app.models.base import Base, TenantScopedMixin


class Patient(TenantScopedMixin, Base):
    """Patient record targeted by bulk imports."""

    # External identifiers
    file_number = Column(String, nullable=True)  # Number in the previous software
    ssn = Column(String, nullable=True)  # National id

    # Identity
    last_name = Column(String, nullable=False)
    first_name = Column(String, nullable=False)
    birth_date = Column(Date, nullable=False)
    sex = Column(String, nullable=False)

    # Contact details
    phone = Column(String, nullable=True)
    email = Column(String, nullable=True)
    address = Column(Text, nullable=True)
    postal_code = Column(String, nullable=True)
    city = Column(String, nullable=True)
    country = Column(String, nullable=True)

    __table_args__ = (
        Index("ix_patient_tenant_file_number", "tenant_id", "file_number"),
        Index("ix_patient_tenant_birth_date", "tenant_id", "birth_date"),
    )
