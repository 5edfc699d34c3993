"""
Patient repository: the record store targeted by imports.
"""
from datetime import date
from typing import Optional

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

import logging
from app.db.repositories.base import BaseRepository
from app.models.patient import Patient
from app.schemas.patient import PatientRecord
from app.utils.ids import generate_prefixed_id, IDPrefix

logger = logging.getLogger("practice.db")


def _record_values(record: PatientRecord) -> dict:
    values = record.model_dump()
    values["birth_date"] = date.fromisoformat(record.birth_date)
    values["sex"] = record.sex.value
    return values


class PatientRepository(BaseRepository[Patient]):
    """Patient repository for database operations."""

    def __init__(self, session: AsyncSession):
        """Initialize with session and Patient model."""
        super().__init__(session=session, model=Patient)

    async def find_id_by_file_number(self, tenant_id: str, file_number: str) -> Optional[str]:
        """Exact, case-sensitive file number lookup within a practice."""
        result = await self.session.execute(
            select(Patient.id)
            .where(Patient.tenant_id == tenant_id, Patient.file_number == file_number)
            .order_by(Patient.created_at)
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def find_id_by_name_and_birth_date(
        self,
        tenant_id: str,
        last_name: str,
        first_name: str,
        birth_date: str
    ) -> Optional[str]:
        """
        Case-insensitive family and given name plus exact birth date lookup.

        Args:
            tenant_id: Practice ID
            last_name: Family name
            first_name: Given name
            birth_date: ISO date (yyyy-mm-dd)

        Returns:
            str: Patient ID or None
        """
        result = await self.session.execute(
            select(Patient.id)
            .where(
                Patient.tenant_id == tenant_id,
                func.lower(Patient.last_name) == last_name.lower(),
                func.lower(Patient.first_name) == first_name.lower(),
                Patient.birth_date == date.fromisoformat(birth_date),
            )
            .order_by(Patient.created_at)
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def find_id_by_email(self, tenant_id: str, email: str) -> Optional[str]:
        """Case-insensitive email lookup within a practice."""
        result = await self.session.execute(
            select(Patient.id)
            .where(Patient.tenant_id == tenant_id, func.lower(Patient.email) == email.lower())
            .order_by(Patient.created_at)
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def create_patient(self, tenant_id: str, record: PatientRecord) -> Patient:
        """
        Create a patient from a canonical record.

        Args:
            tenant_id: Practice ID
            record: Normalized patient data

        Returns:
            Patient: Flushed patient
        """
        patient = Patient(
            id=generate_prefixed_id(IDPrefix.PATIENT),
            tenant_id=tenant_id,
            **_record_values(record),
        )
        return await self.add(patient)

    async def update_patient(
        self,
        tenant_id: str,
        patient_id: str,
        record: PatientRecord
    ) -> Optional[Patient]:
        """
        Update a patient of the practice from a canonical record.

        Fields absent from the record keep their stored value.

        Returns:
            Patient: Updated patient, or None if it does not exist in the practice
        """
        result = await self.session.execute(
            select(Patient).where(Patient.id == patient_id, Patient.tenant_id == tenant_id)
        )
        patient = result.scalar_one_or_none()
        if not patient:
            return None
        return await self.update_fields(patient, _record_values(record))
