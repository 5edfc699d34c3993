"""
Matching of normalized import rows against existing patients.

Rules are tried in a fixed order and the first hit wins; candidates from
different rules are never merged:

1. file number (exact, case-sensitive): the previous software's identifier
2. family name + given name (case-insensitive) + date of birth
3. email (case-insensitive): weakest signal, shared mailboxes are common
"""
import logging
from dataclasses import dataclass
from typing import Optional

from app.db.repositories.patients import PatientRepository
from app.models.import_job import MatchType
from app.schemas.patient import PatientRecord

logger = logging.getLogger("practice.imports.matcher")


@dataclass(frozen=True)
class MatchResult:
    """Existing patient a row resolves to, and the rule that found it."""
    record_id: str
    match_type: MatchType


class RecordMatcher:
    """Resolves canonical records to existing patients of one practice."""

    def __init__(self, patient_repo: PatientRepository, tenant_id: str):
        self.patient_repo = patient_repo
        self.tenant_id = tenant_id

    async def find_match(self, record: PatientRecord) -> Optional[MatchResult]:
        """
        Look up the existing patient a record corresponds to.

        Args:
            record: Normalized candidate

        Returns:
            MatchResult or None when no rule hits
        """
        if record.file_number:
            record_id = await self.patient_repo.find_id_by_file_number(self.tenant_id, record.file_number)
            if record_id:
                return MatchResult(record_id, MatchType.FILE_NUMBER)

        record_id = await self.patient_repo.find_id_by_name_and_birth_date(
            self.tenant_id, record.last_name, record.first_name, record.birth_date
        )
        if record_id:
            return MatchResult(record_id, MatchType.NAME_DOB)

        if record.email:
            record_id = await self.patient_repo.find_id_by_email(self.tenant_id, record.email)
            if record_id:
                return MatchResult(record_id, MatchType.EMAIL)

        return None
