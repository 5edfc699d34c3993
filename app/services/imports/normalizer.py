"""
Row normalization and validation for patient imports.

``normalize_row`` is a pure function of (raw row, confirmed mapping): it does
no I/O and does not depend on other rows, so validating the same file twice
with the same mapping yields the same outcomes.
"""
import re
from typing import Dict, List, Optional, Tuple

from app.models.import_job import RowStatus
from app.schemas.import_job import FieldIssue, RowValidationResult
from app.schemas.patient import PatientRecord, Sex
from app.services.imports.mapping import FIELDS_BY_KEY, REQUIRED_FIELDS
from app.utils.datetime import parse_birth_date

DEFAULT_COUNTRY = "France"

_SEPARATORS_RGX = re.compile(r"[\s.\-]")
_EMAIL_RGX = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_POSTAL_CODE_RGX = re.compile(r"\b(\d{5})\b")
_CITY_END_RGX = re.compile(r"[,\r\n]")

_SEX_TOKENS: Dict[str, Sex] = {
    "M": Sex.MALE,
    "H": Sex.MALE,
    "HOMME": Sex.MALE,
    "MASCULIN": Sex.MALE,
    "F": Sex.FEMALE,
    "FEMME": Sex.FEMALE,
    "FEMININ": Sex.FEMALE,
    "FÉMININ": Sex.FEMALE,
}


def project_row(raw: Dict[str, str], mapping: Dict[str, Optional[str]]) -> Dict[str, str]:
    """
    Rename raw columns to canonical fields.

    Unmapped columns are dropped and blank values are treated as absent.
    """
    projected: Dict[str, str] = {}
    for header, key in mapping.items():
        if not key:
            continue
        value = (raw.get(header) or "").strip()
        if value:
            projected[key] = value
    return projected


def strip_separators(value: Optional[str]) -> Optional[str]:
    """Remove whitespace, dots and dashes; None if nothing is left."""
    if not value:
        return None
    return _SEPARATORS_RGX.sub("", value) or None


def normalize_email(value: Optional[str]) -> Optional[str]:
    """Lower-cased email, or None if it does not look like local@domain.tld."""
    if not value:
        return None
    candidate = value.strip().lower()
    return candidate if _EMAIL_RGX.match(candidate) else None


def parse_sex(value: Optional[str]) -> Optional[Sex]:
    """Map a sex token (M, H, F, Masculin, Féminin...) case-insensitively."""
    if not value:
        return None
    return _SEX_TOKENS.get(value.strip().upper())


def extract_address_parts(address: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """
    Pull postal code and city out of a free-form address.

    The first 5-digit run is the postal code; the city is the text right
    after it, up to the next comma or line break.

    Returns:
        (postal_code, city), either may be None
    """
    if not address:
        return None, None
    match = _POSTAL_CODE_RGX.search(address)
    if not match:
        return None, None
    city = _CITY_END_RGX.split(address[match.end():], maxsplit=1)[0].strip()
    return match.group(1), city or None


def _missing(key: str) -> FieldIssue:
    return FieldIssue(field=key, message=f"{FIELDS_BY_KEY[key].label} is required")


def normalize_row(
    raw: Dict[str, str],
    mapping: Dict[str, Optional[str]],
    default_country: str = DEFAULT_COUNTRY,
) -> RowValidationResult:
    """
    Normalize and validate one raw row.

    Args:
        raw: Parsed row, header -> raw value
        mapping: Confirmed mapping, header -> canonical field or None
        default_country: Country used when the row has none

    Returns:
        RowValidationResult: status, canonical record (unless error), issues
    """
    errors: List[FieldIssue] = []
    warnings: List[FieldIssue] = []
    values = project_row(raw, mapping)

    for key in REQUIRED_FIELDS:
        if key not in values:
            errors.append(_missing(key))

    birth_date = parse_birth_date(values.get("birth_date"))
    if "birth_date" in values and birth_date is None:
        errors.append(FieldIssue(
            field="birth_date",
            message=f"Invalid date '{values['birth_date']}' (expected dd/mm/yyyy or yyyy-mm-dd)",
        ))

    sex = parse_sex(values.get("sex"))
    if "sex" in values and sex is None:
        errors.append(FieldIssue(
            field="sex",
            message=f"Invalid sex '{values['sex']}' (expected M or F)",
        ))

    email = normalize_email(values.get("email"))
    if "email" in values and email is None:
        warnings.append(FieldIssue(
            field="email",
            message=f"Invalid email '{values['email']}', it will not be imported",
        ))

    address = values.get("address")
    postal_code = values.get("postal_code")
    city = values.get("city")
    if address and not (postal_code and city):
        extracted_code, extracted_city = extract_address_parts(address)
        postal_code = postal_code or extracted_code
        city = city or extracted_city

    if errors:
        return RowValidationResult(status=RowStatus.ERROR, errors=errors, warnings=warnings)

    record = PatientRecord(
        file_number=values.get("file_number"),
        ssn=strip_separators(values.get("ssn")),
        last_name=values["last_name"],
        first_name=values["first_name"],
        birth_date=birth_date,
        sex=sex,
        phone=strip_separators(values.get("phone")),
        email=email,
        address=address,
        postal_code=postal_code,
        city=city,
        country=values.get("country") or default_country,
    )
    return RowValidationResult(
        status=RowStatus.WARNING if warnings else RowStatus.OK,
        normalized=record,
        errors=errors,
        warnings=warnings,
    )
