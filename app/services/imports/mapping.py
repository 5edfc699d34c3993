"""
Canonical patient fields and header mapping suggestions.

Suggestions are advisory: the operator confirms or overrides every column
before validation, and only the confirmed mapping is used afterwards.
"""
import csv
import io
import logging
import re
import unicodedata
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from app.core.exceptions import ValidationError

logger = logging.getLogger("practice.imports.mapping")

_NON_ALNUM_RGX = re.compile(r"[^a-z0-9]+")

TEMPLATE_DELIMITER = ";"
IGNORE_LABEL = "Ignorer cette colonne"


@dataclass(frozen=True)
class PatientField:
    """A canonical field an import column can be mapped to."""
    key: str
    label: str
    required: bool
    synonyms: Tuple[str, ...]
    example: str


PATIENT_FIELDS: Tuple[PatientField, ...] = (
    PatientField(
        "file_number", "Numéro de dossier", False,
        ("numero de dossier", "n dossier", "no dossier", "numero dossier", "dossier",
         "file number", "file no", "chart number"),
        "12345",
    ),
    PatientField(
        "ssn", "Numéro SS", False,
        ("numero ss", "n ss", "no ss", "numero securite sociale", "securite sociale",
         "nir", "ssn", "national id"),
        "2 85 03 75 123 456 78",
    ),
    PatientField(
        "last_name", "Nom", True,
        ("nom", "nom de famille", "last name", "lastname", "family name", "surname"),
        "Dupont",
    ),
    PatientField(
        "first_name", "Prénom", True,
        ("prenom", "first name", "firstname", "given name"),
        "Marie",
    ),
    PatientField(
        "birth_date", "Date de naissance", True,
        ("date de naissance", "date naissance", "naissance", "ddn",
         "birth date", "birthdate", "date of birth", "dob"),
        "05/03/1985",
    ),
    PatientField(
        "sex", "Sexe", True,
        ("sexe", "genre", "sex", "gender"),
        "F",
    ),
    PatientField(
        "phone", "Téléphone", False,
        ("telephone", "tel", "portable", "mobile", "phone"),
        "06 12 34 56 78",
    ),
    PatientField(
        "email", "Email", False,
        ("email", "e mail", "mail", "courriel"),
        "marie.dupont@example.com",
    ),
    PatientField(
        "address", "Adresse", False,
        ("adresse", "adresse complete", "address"),
        "12 rue de la Paix, 75002 Paris",
    ),
    PatientField(
        "postal_code", "Code postal", False,
        ("code postal", "cp", "postal code", "zip", "zip code"),
        "75002",
    ),
    PatientField(
        "city", "Ville", False,
        ("ville", "commune", "city"),
        "Paris",
    ),
    PatientField(
        "country", "Pays", False,
        ("pays", "country"),
        "France",
    ),
)

FIELDS_BY_KEY: Dict[str, PatientField] = {f.key: f for f in PATIENT_FIELDS}
REQUIRED_FIELDS: Tuple[str, ...] = tuple(f.key for f in PATIENT_FIELDS if f.required)


def normalize_header(header: str) -> str:
    """
    Reduce a header to a comparison key.

    Accents are stripped, case is folded and any run of punctuation or
    whitespace becomes one space, so "N° Dossier", "N°Dossier" and
    "n_dossier" compare equal.
    """
    decomposed = unicodedata.normalize("NFKD", header or "")
    ascii_only = "".join(c for c in decomposed if not unicodedata.combining(c))
    return _NON_ALNUM_RGX.sub(" ", ascii_only.lower()).strip()


def _build_synonym_index() -> Dict[str, str]:
    index: Dict[str, str] = {}
    for patient_field in PATIENT_FIELDS:
        for term in (patient_field.key, patient_field.label) + patient_field.synonyms:
            index.setdefault(normalize_header(term), patient_field.key)
    return index


_SYNONYM_INDEX = _build_synonym_index()


def suggest_field(header: str) -> Optional[str]:
    """Canonical field for a header, or None when it is not recognized."""
    return _SYNONYM_INDEX.get(normalize_header(header))


def suggest_mapping(headers: List[str]) -> List[Tuple[str, Optional[str]]]:
    """
    Propose a canonical field for every header.

    A canonical field is only proposed once; later headers that would map
    to an already-proposed field are left unmapped.

    Returns:
        List of (csv header, suggested field or None), in header order
    """
    taken = set()
    suggestions: List[Tuple[str, Optional[str]]] = []
    for header in headers:
        key = suggest_field(header)
        if key in taken:
            key = None
        if key:
            taken.add(key)
        suggestions.append((header, key))

    unmapped = [h for h, key in suggestions if key is None]
    if unmapped:
        logger.debug(f"No mapping suggested for columns: {unmapped}")
    return suggestions


def validate_mapping(mapping: Dict[str, Optional[str]], headers: List[str]) -> Dict[str, str]:
    """
    Check an operator-confirmed mapping against the file headers.

    Args:
        mapping: CSV header -> canonical field or None (ignored column)
        headers: Headers of the uploaded file

    Returns:
        Dict[str, str]: Only the mapped columns

    Raises:
        ValidationError: Unknown header, unknown field, or a field mapped twice
    """
    known_headers = set(headers)
    confirmed: Dict[str, str] = {}
    seen: Dict[str, str] = {}

    for header, key in mapping.items():
        if header not in known_headers:
            raise ValidationError(
                f"Column '{header}' is not present in the file",
                details={"column": header},
            )
        if not key:
            continue
        if key not in FIELDS_BY_KEY:
            raise ValidationError(
                f"Unknown patient field '{key}'",
                details={"column": header, "field": key},
            )
        if key in seen:
            raise ValidationError(
                f"Patient field '{key}' is mapped to both '{seen[key]}' and '{header}'",
                details={"field": key, "columns": [seen[key], header]},
            )
        seen[key] = header
        confirmed[header] = key

    return confirmed


def field_catalogue() -> List[Dict[str, object]]:
    """Choices offered for each column, starting with the 'ignore' option."""
    catalogue: List[Dict[str, object]] = [{"key": None, "label": IGNORE_LABEL, "required": False}]
    catalogue.extend(
        {"key": f.key, "label": f.label, "required": f.required}
        for f in PATIENT_FIELDS
    )
    return catalogue


def build_template(variant: str = "empty") -> str:
    """
    CSV template with the canonical column labels.

    Args:
        variant: "empty" for the header line only, "example" to add a sample row
    """
    buffer = io.StringIO()
    writer = csv.writer(buffer, delimiter=TEMPLATE_DELIMITER, lineterminator="\n")
    writer.writerow([f.label for f in PATIENT_FIELDS])
    if variant == "example":
        writer.writerow([f.example for f in PATIENT_FIELDS])
    return buffer.getvalue()
