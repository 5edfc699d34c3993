# app/utils/ids.py

from enum import Enum
from uuid import uuid4

class IDPrefix(str, Enum):
    IMPORT = "import"
    ROW = "row"
    PATIENT = "patient"

def generate_prefixed_id(prefix: IDPrefix) -> str:
    """
    Generate a UUID string with a prefix.

    Args:
        prefix (IDPrefix): The entity prefix (e.g., IMPORT, PATIENT).

    Returns:
        str: A prefixed UUID string like 'import-xxxxxxxx-xxxx-xxxx-xxxx-xxxxxxxxxxxx'
    """
    return f"{prefix.value}-{uuid4()}"
