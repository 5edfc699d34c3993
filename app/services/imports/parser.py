"""
CSV parser for the patient import pipeline.

Exports from third-party practice software are inconsistent: French tools
write ``;``-separated files, others use ``,``. The delimiter is picked once
from the header line and the rest of the file is tokenized with it.

This stage only tokenizes. Nothing here knows about patient fields.
"""
import hashlib
import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List

logger = logging.getLogger("practice.imports.parser")

_LINE_BREAK_RGX = re.compile(r"\r?\n")

QUOTE = '"'
SEMICOLON = ";"
COMMA = ","

CSVRow = Dict[str, str]


@dataclass
class ParsedCSV:
    """Header line plus data rows keyed by header."""
    headers: List[str] = field(default_factory=list)
    rows: List[CSVRow] = field(default_factory=list)
    delimiter: str = COMMA

    @property
    def row_count(self) -> int:
        return len(self.rows)


def detect_delimiter(line: str) -> str:
    """Semicolon if the line contains one, comma otherwise."""
    return SEMICOLON if SEMICOLON in line else COMMA


def split_line(line: str, delimiter: str) -> List[str]:
    """
    Tokenize one CSV line.

    Double quotes toggle quoted mode; a doubled quote inside a quoted field
    is a literal quote. Delimiters inside quotes are kept. Values are trimmed.

    Args:
        line: One line of the file, without its line break
        delimiter: Field separator

    Returns:
        List[str]: Field values in column order
    """
    values: List[str] = []
    current: List[str] = []
    in_quotes = False
    i = 0

    while i < len(line):
        char = line[i]
        if char == QUOTE:
            if in_quotes and i + 1 < len(line) and line[i + 1] == QUOTE:
                current.append(QUOTE)
                i += 1
            else:
                in_quotes = not in_quotes
        elif char == delimiter and not in_quotes:
            values.append("".join(current).strip())
            current = []
        else:
            current.append(char)
        i += 1

    values.append("".join(current).strip())
    return values


def parse_csv(content: str) -> ParsedCSV:
    """
    Parse raw CSV text into named rows.

    Blank lines are discarded, the first remaining line is the header, and
    rows whose values are all empty are skipped. Missing trailing values
    default to an empty string; values beyond the last header are dropped.

    Args:
        content: Raw file content

    Returns:
        ParsedCSV: Headers, rows and the detected delimiter
    """
    lines = [line for line in _LINE_BREAK_RGX.split(content or "") if line.strip()]
    if not lines:
        return ParsedCSV()

    delimiter = detect_delimiter(lines[0])
    headers = split_line(lines[0], delimiter)
    rows: List[CSVRow] = []

    for line in lines[1:]:
        values = split_line(line, delimiter)
        if not any(values):
            continue
        rows.append({
            header: values[index] if index < len(values) else ""
            for index, header in enumerate(headers)
        })

    logger.debug(f"Parsed {len(rows)} rows with {len(headers)} columns (delimiter {delimiter!r})")
    return ParsedCSV(headers=headers, rows=rows, delimiter=delimiter)


def compute_file_hash(content: str) -> str:
    """
    Fingerprint uploaded content to recognize re-uploads of the same file.

    Returns:
        str: First 16 hex characters of the SHA-256 digest
    """
    return hashlib.sha256(content.encode("utf-8")).hexdigest()[:16]
