"""Document transformation modules.

Handles:
- Scalar normalization (identifiers, numbers, timestamps)
- Locating arrays in loosely structured documents
- Field-synonym resolution
- Canonical record extraction
"""

from .extract import ExtractionResult, RecordExtractor
from .fields import FieldSpec, project_record, resolve_field
from .locate import LocatedArrays, find_array, locate_arrays
from .normalize import (
    is_zero_date,
    normalize_identifier,
    normalize_integer,
    normalize_number,
    normalize_timestamp,
    sanitize_row,
)

__all__ = [
    # Normalization
    "normalize_identifier",
    "normalize_number",
    "normalize_integer",
    "normalize_timestamp",
    "is_zero_date",
    "sanitize_row",
    # Locating
    "find_array",
    "locate_arrays",
    "LocatedArrays",
    # Field synonyms
    "FieldSpec",
    "resolve_field",
    "project_record",
    # Extraction
    "RecordExtractor",
    "ExtractionResult",
]
