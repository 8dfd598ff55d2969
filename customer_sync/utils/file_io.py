"""File I/O helpers for the input document."""

import json
import logging
from pathlib import Path
from typing import Any, Iterator, Sequence, TypeVar, Union

from customer_sync.errors import SetupError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def load_json_document(file_path: Union[str, Path]) -> Any:
    """Read and parse the input JSON document.

    Args:
        file_path: Path to the JSON file

    Returns:
        Parsed JSON root

    Raises:
        SetupError: If the file is missing, unreadable or not valid JSON
    """
    if not file_path:
        raise SetupError("No input file given")

    path = Path(file_path)
    if not path.is_file():
        raise SetupError(f"Input file not found: {path}")

    try:
        raw = path.read_text(encoding="utf-8-sig")
    except (OSError, UnicodeDecodeError) as e:
        raise SetupError(f"Could not read {path}: {e}") from e

    try:
        document = json.loads(raw)
    except json.JSONDecodeError as e:
        raise SetupError(f"Invalid JSON in {path}: {e}") from e

    logger.info(
        f"Loaded {path}",
        extra={"file_path": str(path), "file_size_bytes": path.stat().st_size}
    )

    return document


def chunked(items: Sequence[T], size: int) -> Iterator[tuple[int, list[T]]]:
    """Yield (offset, chunk) pairs of at most ``size`` items."""
    if size <= 0:
        raise ValueError(f"chunk size must be positive, got {size}")
    for offset in range(0, len(items), size):
        yield offset, list(items[offset:offset + size])
