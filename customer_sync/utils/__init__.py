"""Utility modules for the sync.

Includes:
- Logging configuration
- Structured pipeline logging
- File I/O helpers
"""

from .file_io import chunked, load_json_document
from .logging_config import setup_logging
from .pipeline_logger import PipelineLogger, timed_operation

__all__ = [
    "setup_logging",
    "load_json_document",
    "chunked",
    "PipelineLogger",
    "timed_operation",
]
