"""Dockbase Core -- errors, results, logging and settings.

Architecture::

    errors.py      Structured error hierarchy (DockbaseError and friends)
    result.py      Result envelope (Ok / Err) returned by the service facade
    logging.py     structlog configuration and context binding
    settings.py    pydantic-settings configuration (DOCKBASE_* env vars)
"""

from dockbase.core.errors import DockbaseError, ErrorCategory
from dockbase.core.result import Err, Ok, Result

__all__ = [
    "DockbaseError",
    "ErrorCategory",
    "Ok",
    "Err",
    "Result",
]
