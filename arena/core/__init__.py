"""Core module - configuration, errors, and retry helpers"""

from .config import Settings, get_settings
from .errors import AppError, DataFetchError, ErrorCode, RunStateError

__all__ = [
    "AppError",
    "DataFetchError",
    "ErrorCode",
    "RunStateError",
    "Settings",
    "get_settings",
]
