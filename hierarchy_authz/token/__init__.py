"""
Bearer-credential validation.

Extract a credential from request headers (header first, then cookie) and
turn it into a ``Principal``. No dependency on the database or the guard.
"""

from .config import TokenConfig
from .principal import Principal, RequestType
from .validator import TokenValidator, extract_credential

__all__ = [
    "TokenConfig",
    "Principal",
    "RequestType",
    "TokenValidator",
    "extract_credential",
]
