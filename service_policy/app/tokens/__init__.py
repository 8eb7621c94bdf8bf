"""
Auth tokens that authenticate machine clients as a policy type.
"""

from .models import ApiScope, AuthToken
from .service import AuthTokenService

__all__ = [
    "ApiScope",
    "AuthToken",
    "AuthTokenService",
]
