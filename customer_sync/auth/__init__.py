"""Authentication for store access.

Supports:
- Service key authentication (apikey + bearer headers)
"""

from .api_key import APIKeyAuth

__all__ = ["APIKeyAuth"]
