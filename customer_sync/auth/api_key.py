"""Service key authentication for the store's REST gateway."""

import logging

logger = logging.getLogger(__name__)


class APIKeyAuth:
    """API key authentication handler.

    Supabase's gateway expects the key twice: as the ``apikey`` header and
    as a bearer token.
    """

    def __init__(
        self,
        api_key: str,
        key_name: str = "apikey",
        bearer: bool = True,
    ):
        """Initialize API key auth.

        Args:
            api_key: The API key value
            key_name: Name of the header carrying the key
            bearer: Also send the key as ``Authorization: Bearer <key>``
        """
        if not api_key:
            raise ValueError("api_key is required")

        self.api_key = api_key
        self.key_name = key_name
        self.bearer = bearer

        logger.debug(
            "APIKeyAuth initialized",
            extra={"key_name": key_name, "bearer": bearer}
        )

    def get_auth_header(self) -> dict:
        """Get authorization header dict for requests."""
        headers = {self.key_name: self.api_key}
        if self.bearer:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def __repr__(self) -> str:
        return f"APIKeyAuth(key_name={self.key_name!r}, bearer={self.bearer})"
