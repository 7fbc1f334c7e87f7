"""HTTP client for the identity-verification (KYC) service."""

from __future__ import annotations

import logging

import httpx

from rental_engine.domain.enums import VerificationStatus

logger = logging.getLogger(__name__)


class VerificationClient:
    """Reads a user's verification status. The service owns the records."""

    def __init__(self, base_url: str, api_key: str = "", timeout: float = 10.0) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout

    async def get_status(self, user_id: str) -> VerificationStatus:
        """Return the user's status; a user with no record is `NONE`.

        Raises httpx.HTTPError on transport failures and non-404 error responses.
        """
        headers = {"Authorization": f"Bearer {self._api_key}"} if self._api_key else {}
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            resp = await client.get(f"{self._base_url}/users/{user_id}/verification", headers=headers)
        if resp.status_code == 404:
            return VerificationStatus.NONE
        resp.raise_for_status()

        raw = str(resp.json().get("status", "none")).lower()
        try:
            return VerificationStatus(raw)
        except ValueError:
            logger.warning("Unknown verification status %r for user %s", raw, user_id)
            return VerificationStatus.NONE
