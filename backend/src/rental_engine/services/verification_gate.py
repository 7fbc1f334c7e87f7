"""Identity-verification gate for usage-enabling actions.

Soft gate: booking creation, payment and confirmation are allowed for any
user. Only the hand-over (check-in, Confirmed -> InProgress) requires an
approved verification. A lookup that times out or fails never counts as
approved.
"""

import asyncio
import logging

import httpx

from rental_engine.domain.enums import VerificationStatus

logger = logging.getLogger(__name__)


class VerificationRequiredError(Exception):
    """Signal that the user must complete identity verification before retrying."""

    def __init__(self, user_id: str, status: VerificationStatus):
        self.user_id = user_id
        self.status = status
        super().__init__(f"Identity verification required for user {user_id} (status: {status.value})")


class VerificationUnavailableError(Exception):
    """Raised when the verification service cannot be reached in time. Retryable."""

    def __init__(self, user_id: str, reason: str):
        self.user_id = user_id
        self.reason = reason
        super().__init__(f"Verification lookup failed for user {user_id}: {reason}")


class VerificationGate:
    """Checks a user's verification status before usage-enabling actions."""

    def __init__(self, client, timeout: float = 10.0):
        self.client = client
        self.timeout = timeout

    async def status_of(self, user_id: str, timeout: float | None = None) -> VerificationStatus:
        try:
            return await asyncio.wait_for(
                self.client.get_status(user_id),
                timeout=timeout if timeout is not None else self.timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Verification lookup timed out for user %s", user_id)
            raise VerificationUnavailableError(user_id, "timeout")
        except httpx.HTTPError as exc:
            logger.warning("Verification lookup failed for user %s: %s", user_id, exc)
            raise VerificationUnavailableError(user_id, str(exc))

    async def require_approved(self, user_id: str, timeout: float | None = None) -> None:
        """Raise VerificationRequiredError unless the user is approved."""
        status = await self.status_of(user_id, timeout)
        if status != VerificationStatus.APPROVED:
            logger.info("Usage blocked pending verification: user=%s, status=%s", user_id, status.value)
            raise VerificationRequiredError(user_id, status)
