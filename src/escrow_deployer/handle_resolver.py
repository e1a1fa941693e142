"""
Settlement polling for relay operation handles.

Polling is read-only and re-entrant: after a restart, calling resolve again
with the same handle simply starts over from the first attempt.
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

from .errors import SettlementTimeoutError
from .utils.relay_utility import SettlementStatus

logger = logging.getLogger(__name__)


class SettlementSource(Protocol):
    async def get_settlement_status(self, handle: str) -> SettlementStatus: ...


@dataclass(frozen=True, slots=True)
class Settlement:
    """A settled operation handle."""
    handle: str
    transaction_id: str
    attempts: int
    succeeded: bool | None = None


class HandleResolver:
    """
    Polls the relay at a fixed interval until an operation handle settles.
    """

    def __init__(
        self,
        relay: SettlementSource,
        poll_interval: float = 5.0,
        max_attempts: int = 30,
        request_timeout: float = 30.0
    ):
        """
        Initialize the handle resolver.

        Args:
            relay: Source of settlement status
            poll_interval: Seconds between polls
            max_attempts: Polls before giving up
            request_timeout: Timeout in seconds for each status query
        """
        if max_attempts <= 0:
            raise ValueError(f"max_attempts must be positive, got {max_attempts}")
        self.relay = relay
        self.poll_interval = poll_interval
        self.max_attempts = max_attempts
        self.request_timeout = request_timeout

    async def _poll_once(self, handle: str) -> SettlementStatus:
        return await asyncio.wait_for(
            self.relay.get_settlement_status(handle),
            timeout=self.request_timeout
        )

    async def resolve(
        self,
        handle: str,
        on_attempt: Callable[[int], None] | None = None
    ) -> Settlement:
        """
        Poll until the handle settles.

        A failed poll counts as "not yet settled"; only exhausting every
        attempt without seeing a settlement record is a failure.

        Args:
            handle: Operation handle returned at submission
            on_attempt: Called with the attempt number before each poll

        Returns:
            Settlement with the settled transaction id

        Raises:
            SettlementTimeoutError: After max_attempts polls without settlement
        """
        last_error: str | None = None
        logger.info(
            f"Polling settlement of {handle} "
            f"(up to {self.max_attempts} attempts every {self.poll_interval}s)"
        )

        for attempt in range(1, self.max_attempts + 1):
            if on_attempt is not None:
                on_attempt(attempt)
            try:
                status = await self._poll_once(handle)
            except asyncio.TimeoutError:
                last_error = f"status query timed out after {self.request_timeout}s"
                logger.warning(f"Poll {attempt}/{self.max_attempts} for {handle}: {last_error}")
            except Exception as e:
                last_error = f"{type(e).__name__}: {e}"
                logger.warning(f"Poll {attempt}/{self.max_attempts} for {handle} failed: {last_error}")
            else:
                if status.settled and status.transaction_id:
                    if status.succeeded is False:
                        logger.warning(f"Operation {handle} settled but reported execution failure")
                    logger.info(
                        f"✓ Operation {handle} settled in {status.transaction_id} "
                        f"after {attempt} attempts"
                    )
                    return Settlement(
                        handle=handle,
                        transaction_id=status.transaction_id,
                        attempts=attempt,
                        succeeded=status.succeeded,
                    )
                logger.debug(f"Poll {attempt}/{self.max_attempts}: {handle} not settled yet")

            if attempt < self.max_attempts:
                await asyncio.sleep(self.poll_interval)

        logger.error(f"✗ Operation {handle} did not settle after {self.max_attempts} attempts")
        raise SettlementTimeoutError(handle, self.max_attempts, last_error)
