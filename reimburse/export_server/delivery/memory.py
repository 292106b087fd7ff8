"""
In-memory delivery channel for testing and interactive use.

Two modes:
- Automatic: every delivery immediately resolves to a fixed outcome
- Pending: every delivery waits until resolve() is called, the way a
  compose or share sheet waits for the user

Invariants:
    - Each job has at most one pending delivery
    - A pending delivery is resolved exactly once
    - All data is lost on process exit

How to change safely:
    - Keep interface compatible with DeliveryChannel protocol
    - Add features to help with testing scenarios
"""

from __future__ import annotations

import asyncio
import logging

from .base import DeliveryError, DeliveryOutcome, DeliveryRequest

logger = logging.getLogger(__name__)


class InMemoryDeliveryChannel:
    """In-memory implementation of DeliveryChannel.

    Attributes:
        auto_outcome: Outcome returned immediately, or None for pending mode
        requests: Every request received, in order

    Example:
        >>> channel = InMemoryDeliveryChannel()          # pending mode
        >>> task = asyncio.create_task(channel.deliver(request))
        >>> channel.resolve(request.job_id, DeliveryOutcome.DELIVERED)
        >>> await task
        <DeliveryOutcome.DELIVERED: 'delivered'>
    """

    def __init__(self, auto_outcome: DeliveryOutcome | None = None) -> None:
        """Initialize the channel.

        Args:
            auto_outcome: Resolve deliveries immediately with this outcome;
                None keeps them pending until resolve() is called
        """
        self.auto_outcome = auto_outcome
        self.requests: list[DeliveryRequest] = []
        self._pending: dict[str, asyncio.Future[DeliveryOutcome]] = {}
        self._pending_requests: dict[str, DeliveryRequest] = {}
        self._arrived = asyncio.Event()

    async def deliver(self, request: DeliveryRequest) -> DeliveryOutcome:
        """Record the request and resolve or wait for an outcome."""
        self.requests.append(request)
        self._arrived.set()

        if self.auto_outcome is not None:
            logger.debug(f"Auto-resolving delivery {request.job_id}: {self.auto_outcome.value}")
            return self.auto_outcome

        if request.job_id in self._pending:
            raise DeliveryError(f"Delivery already pending for job {request.job_id}")

        future: asyncio.Future[DeliveryOutcome] = asyncio.get_running_loop().create_future()
        self._pending[request.job_id] = future
        self._pending_requests[request.job_id] = request
        try:
            return await future
        finally:
            self._pending.pop(request.job_id, None)
            self._pending_requests.pop(request.job_id, None)

    def resolve(self, job_id: str, outcome: DeliveryOutcome) -> bool:
        """Resolve a pending delivery.

        Args:
            job_id: Job whose delivery to resolve
            outcome: Outcome to report

        Returns:
            True if a pending delivery was resolved
        """
        future = self._pending.get(job_id)
        if future is None or future.done():
            return False
        future.set_result(outcome)
        logger.debug(f"Resolved delivery {job_id}: {outcome.value}")
        return True

    def pending(self) -> list[str]:
        """Job ids with a delivery waiting for an outcome."""
        return [job_id for job_id, f in self._pending.items() if not f.done()]

    def get_pending(self, job_id: str) -> DeliveryRequest | None:
        """Request waiting for an outcome, if any."""
        return self._pending_requests.get(job_id)

    async def wait_for_request(self, count: int = 1, timeout: float = 5.0) -> DeliveryRequest:
        """Wait until at least `count` requests arrived (testing helper)."""
        async def _wait() -> None:
            while len(self.requests) < count:
                self._arrived.clear()
                await self._arrived.wait()

        await asyncio.wait_for(_wait(), timeout=timeout)
        return self.requests[count - 1]
