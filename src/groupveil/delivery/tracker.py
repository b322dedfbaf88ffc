"""Advisory polling of submitted messages until the host confirms them.

The tracker never touches session keys. Each pending item is checked
independently; one failing status lookup leaves that item pending and does
not affect the others. Submission retries belong to the transport layer.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, Dict, Optional

from ..session.keys import EncryptedMessage

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 10.0
DEFAULT_MAX_RESOLVED = 1000


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


FetchStatus = Callable[[str], Awaitable["DeliveryStatus | str"]]


@dataclass
class PendingDelivery:
    transaction_id: str
    group_id: str
    message: EncryptedMessage
    submitted_at: datetime
    status: DeliveryStatus = DeliveryStatus.PENDING
    checks: int = 0
    last_error: Optional[str] = None


class DeliveryTracker:
    """Polls ``fetch_status`` for every tracked transaction at a fixed interval.

    Confirmed and failed items stay queryable through ``status`` until
    ``forget`` is called or ``max_resolved`` newer items push them out.
    """

    def __init__(
        self,
        fetch_status: FetchStatus,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        max_resolved: int = DEFAULT_MAX_RESOLVED,
    ):
        if poll_interval <= 0:
            raise ValueError("poll_interval must be positive")
        if max_resolved < 0:
            raise ValueError("max_resolved must be non-negative")
        self._max_resolved = int(max_resolved)
        self._fetch_status = fetch_status
        self._interval = float(poll_interval)
        self._pending: Dict[str, PendingDelivery] = {}
        self._resolved: Dict[str, PendingDelivery] = {}
        self._task: Optional[asyncio.Task[None]] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def track(self, transaction_id: str, group_id: str, message: EncryptedMessage) -> PendingDelivery:
        item = PendingDelivery(
            transaction_id=transaction_id,
            group_id=group_id,
            message=message,
            submitted_at=datetime.now(timezone.utc),
        )
        self._pending[transaction_id] = item
        self._resolved.pop(transaction_id, None)
        return item

    def pending(self) -> list[PendingDelivery]:
        return list(self._pending.values())

    def status(self, transaction_id: str) -> Optional[DeliveryStatus]:
        item = self._pending.get(transaction_id) or self._resolved.get(transaction_id)
        return item.status if item else None

    def forget(self, transaction_id: str) -> bool:
        """Drop a transaction, pending or resolved. Returns whether it was known."""
        found = self._pending.pop(transaction_id, None) or self._resolved.pop(transaction_id, None)
        return found is not None

    async def _check(self, item: PendingDelivery) -> DeliveryStatus:
        item.checks += 1
        status = DeliveryStatus(await self._fetch_status(item.transaction_id))
        item.status = status
        item.last_error = None
        return status

    async def poll_once(self) -> dict[str, DeliveryStatus]:
        """Check every pending item once and return the status each one ended with."""
        items = list(self._pending.values())
        if not items:
            return {}
        logger.debug("polling %d pending deliveries", len(items))
        results = await asyncio.gather(*(self._check(item) for item in items), return_exceptions=True)

        outcome: dict[str, DeliveryStatus] = {}
        for item, result in zip(items, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                item.last_error = str(result) or type(result).__name__
                logger.warning("status check for %s failed: %s", item.transaction_id, item.last_error)
                outcome[item.transaction_id] = DeliveryStatus.PENDING
                continue
            outcome[item.transaction_id] = result
            # forgotten or re-tracked while the check was in flight
            if self._pending.get(item.transaction_id) is not item:
                continue
            if result is not DeliveryStatus.PENDING:
                del self._pending[item.transaction_id]
                self._resolved[item.transaction_id] = item
                while len(self._resolved) > self._max_resolved:
                    del self._resolved[next(iter(self._resolved))]
                logger.info("delivery %s for group %s %s", item.transaction_id, item.group_id, result.value)
        return outcome

    async def _run(self) -> None:
        while True:
            await self.poll_once()
            await asyncio.sleep(self._interval)

    def start(self) -> None:
        """Start background polling on the running event loop."""
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
