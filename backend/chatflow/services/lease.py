"""
Lease Manager
Per-(flow, conversation) mutual exclusion with a bounded wait
"""
import logging
import asyncio
from contextlib import asynccontextmanager
from typing import Dict, Optional, AsyncIterator

from ..core.config import settings
from ..core.exceptions import LeaseUnavailable

logger = logging.getLogger(__name__)


class LeaseManager:
    """
    Serializes work on one conversation's execution.

    Each key gets its own asyncio.Lock; a waiter that cannot get it within
    the timeout receives LeaseUnavailable so the caller can defer the event.
    """

    def __init__(self, timeout: Optional[float] = None):
        self.timeout = settings.LEASE_TIMEOUT_SECONDS if timeout is None else timeout
        self._locks: Dict[str, asyncio.Lock] = {}
        self._waiters: Dict[str, int] = {}

    @staticmethod
    def get_lease_key(flow_id: str, conversation_id: str) -> str:
        """Generate unique key for a lease"""
        return f"{flow_id}:{conversation_id}"

    def is_held(self, flow_id: str, conversation_id: str) -> bool:
        lock = self._locks.get(self.get_lease_key(flow_id, conversation_id))
        return bool(lock and lock.locked())

    @asynccontextmanager
    async def lease(
        self,
        flow_id: str,
        conversation_id: str,
        timeout: Optional[float] = None
    ) -> AsyncIterator[str]:
        """
        Hold the lease for the duration of the block.

        Raises:
            LeaseUnavailable: if not acquired within the timeout
        """
        key = self.get_lease_key(flow_id, conversation_id)
        wait = self.timeout if timeout is None else timeout
        lock = self._locks.setdefault(key, asyncio.Lock())

        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            await asyncio.wait_for(lock.acquire(), timeout=wait)
        except asyncio.TimeoutError:
            logger.warning(f"Lease {key} not acquired within {wait:.1f}s")
            raise LeaseUnavailable(key, wait)
        finally:
            self._waiters[key] -= 1

        try:
            logger.debug(f"Lease {key} acquired")
            yield key
        finally:
            lock.release()
            logger.debug(f"Lease {key} released")
            if self._waiters.get(key) == 0 and not lock.locked():
                self._locks.pop(key, None)
                self._waiters.pop(key, None)
