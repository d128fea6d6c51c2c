"""Per-chat write serialization.

Writes to one chat (append, title, share state) run one at a time, in the
order they asked for the lease. Different chats never wait on each other.
"""

import asyncio
import contextlib
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict

import structlog

from ..domain.errors import ConflictError

logger = structlog.get_logger()


@dataclass
class _Lease:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    holders: int = 0  # current holder plus waiters


class ChatLeaseManager:
    """Hands out one lease per chat id."""

    def __init__(self, lease_timeout: float = 120.0) -> None:
        self.lease_timeout = lease_timeout
        self._leases: Dict[str, _Lease] = {}
        self._lock = asyncio.Lock()

    async def active_leases(self) -> int:
        async with self._lock:
            return len(self._leases)

    async def _checkout(self, chat_id: str) -> _Lease:
        async with self._lock:
            lease = self._leases.get(chat_id)
            if lease is None:
                lease = self._leases[chat_id] = _Lease()
            lease.holders += 1
            return lease

    async def _checkin(self, chat_id: str, lease: _Lease) -> None:
        async with self._lock:
            lease.holders -= 1
            if lease.holders == 0:
                del self._leases[chat_id]

    @contextlib.asynccontextmanager
    async def acquire(self, chat_id: str) -> AsyncIterator[None]:
        """Hold the chat's lease for the duration of the block."""
        lease = await self._checkout(chat_id)
        try:
            try:
                await asyncio.wait_for(lease.lock.acquire(), timeout=self.lease_timeout)
            except asyncio.TimeoutError:
                logger.warning("chat_lease_timeout", chat_id=chat_id)
                raise ConflictError("Chat is busy with another request, try again")
            try:
                yield
            finally:
                lease.lock.release()
        finally:
            await self._checkin(chat_id, lease)
