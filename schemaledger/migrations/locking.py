"""
Store migration lock.

Serializes apply/revert calls for one store within the process. Locks are
keyed by store identity (database URL without password) and shared by
every MigrationLock, so two runners targeting the same store wait on each
other.

The lock is process-wide only; it does not coordinate separate processes.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Dict, Optional

from schemaledger.errors import LockTimeoutError

logger = logging.getLogger(__name__)

_STORE_LOCKS: Dict[str, asyncio.Lock] = {}


class MigrationLock:
    """
    Per-store asyncio lock acquired under a timeout.

    Example:
        lock = MigrationLock(timeout=30.0)
        async with lock.hold(database.identity):
            ...
    """

    def __init__(self, timeout: float = 30.0, registry: Optional[Dict[str, asyncio.Lock]] = None):
        self.timeout = timeout
        self.registry = _STORE_LOCKS if registry is None else registry

    def get_lock(self, identity: str) -> asyncio.Lock:
        """Get or create the lock for a store."""
        if identity not in self.registry:
            self.registry[identity] = asyncio.Lock()
        return self.registry[identity]

    @asynccontextmanager
    async def hold(self, identity: str):
        """
        Hold the store lock for the duration of the block.

        Raises:
            LockTimeoutError: If the lock is not acquired within the timeout
        """
        lock = self.get_lock(identity)

        try:
            async with asyncio.timeout(self.timeout):
                await lock.acquire()
        except TimeoutError as e:
            raise LockTimeoutError(
                f"Migration already in progress for {identity} "
                f"(waited {self.timeout:g}s)",
                details={'store': identity, 'timeout': self.timeout},
            ) from e

        logger.debug("Acquired migration lock for %s", identity)
        try:
            yield
        finally:
            lock.release()
            logger.debug("Released migration lock for %s", identity)
