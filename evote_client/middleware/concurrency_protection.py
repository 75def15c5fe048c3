"""
Concurrency protection for mutating protocol calls
"""

import logging
from contextlib import asynccontextmanager
from typing import Dict, Optional

from evote_client.exceptions import ConcurrentOperationError

logger = logging.getLogger(__name__)


class InFlightGuard:
    """
    At most one mutating call in flight per session

    A second attempt while one is outstanding fails immediately instead of
    queueing, so no duplicate request ever reaches the network.
    """

    def __init__(self, owner: str = "session"):
        self.owner = owner
        self.active_operation: Optional[str] = None
        self.rejected_attempts = 0

    @property
    def busy(self) -> bool:
        return self.active_operation is not None

    @asynccontextmanager
    async def hold(self, operation: str):
        """Hold the guard for the duration of one mutating operation"""
        if self.active_operation is not None:
            self.rejected_attempts += 1
            logger.warning(
                f"{self.owner}: '{operation}' rejected, '{self.active_operation}' still in flight"
            )
            raise ConcurrentOperationError(
                f"'{self.active_operation}' is still in progress"
            )

        self.active_operation = operation
        try:
            yield
        finally:
            self.active_operation = None

    def get_concurrency_stats(self) -> Dict[str, object]:
        """Get concurrency statistics"""
        return {
            "active_operation": self.active_operation,
            "rejected_attempts": self.rejected_attempts,
        }
