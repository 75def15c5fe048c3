"""
Anonymous Voting Client Results Service
Read-only live results polling
"""

import asyncio
import logging
from typing import Callable, Optional

from evote_client.api.client import ElectionAuthorityClient
from evote_client.config import Settings
from evote_client.exceptions import ValidationError, VotingClientError
from evote_client.schemas import ElectionResults

logger = logging.getLogger(__name__)


class ResultsWatcher:
    """
    Polls election results on its own timer

    Runs alongside the voting flow and must be cancelled when the
    owning view goes away.
    """

    def __init__(self, client: ElectionAuthorityClient, settings: Optional[Settings] = None):
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")
        self.client = client
        self.settings = settings or client.settings
        self.latest: Optional[ElectionResults] = None
        self.last_error: Optional[VotingClientError] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def fetch(self, election_id: str) -> ElectionResults:
        if not election_id:
            raise ValidationError("No election selected")
        results = await self.client.get_results(election_id)
        self.latest = results
        return results

    def watch(
        self,
        election_id: str,
        on_update: Callable[[ElectionResults], None],
        interval: Optional[float] = None
    ) -> asyncio.Task:
        """Start polling; a running watch is replaced"""
        if not election_id:
            raise ValidationError("No election selected")
        self.cancel()
        interval = interval if interval is not None else self.settings.RESULTS_REFRESH_SECONDS
        self._task = asyncio.get_running_loop().create_task(
            self._run(election_id, on_update, interval)
        )
        return self._task

    async def _run(self, election_id: str, on_update: Callable[[ElectionResults], None], interval: float):
        while True:
            try:
                results = await self.fetch(election_id)
            except VotingClientError as e:
                self.last_error = e
                self.logger.warning(f"Results refresh for {election_id} failed: {e.message}")
            else:
                self.last_error = None
                try:
                    on_update(results)
                except Exception as e:
                    self.logger.error(f"Results update callback failed: {e}", exc_info=True)
            await asyncio.sleep(interval)

    def cancel(self):
        if self._task is not None and not self._task.done():
            self._task.cancel()
            self.logger.debug("Results watch cancelled")
        self._task = None
