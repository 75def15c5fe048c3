"""
Anonymous Voting Client Receipt Service
Permanent receipt polling and one-time verification-token redemption
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Callable, Optional, Set

from evote_client.api.client import ElectionAuthorityClient
from evote_client.config import Settings
from evote_client.exceptions import (
    FlowCancelledError,
    NotFoundError,
    PhaseTimeoutError,
    TokenExpiredError,
    TokenReuseError,
    ValidationError,
    VerificationError,
    VotingClientError,
)
from evote_client.schemas import CountdownKind, Receipt, VerificationToken
from evote_client.services.timer_service import Countdown, TimerService
from evote_client.utils.security import mask_secret

logger = logging.getLogger(__name__)


class RedemptionFailure(str, Enum):
    ALREADY_USED = "already_used"
    EXPIRED_OR_NOT_FOUND = "expired_or_not_found"
    OTHER = "other"


def classify_redemption_error(error: Exception) -> RedemptionFailure:
    if isinstance(error, TokenReuseError):
        return RedemptionFailure.ALREADY_USED
    if isinstance(error, TokenExpiredError):
        return RedemptionFailure.EXPIRED_OR_NOT_FOUND
    return RedemptionFailure.OTHER


@dataclass
class ReceiptAttempt:
    """Outcome of one receipt lookup"""
    attempt: int
    max_attempts: int
    receipt: Optional[Receipt] = None
    error: Optional[VotingClientError] = None

    @property
    def found(self) -> bool:
        return self.receipt is not None

    @property
    def pending(self) -> bool:
        return self.receipt is None and (self.error is None or isinstance(self.error, NotFoundError))


class ReceiptTracker:
    """Tracks the receipt and verification token of one cast vote"""

    def __init__(
        self,
        client: ElectionAuthorityClient,
        timers: Optional[TimerService] = None,
        settings: Optional[Settings] = None
    ):
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")
        self.client = client
        self.settings = settings or client.settings
        self.timers = timers or TimerService(clock=client.clock, settings=self.settings)
        self._redeemed: Set[str] = set()
        self._polling_task: Optional[asyncio.Task] = None
        self._generation = 0

    # ========================================================================
    # Receipt polling
    # ========================================================================

    async def iter_receipt_attempts(
        self,
        election_id: str,
        vote_id: str,
        max_attempts: Optional[int] = None,
        interval_ms: Optional[int] = None
    ) -> AsyncIterator[ReceiptAttempt]:
        """
        Lazily look the receipt up, at most max_attempts times

        Each call starts a fresh sequence. The sequence ends after the
        first found receipt or after the last attempt; there is no sleep
        after the final attempt.
        """
        max_attempts = max_attempts if max_attempts is not None else self.settings.RECEIPT_POLL_MAX_ATTEMPTS
        interval_ms = interval_ms if interval_ms is not None else self.settings.RECEIPT_POLL_INTERVAL_MS
        if max_attempts < 1:
            raise ValidationError("max_attempts must be at least 1")
        if interval_ms < 0:
            raise ValidationError("interval_ms must not be negative")

        generation = self._generation
        for attempt in range(1, max_attempts + 1):
            if generation != self._generation:
                return

            try:
                receipt = await self.client.get_receipt(election_id, vote_id)
            except VotingClientError as e:
                yield ReceiptAttempt(attempt, max_attempts, error=e)
            else:
                yield ReceiptAttempt(attempt, max_attempts, receipt=receipt)
                return

            if attempt < max_attempts:
                await asyncio.sleep(interval_ms / 1000)

    async def poll_receipt(
        self,
        election_id: str,
        vote_id: str,
        max_attempts: Optional[int] = None,
        interval_ms: Optional[int] = None
    ) -> Receipt:
        """
        Poll until the permanent receipt appears

        Not-found answers are expected while the vote is batched and stay
        silent; other errors are logged and polling carries on.

        Raises:
            PhaseTimeoutError: the attempt budget ran out
        """
        generation = self._generation
        last: Optional[ReceiptAttempt] = None
        async for last in self.iter_receipt_attempts(election_id, vote_id, max_attempts, interval_ms):
            if last.found:
                self.logger.info(f"Receipt for {mask_secret(vote_id, 13)} found after {last.attempt} attempt(s)")
                return last.receipt
            if not last.pending:
                self.logger.warning(
                    f"Receipt lookup attempt {last.attempt}/{last.max_attempts} failed: {last.error.message}"
                )

        if generation != self._generation:
            raise FlowCancelledError("Receipt polling was cancelled")

        attempts = last.attempt if last is not None else 0
        self.logger.warning(f"Receipt for {mask_secret(vote_id, 13)} not available after {attempts} attempts")
        raise PhaseTimeoutError(
            "Your vote was submitted but the receipt is not available yet. "
            "Look it up later with your vote ID."
        )

    def start_polling(
        self,
        election_id: str,
        vote_id: str,
        max_attempts: Optional[int] = None,
        interval_ms: Optional[int] = None
    ) -> asyncio.Task:
        """Run poll_receipt in the background; cancel() stops it"""
        if self._polling_task is not None and not self._polling_task.done():
            self._polling_task.cancel()
        self._polling_task = asyncio.get_running_loop().create_task(
            self.poll_receipt(election_id, vote_id, max_attempts, interval_ms)
        )
        return self._polling_task

    # ========================================================================
    # Verification token
    # ========================================================================

    def track_verification_token(
        self,
        token: VerificationToken,
        on_expire: Optional[Callable[[], None]] = None,
        on_tick: Optional[Callable[[int], None]] = None
    ) -> Countdown:
        """Advisory countdown; the authority decides expiry"""
        return self.timers.start(
            CountdownKind.VERIFICATION_TOKEN,
            token.expires_at,
            on_expire or self._on_token_expired,
            on_tick=on_tick,
        )

    def _on_token_expired(self):
        self.logger.info("Verification token countdown reached zero")

    def token_remaining_seconds(self) -> Optional[int]:
        return self.timers.remaining(CountdownKind.VERIFICATION_TOKEN)

    async def redeem_verification_token(self, token: str) -> str:
        """
        Reveal the candidate behind a verification token, exactly once

        The authority is always asked, even when the local countdown has
        run out. A token this tracker already redeemed is refused locally.

        Raises:
            TokenReuseError: ALREADY_USED
            TokenExpiredError: EXPIRED_OR_NOT_FOUND
            VerificationError: OTHER
        """
        token = (token or "").strip()
        if not token:
            raise ValidationError("Enter your verification token")
        if token in self._redeemed:
            raise TokenReuseError("This verification token has already been used")

        if self._token_countdown_expired():
            self.logger.info("Local countdown expired, asking the authority anyway")

        try:
            candidate_id = await self.client.redeem_verification_token(token)
        except TokenReuseError:
            self._redeemed.add(token)
            raise
        except (TokenExpiredError, VerificationError) as e:
            self.logger.warning(
                f"Token {mask_secret(token)} redemption failed "
                f"({classify_redemption_error(e).value}): {e.message}"
            )
            raise

        self._redeemed.add(token)
        self.timers.cancel(CountdownKind.VERIFICATION_TOKEN)
        return candidate_id

    def _token_countdown_expired(self) -> bool:
        countdown = self.timers.get(CountdownKind.VERIFICATION_TOKEN)
        return countdown is not None and countdown.expired

    # ========================================================================
    # Teardown
    # ========================================================================

    def cancel(self):
        """Stop background polling and the token countdown"""
        self._generation += 1
        if self._polling_task is not None and not self._polling_task.done():
            self._polling_task.cancel()
        self._polling_task = None
        self.timers.cancel(CountdownKind.VERIFICATION_TOKEN)
