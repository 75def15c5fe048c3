"""
Tests for receipt polling and verification-token redemption
"""

import asyncio
from datetime import timedelta

import pytest

from conftest import ELECTION_ID
from evote_client.exceptions import (
    NotFoundError,
    PhaseTimeoutError,
    TokenExpiredError,
    TokenReuseError,
    ValidationError,
    VerificationError,
)
from evote_client.schemas import VerificationToken
from evote_client.services.receipt_service import (
    ReceiptTracker,
    RedemptionFailure,
    classify_redemption_error,
)

VOTE_ID = "VOTE_0123456789abcdef0123456789abcdef"


@pytest.fixture
def tracker(client, timers, settings):
    tracker = ReceiptTracker(client, timers=timers, settings=settings)
    yield tracker
    tracker.cancel()


@pytest.fixture
def stored_receipt(authority, clock):
    authority.receipts[(ELECTION_ID, VOTE_ID)] = {
        "voteID": VOTE_ID,
        "electionId": ELECTION_ID,
        "status": "CONFIRMED",
        "timestamp": clock().isoformat(),
    }


def issue_token(authority, clock, token="tok_1", candidate="DMK", ttl=120):
    authority.tokens[token] = {
        "candidateId": candidate,
        "used": False,
        "expiresAt": clock() + timedelta(seconds=ttl),
    }
    return token


class TestReceiptPolling:

    @pytest.mark.asyncio
    async def test_found_after_pending(self, tracker, authority, stored_receipt):
        authority.receipt_ready_after = 2

        receipt = await tracker.poll_receipt(ELECTION_ID, VOTE_ID)

        assert receipt.vote_id == VOTE_ID
        assert receipt.status == "CONFIRMED"
        assert authority.receipt_lookups == 3

    @pytest.mark.asyncio
    async def test_bounded_attempts(self, tracker, authority, settings):
        with pytest.raises(PhaseTimeoutError) as exc_info:
            await tracker.poll_receipt(ELECTION_ID, VOTE_ID)

        assert isinstance(exc_info.value, TimeoutError)
        assert authority.receipt_lookups == settings.RECEIPT_POLL_MAX_ATTEMPTS

    @pytest.mark.asyncio
    async def test_server_errors_do_not_abort(self, tracker, authority, stored_receipt):
        authority.receipt_errors = 2

        receipt = await tracker.poll_receipt(ELECTION_ID, VOTE_ID)

        assert receipt.election_id == ELECTION_ID
        assert authority.receipt_lookups == 3

    @pytest.mark.asyncio
    async def test_unusable_receipt_does_not_abort(self, tracker, authority):
        authority.override("GET", f"/votes/receipt/{ELECTION_ID}/{VOTE_ID}", 200, {"success": True, "data": {
            "voteID": VOTE_ID, "electionId": ELECTION_ID, "timestamp": "2026-03-01T09:00:00Z", "status": ["x"],
        }})

        with pytest.raises(PhaseTimeoutError):
            await tracker.poll_receipt(ELECTION_ID, VOTE_ID, max_attempts=3)

        assert authority.called("GET", f"/votes/receipt/{ELECTION_ID}/{VOTE_ID}") == 3

    @pytest.mark.asyncio
    async def test_numeric_status(self, tracker, authority):
        authority.override("GET", f"/votes/receipt/{ELECTION_ID}/{VOTE_ID}", 200, {"success": True, "data": {
            "voteID": VOTE_ID, "electionId": ELECTION_ID, "timestamp": "2026-03-01T09:00:00Z", "status": 1,
        }})

        receipt = await tracker.poll_receipt(ELECTION_ID, VOTE_ID)

        assert receipt.status == "1"

    @pytest.mark.asyncio
    async def test_attempt_sequence(self, tracker, authority, stored_receipt):
        authority.receipt_ready_after = 1

        attempts = [a async for a in tracker.iter_receipt_attempts(ELECTION_ID, VOTE_ID, max_attempts=3)]

        assert [a.attempt for a in attempts] == [1, 2]
        assert attempts[0].pending
        assert isinstance(attempts[0].error, NotFoundError)
        assert attempts[1].found

    @pytest.mark.asyncio
    async def test_each_sequence_starts_fresh(self, tracker, authority):
        first = [a async for a in tracker.iter_receipt_attempts(ELECTION_ID, VOTE_ID, max_attempts=2)]
        second = [a async for a in tracker.iter_receipt_attempts(ELECTION_ID, VOTE_ID, max_attempts=2)]

        assert [a.attempt for a in first] == [1, 2]
        assert [a.attempt for a in second] == [1, 2]
        assert authority.receipt_lookups == 4

    @pytest.mark.asyncio
    async def test_invalid_budget(self, tracker):
        with pytest.raises(ValidationError):
            async for _ in tracker.iter_receipt_attempts(ELECTION_ID, VOTE_ID, max_attempts=0):
                pass

    @pytest.mark.asyncio
    async def test_cancel_stops_background_polling(self, tracker, authority):
        task = tracker.start_polling(ELECTION_ID, VOTE_ID, max_attempts=1000, interval_ms=20)
        await asyncio.sleep(0.05)

        tracker.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        lookups = authority.receipt_lookups
        await asyncio.sleep(0.05)
        assert authority.receipt_lookups == lookups


class TestVerificationToken:

    @pytest.mark.asyncio
    async def test_redeem_once(self, tracker, authority, clock):
        token = issue_token(authority, clock)

        assert await tracker.redeem_verification_token(token) == "DMK"

        with pytest.raises(TokenReuseError):
            await tracker.redeem_verification_token(token)
        assert authority.called("GET", f"/votes/verify-choice/{token}") == 1

    @pytest.mark.asyncio
    async def test_reuse_reported_by_authority(self, tracker, client, timers, settings, authority, clock):
        token = issue_token(authority, clock)
        await tracker.redeem_verification_token(token)

        other = ReceiptTracker(client, timers=timers, settings=settings)
        with pytest.raises(TokenReuseError) as exc_info:
            await other.redeem_verification_token(token)

        assert classify_redemption_error(exc_info.value) == RedemptionFailure.ALREADY_USED

    @pytest.mark.asyncio
    async def test_already_used_message(self, tracker, authority):
        authority.override("GET", "/votes/verify-choice/tok_x", 400, {"success": False, "message": "ALREADY_USED"})

        with pytest.raises(TokenReuseError):
            await tracker.redeem_verification_token("tok_x")

    @pytest.mark.asyncio
    async def test_expired_token(self, tracker, authority, clock):
        token = issue_token(authority, clock)
        clock.advance(121)

        with pytest.raises(TokenExpiredError) as exc_info:
            await tracker.redeem_verification_token(token)

        assert classify_redemption_error(exc_info.value) == RedemptionFailure.EXPIRED_OR_NOT_FOUND

    @pytest.mark.asyncio
    async def test_unknown_token(self, tracker):
        with pytest.raises(TokenExpiredError):
            await tracker.redeem_verification_token("never-issued")

    @pytest.mark.asyncio
    async def test_other_rejection(self, tracker, authority):
        authority.override("GET", "/votes/verify-choice/tok_bad", 400, {"success": False, "message": "Malformed token"})

        with pytest.raises(VerificationError) as exc_info:
            await tracker.redeem_verification_token("tok_bad")

        assert classify_redemption_error(exc_info.value) == RedemptionFailure.OTHER

    @pytest.mark.asyncio
    async def test_blank_token(self, tracker, authority):
        with pytest.raises(ValidationError):
            await tracker.redeem_verification_token("  ")
        assert authority.calls == []

    @pytest.mark.asyncio
    async def test_authority_decides_expiry(self, tracker, authority, clock, timers):
        token = issue_token(authority, clock, ttl=120)
        expired = []
        tracker.track_verification_token(
            VerificationToken(token=token, expires_at=clock() + timedelta(seconds=5)),
            on_expire=lambda: expired.append(1),
        )

        clock.advance(10)
        timers.tick_all()
        assert expired == [1]
        assert tracker.token_remaining_seconds() == 0

        assert await tracker.redeem_verification_token(token) == "DMK"

    @pytest.mark.asyncio
    async def test_redeem_stops_countdown(self, tracker, authority, clock):
        token = issue_token(authority, clock)
        tracker.track_verification_token(VerificationToken(token=token, expires_at=clock() + timedelta(minutes=2)))
        assert tracker.token_remaining_seconds() == 120

        await tracker.redeem_verification_token(token)
        assert tracker.token_remaining_seconds() is None
