"""
Response adapters for the election authority contract

One adapter per response type. Fields are expected under "data"; a field
found at the top level instead is accepted but reported as shape variance.
A required field missing from both places raises ResponseShapeError.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from evote_client.exceptions import ResponseShapeError
from evote_client.schemas import (
    Candidate,
    CastResult,
    Election,
    ElectionResults,
    IdentityInfo,
    LedgerEntry,
    OtpChallenge,
    Receipt,
    Session,
    VerificationToken,
)
from evote_client.services.monitoring_service import get_monitoring_service
from evote_client.utils.timestamps import parse_timestamp

logger = logging.getLogger(__name__)
contract_logger = logging.getLogger("evote_client.contract")


# ============================================================================
# Field location
# ============================================================================

def _mismatch(response_type: str, field: str, detail: str = "missing") -> ResponseShapeError:
    get_monitoring_service().record_shape_mismatch(response_type, field)
    message = f"{response_type} response: required field '{field}' {detail}"
    contract_logger.error(f"CONTRACT DRIFT - {message}")
    return ResponseShapeError(message, response_type=response_type, field=field)


def _locate(body: Dict[str, Any], response_type: str, field: str, required: bool = True) -> Any:
    data = body.get("data")
    if isinstance(data, dict) and data.get(field) is not None:
        return data[field]

    if body.get(field) is not None:
        get_monitoring_service().record_shape_variance(response_type, field)
        logger.warning(f"{response_type} response: '{field}' found at top level instead of under 'data'")
        return body[field]

    if required:
        raise _mismatch(response_type, field)
    return None


def _timestamp(value: Any, response_type: str, field: str) -> datetime:
    try:
        return parse_timestamp(value)
    except (TypeError, ValueError):
        raise _mismatch(response_type, field, detail=f"is not a timestamp: {value!r}")


def _text(value: Any, response_type: str, field: str) -> str:
    if isinstance(value, bool) or not isinstance(value, (str, int)):
        raise _mismatch(response_type, field, detail=f"has unexpected type {type(value).__name__}")
    text = str(value).strip()
    if not text:
        raise _mismatch(response_type, field, detail="is empty")
    return text


def _optional_text(value: Any, response_type: str, field: str) -> Optional[str]:
    """Like _text, but an absent or blank value is None"""
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    return _text(value, response_type, field)


# ============================================================================
# Elections
# ============================================================================

def normalize_candidate(raw: Any) -> Candidate:
    """Candidates arrive as plain identifiers or {id, name, party}"""
    if isinstance(raw, str):
        return Candidate(id=raw, name=raw)

    if isinstance(raw, dict):
        candidate_id = raw.get("id") or raw.get("name")
        if not candidate_id:
            raise _mismatch("elections", "candidates.id")
        return Candidate(
            id=str(candidate_id),
            name=_optional_text(raw.get("name"), "elections", "candidates.name") or str(candidate_id),
            party=_optional_text(raw.get("party"), "elections", "candidates.party") or "Independent",
        )

    raise _mismatch("elections", "candidates", detail=f"has unexpected entry {raw!r}")


def adapt_elections(body: Dict[str, Any]) -> List[Election]:
    data = body.get("data")
    if isinstance(data, list):
        raw_elections = data
    elif isinstance(data, dict) and isinstance(data.get("elections"), list):
        raw_elections = data["elections"]
    elif isinstance(body.get("elections"), list):
        get_monitoring_service().record_shape_variance("elections", "elections")
        logger.warning("elections response: list found at top level instead of under 'data'")
        raw_elections = body["elections"]
    else:
        raise _mismatch("elections", "data")

    elections = []
    for raw in raw_elections:
        if not isinstance(raw, dict) or not raw.get("id"):
            raise _mismatch("elections", "id")
        candidates = raw.get("candidates") or []
        elections.append(Election(
            id=str(raw["id"]),
            title=_optional_text(raw.get("title") or raw.get("name"), "elections", "title") or "",
            candidates=[normalize_candidate(c) for c in candidates],
        ))
    return elections


def adapt_results(body: Dict[str, Any], election_id: str) -> ElectionResults:
    counts = _locate(body, "results", "results", required=False)
    if counts is None:
        counts = _locate(body, "results", "candidateVotes", required=False)
    if counts is None:
        raise _mismatch("results", "results")
    if not isinstance(counts, dict):
        raise _mismatch("results", "results", detail="is not a mapping")

    try:
        counts = {str(k): int(v) for k, v in counts.items()}
    except (TypeError, ValueError):
        raise _mismatch("results", "results", detail="has non-integer counts")

    total = _locate(body, "results", "totalVotes", required=False)
    if total is None:
        total = sum(counts.values())
    try:
        total = int(total)
    except (TypeError, ValueError):
        raise _mismatch("results", "totalVotes", detail=f"is not a number: {total!r}")

    return ElectionResults(election_id=election_id, counts=counts, total_votes=total)


# ============================================================================
# Identity, OTP and session
# ============================================================================

def adapt_identity(body: Dict[str, Any]) -> IdentityInfo:
    return IdentityInfo(
        name=_text(_locate(body, "identity", "name"), "identity", "name"),
        state=_optional_text(_locate(body, "identity", "state", required=False), "identity", "state"),
        masked_email=_optional_text(
            _locate(body, "identity", "maskedEmail", required=False), "identity", "maskedEmail"
        ),
    )


def adapt_has_voted(body: Dict[str, Any]) -> bool:
    value = _locate(body, "has_voted", "hasVoted")
    if not isinstance(value, bool):
        raise _mismatch("has_voted", "hasVoted", detail=f"is not a boolean: {value!r}")
    return value


def adapt_otp_sent(body: Dict[str, Any], now: datetime, default_minutes: int) -> OtpChallenge:
    """
    The authority reports a window length; it is anchored once, at the time
    the response arrived, unless an absolute expiresAt is also supplied.
    """
    minutes = _locate(body, "otp_sent", "expiryMinutes", required=False)
    if minutes is None:
        minutes = default_minutes
    try:
        minutes = int(minutes)
    except (TypeError, ValueError):
        raise _mismatch("otp_sent", "expiryMinutes", detail=f"is not a number: {minutes!r}")

    expires_at = _locate(body, "otp_sent", "expiresAt", required=False)
    if expires_at is not None:
        expires_at = _timestamp(expires_at, "otp_sent", "expiresAt")
    else:
        expires_at = now + timedelta(minutes=minutes)

    return OtpChallenge(
        masked_email=_optional_text(
            _locate(body, "otp_sent", "maskedEmail", required=False), "otp_sent", "maskedEmail"
        ),
        expiry_minutes=minutes,
        expires_at=expires_at,
    )


def adapt_otp_verified(body: Dict[str, Any]) -> bool:
    verified = _locate(body, "otp_verified", "verified", required=False)
    if verified is None:
        return body.get("success") is True
    return verified is True


def adapt_session(body: Dict[str, Any], election_id: str) -> Session:
    return Session(
        session_id=_text(_locate(body, "session", "sessionID"), "session", "sessionID"),
        bearer_token=_text(_locate(body, "session", "authToken"), "session", "authToken"),
        expires_at=_timestamp(_locate(body, "session", "expiresAt"), "session", "expiresAt"),
        election_id=election_id,
    )


# ============================================================================
# Ballot
# ============================================================================

def adapt_blind_signature(body: Dict[str, Any]) -> Tuple[str, Optional[str]]:
    signature = _text(
        _locate(body, "blind_signature", "blindSignature"), "blind_signature", "blindSignature"
    )
    audit_id = _optional_text(
        _locate(body, "blind_signature", "auditID", required=False), "blind_signature", "auditID"
    )
    return signature, audit_id


def adapt_cast_vote(
    body: Dict[str, Any],
    vote_id: str,
    election_id: str,
    now: datetime,
    token_ttl_seconds: int
) -> CastResult:
    acknowledged = _locate(body, "cast_vote", "voteID", required=False)
    if acknowledged is not None and acknowledged != vote_id:
        raise _mismatch("cast_vote", "voteID", detail=f"acknowledges a different vote {acknowledged!r}")

    token = None
    raw_token = _locate(body, "cast_vote", "verificationToken", required=False)
    if raw_token is not None:
        raw_expiry = _locate(body, "cast_vote", "verificationExpiry", required=False)
        if raw_expiry is not None:
            expires_at = _timestamp(raw_expiry, "cast_vote", "verificationExpiry")
        else:
            expires_at = now + timedelta(seconds=token_ttl_seconds)
        token = VerificationToken(
            token=_text(raw_token, "cast_vote", "verificationToken"),
            expires_at=expires_at,
        )

    return CastResult(vote_id=vote_id, election_id=election_id, verification_token=token)


# ============================================================================
# Receipts
# ============================================================================

def adapt_receipt(body: Dict[str, Any]) -> Receipt:
    return Receipt(
        vote_id=_text(_locate(body, "receipt", "voteID"), "receipt", "voteID"),
        election_id=_text(_locate(body, "receipt", "electionId"), "receipt", "electionId"),
        timestamp=_timestamp(_locate(body, "receipt", "timestamp"), "receipt", "timestamp"),
        status=_optional_text(
            _locate(body, "receipt", "status", required=False), "receipt", "status"
        ) or "CONFIRMED",
    )


def adapt_ledger_entry(body: Dict[str, Any], transaction_id: str) -> Optional[LedgerEntry]:
    """
    Public ledger lookup by transaction id

    Returns None when the authority answers with exists=false.
    """
    exists = _locate(body, "transaction", "exists", required=False)
    if exists is not None and not isinstance(exists, bool):
        raise _mismatch("transaction", "exists", detail=f"is not a boolean: {exists!r}")
    if exists is False:
        return None

    timestamp = _locate(body, "transaction", "timestamp", required=False)
    return LedgerEntry(
        transaction_id=_optional_text(
            _locate(body, "transaction", "transactionId", required=False), "transaction", "transactionId"
        ) or transaction_id,
        election_id=_text(_locate(body, "transaction", "electionId"), "transaction", "electionId"),
        candidate=_optional_text(
            _locate(body, "transaction", "candidate", required=False), "transaction", "candidate"
        ),
        timestamp=_timestamp(timestamp, "transaction", "timestamp") if timestamp is not None else None,
    )


def adapt_verification_choice(body: Dict[str, Any]) -> str:
    return _text(
        _locate(body, "verification_choice", "candidateId"), "verification_choice", "candidateId"
    )
