"""
Pydantic schemas for protocol values
"""

import re
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

import pydantic
from pydantic import BaseModel, Field, field_validator

from evote_client.exceptions import ValidationError

AADHAAR_PATTERN = re.compile(r"^\d{12}$")


# Enums
class SessionState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    IDENTITY_VERIFIED = "identity_verified"
    OTP_SENT = "otp_sent"
    SESSION_ACTIVE = "session_active"
    VOTE_CAST = "vote_cast"
    TERMINAL_FAILED = "terminal_failed"


class CountdownKind(str, Enum):
    OTP = "otp"
    SESSION = "session"
    VERIFICATION_TOKEN = "verification_token"


# Identity schemas
class Credential(BaseModel):
    """Raw identity fields. Held in memory only, hidden from repr."""
    aadhaar_number: str = Field(..., repr=False)
    voter_id_number: str = Field(..., repr=False)
    legal_name: Optional[str] = Field(default=None, repr=False)

    @field_validator("aadhaar_number")
    @classmethod
    def validate_aadhaar(cls, v):
        digits = "".join(v.split())
        if not AADHAAR_PATTERN.match(digits):
            raise ValueError("Aadhaar number must be 12 digits")
        return digits

    @field_validator("voter_id_number")
    @classmethod
    def validate_voter_id(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("Voter ID must not be empty")
        return v

    @field_validator("legal_name")
    @classmethod
    def validate_legal_name(cls, v):
        if v is None:
            return v
        return v.strip() or None

    @classmethod
    def parse(
        cls,
        aadhaar_number: str,
        voter_id_number: str,
        legal_name: Optional[str] = None
    ) -> "Credential":
        """Build a credential, raising the client ValidationError on bad input"""
        try:
            return cls(
                aadhaar_number=aadhaar_number,
                voter_id_number=voter_id_number,
                legal_name=legal_name
            )
        except pydantic.ValidationError as e:
            first = e.errors()[0]
            raise ValidationError(str(first.get("msg", "Invalid credential"))) from e


class ProofSet(BaseModel):
    hashed_aadhaar: str
    hashed_voter_id: str
    hashed_name: str
    voter_proof: str

    class Config:
        frozen = True


class IdentityInfo(BaseModel):
    name: str
    state: Optional[str] = None
    masked_email: Optional[str] = None


class OtpChallenge(BaseModel):
    masked_email: Optional[str] = None
    expiry_minutes: int
    expires_at: datetime


class Session(BaseModel):
    session_id: str = Field(..., min_length=1)
    bearer_token: str = Field(..., min_length=1, repr=False)
    expires_at: datetime
    election_id: str

    class Config:
        frozen = True

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def to_record(self) -> Dict[str, str]:
        return {
            "sessionID": self.session_id,
            "authToken": self.bearer_token,
            "expiresAt": self.expires_at.isoformat(),
            "electionId": self.election_id,
        }

    @classmethod
    def from_record(cls, record: Dict[str, str]) -> "Session":
        return cls(
            session_id=record["sessionID"],
            bearer_token=record["authToken"],
            expires_at=record["expiresAt"],
            election_id=record["electionId"],
        )


# Election schemas
class Candidate(BaseModel):
    id: str
    name: str
    party: str = "Independent"


class Election(BaseModel):
    id: str
    title: str = ""
    candidates: List[Candidate] = Field(default_factory=list)

    def has_candidate(self, candidate_id: str) -> bool:
        return any(c.id == candidate_id for c in self.candidates)


class ElectionResults(BaseModel):
    election_id: str
    counts: Dict[str, int] = Field(default_factory=dict)
    total_votes: int = 0


# Ballot schemas
class BlindBallot(BaseModel):
    election_id: str
    candidate_id: str
    blinding_timestamp: int
    envelope: str
    blinding_factor: bytes = Field(..., repr=False)

    class Config:
        frozen = True


class SignedBallot(BaseModel):
    blind_signature: str
    audit_id: Optional[str] = None
    nonce: str
    session_id: str
    ballot: BlindBallot

    class Config:
        frozen = True


class Vote(BaseModel):
    """The only payload ever submitted. No identity field is accepted."""
    vote_id: str
    election_id: str
    candidate_id: str
    blind_signature: str
    batch_id: str

    class Config:
        frozen = True
        extra = "forbid"

    def to_payload(self) -> Dict[str, str]:
        return {
            "voteID": self.vote_id,
            "electionId": self.election_id,
            "candidateId": self.candidate_id,
            "blindSignature": self.blind_signature,
            "batchID": self.batch_id,
        }


# Receipt schemas
class VerificationToken(BaseModel):
    token: str = Field(..., min_length=1, repr=False)
    expires_at: datetime

    class Config:
        frozen = True


class CastResult(BaseModel):
    vote_id: str
    election_id: str
    verification_token: Optional[VerificationToken] = None


class Receipt(BaseModel):
    """Permanent confirmation. Carries no candidate and no identity."""
    vote_id: str
    election_id: str
    timestamp: datetime
    status: str = "CONFIRMED"


class LedgerEntry(BaseModel):
    """Public ledger record looked up by transaction id"""
    transaction_id: str
    election_id: str
    candidate: Optional[str] = None
    timestamp: Optional[datetime] = None
