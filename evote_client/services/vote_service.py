"""
Anonymous Voting Client Vote Service
Builds a blinded ballot, obtains a blind signature and submits the vote
"""

import logging
from typing import Optional

from evote_client.api.client import AuthenticatedClient
from evote_client.config import Settings, get_settings
from evote_client.exceptions import (
    AuthError,
    FlowCancelledError,
    NotAuthenticatedError,
    ResponseShapeError,
    SessionExpiredError,
    ValidationError,
)
from evote_client.schemas import (
    BlindBallot,
    CastResult,
    Election,
    SessionState,
    SignedBallot,
    Vote,
)
from evote_client.services.identity_service import IdentitySession
from evote_client.utils.security import (
    blind_commitment,
    canonical_json,
    generate_batch_id,
    generate_blinding_factor,
    generate_nonce,
    generate_vote_id,
    mask_secret,
)
from evote_client.utils.timestamps import Clock, epoch_millis, utc_now

logger = logging.getLogger(__name__)


class BlindVoteBuilder:
    """Service for casting one anonymous vote per session"""

    def __init__(self, settings: Optional[Settings] = None, clock: Clock = utc_now):
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")
        self.settings = settings or get_settings()
        self.clock = clock

    def create_blind_ballot(self, election_id: str, candidate_id: str) -> BlindBallot:
        """
        Commit to (election, candidate, time) under a fresh blinding factor

        The envelope is all the authority sees while signing; without the
        blinding factor it cannot recover the candidate.
        """
        if not election_id or not candidate_id:
            raise ValidationError("Select a candidate before casting your vote")

        timestamp = epoch_millis(self.clock())
        blinding_factor = generate_blinding_factor()
        payload = canonical_json({
            "election": election_id,
            "candidate": candidate_id,
            "timestamp": timestamp,
        })
        return BlindBallot(
            election_id=election_id,
            candidate_id=candidate_id,
            blinding_timestamp=timestamp,
            envelope=blind_commitment(blinding_factor, payload),
            blinding_factor=blinding_factor,
        )

    async def request_blind_signature(
        self,
        client: AuthenticatedClient,
        ballot: BlindBallot,
        nonce: str
    ) -> SignedBallot:
        try:
            signature, audit_id = await client.request_blind_signature(ballot.envelope, nonce)
        except ResponseShapeError as e:
            self.logger.error(f"Blind signature response unusable, aborting before submission: {e.message}")
            raise
        except AuthError as e:
            self.logger.warning(f"Blind signature declined: {e.message}")
            raise

        self.logger.info(f"Blind signature obtained (audit {audit_id})")
        return SignedBallot(
            blind_signature=signature,
            audit_id=audit_id,
            nonce=nonce,
            session_id=client.session.session_id,
            ballot=ballot,
        )

    def assemble_vote(
        self,
        vote_id: str,
        signed: SignedBallot,
        election_id: str,
        candidate_id: str,
        batch_id: str
    ) -> Vote:
        """A signature is only valid for the ballot it was blinded from"""
        if signed.ballot.election_id != election_id or signed.ballot.candidate_id != candidate_id:
            raise ValidationError("The blind signature was issued for a different ballot")

        return Vote(
            vote_id=vote_id,
            election_id=election_id,
            candidate_id=candidate_id,
            blind_signature=signed.blind_signature,
            batch_id=batch_id,
        )

    async def build_and_submit(
        self,
        identity: IdentitySession,
        election_id: str,
        candidate_id: str,
        election: Optional[Election] = None
    ) -> CastResult:
        """
        Cast one anonymous vote

        Steps run strictly in order: ids, blinding, final has-voted check,
        blind signature, assembly, submission. A second call while one is
        in flight fails locally without touching the network.

        Args:
            identity: Flow holding the active session
            election_id: Election the session is bound to
            candidate_id: Chosen candidate
            election: Optional election used to validate the candidate

        Returns:
            CastResult with the vote id and optional verification token
        """
        async with identity.guard.hold("cast_vote"):
            return await self._build_and_submit(identity, election_id, candidate_id, election)

    async def _build_and_submit(
        self,
        identity: IdentitySession,
        election_id: str,
        candidate_id: str,
        election: Optional[Election]
    ) -> CastResult:
        if identity.state != SessionState.SESSION_ACTIVE:
            raise NotAuthenticatedError("No active voting session. Please sign in again.")
        if identity.election_id != election_id:
            raise ValidationError(f"This session is bound to election {identity.election_id}")
        if election is not None and not election.has_candidate(candidate_id):
            raise ValidationError(f"Unknown candidate {candidate_id}")

        client = identity.authenticated_client()
        generation = identity.generation

        # STEP 1: fresh identifiers
        vote_id = generate_vote_id()
        nonce = generate_nonce()

        # STEP 2: blinded envelope
        ballot = self.create_blind_ballot(election_id, candidate_id)

        # STEP 3: final has-voted check, then blind signature
        await identity.final_has_voted_check()
        self._ensure_live(identity, generation, "blind signature request")

        signed = await self.request_blind_signature(client, ballot, nonce)
        self._ensure_live(identity, generation, "vote submission")

        # STEP 4: assemble the anonymous vote
        vote = self.assemble_vote(
            vote_id,
            signed,
            election_id,
            candidate_id,
            generate_batch_id(epoch_millis(self.clock())),
        )

        # STEP 5: submit
        result = await client.cast_vote(vote)
        self.logger.info(f"Vote {mask_secret(vote.vote_id, 13)} accepted for election {election_id}")

        if identity.state == SessionState.SESSION_ACTIVE and identity.generation == generation:
            identity.mark_vote_cast()
        else:
            self.logger.warning("Vote accepted after the flow left the voting phase")
        return result

    def _ensure_live(self, identity: IdentitySession, generation: int, next_step: str):
        if identity.generation == generation and identity.state == SessionState.SESSION_ACTIVE:
            return
        if isinstance(identity.failure, SessionExpiredError):
            raise NotAuthenticatedError(f"Session expired before the {next_step}")
        raise FlowCancelledError(f"Flow ended before the {next_step}")


# Global vote builder instance
_vote_builder: Optional[BlindVoteBuilder] = None


def get_vote_builder() -> BlindVoteBuilder:
    """Get global vote builder instance"""
    global _vote_builder
    if _vote_builder is None:
        _vote_builder = BlindVoteBuilder()
    return _vote_builder
