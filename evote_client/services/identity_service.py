"""
Anonymous Voting Client Identity Service
State machine for identity verification, OTP and session creation
"""

import logging
from typing import Awaitable, Callable, Optional, TypeVar

import pydantic

from evote_client.api.client import AuthenticatedClient, ElectionAuthorityClient
from evote_client.config import Settings
from evote_client.exceptions import (
    AlreadyVotedError,
    AuthError,
    FlowCancelledError,
    NotAuthenticatedError,
    PhaseTimeoutError,
    ProtocolStateError,
    ResponseShapeError,
    SessionExpiredError,
    ValidationError,
    VotingClientError,
)
from evote_client.middleware.concurrency_protection import InFlightGuard
from evote_client.schemas import (
    CountdownKind,
    Credential,
    IdentityInfo,
    OtpChallenge,
    ProofSet,
    Session,
    SessionState,
)
from evote_client.services.proof_service import ProofGenerator, get_proof_generator
from evote_client.services.session_store import MemorySessionStore, SessionStore
from evote_client.services.timer_service import TimerService
from evote_client.utils.security import mask_secret
from evote_client.utils.timestamps import Clock

logger = logging.getLogger(__name__)

T = TypeVar("T")


class IdentitySession:
    """
    Drives one voter from raw credentials to an active voting session

    UNAUTHENTICATED -> IDENTITY_VERIFIED -> OTP_SENT -> SESSION_ACTIVE
    -> VOTE_CAST, with TERMINAL_FAILED reachable from any live state.
    Every remote continuation is keyed on a generation counter so a
    response arriving after teardown never mutates the flow.
    """

    def __init__(
        self,
        client: ElectionAuthorityClient,
        timers: Optional[TimerService] = None,
        store: Optional[SessionStore] = None,
        proof_generator: Optional[ProofGenerator] = None,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None
    ):
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")
        self.client = client
        self.settings = settings or client.settings
        self.clock = clock or client.clock
        self.timers = timers or TimerService(clock=self.clock, settings=self.settings)
        self.store = store if store is not None else MemorySessionStore()
        self.proof_generator = proof_generator or get_proof_generator()
        self.guard = InFlightGuard(owner="identity_session")
        self._generation = 0
        self._reset_fields()

    def _reset_fields(self):
        self.state = SessionState.UNAUTHENTICATED
        self.election_id: Optional[str] = None
        self.identity: Optional[IdentityInfo] = None
        self.otp_challenge: Optional[OtpChallenge] = None
        self.entered_otp: Optional[str] = None
        self.session: Optional[Session] = None
        self.failure: Optional[VotingClientError] = None
        self._credential: Optional[Credential] = None
        self._proofs: Optional[ProofSet] = None
        self._voter_proof: Optional[str] = None
        self._pre_otp_check_passed = False
        self._otp_verified = False

    # ========================================================================
    # Introspection
    # ========================================================================

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def proofs(self) -> Optional[ProofSet]:
        return self._proofs

    @property
    def voter_proof(self) -> Optional[str]:
        return self._voter_proof

    @property
    def is_terminal(self) -> bool:
        return self.state == SessionState.TERMINAL_FAILED

    # ========================================================================
    # Internal helpers
    # ========================================================================

    def _require_state(self, operation: str, *states: SessionState):
        if self.state in states:
            return
        if self.state == SessionState.TERMINAL_FAILED and self.failure is not None:
            raise ProtocolStateError(
                f"{operation} is not possible: {self.failure.message}. Start again."
            )
        raise ProtocolStateError(f"{operation} is not allowed in state {self.state.value}")

    async def _call(self, operation: str, call: Callable[[], Awaitable[T]], mutating: bool = True) -> T:
        """Run one remote call and discard its outcome if the flow was torn down meanwhile"""
        generation = self._generation
        try:
            if mutating:
                async with self.guard.hold(operation):
                    result = await call()
            else:
                result = await call()
        except VotingClientError as e:
            if generation != self._generation:
                self.logger.info(f"Discarding late {operation} failure from a torn-down flow")
                raise FlowCancelledError(f"{operation} was cancelled") from e
            raise

        if generation != self._generation:
            self.logger.info(f"Discarding late {operation} response from a torn-down flow")
            raise FlowCancelledError(f"{operation} was cancelled")
        return result

    def _fail(self, error: VotingClientError):
        self.logger.warning(f"Flow failed terminally: {error.message}")
        self._generation += 1
        self.timers.cancel_all()
        self.store.clear()
        self.state = SessionState.TERMINAL_FAILED
        self.failure = error
        self.session = None
        self._credential = None
        self._proofs = None
        self._voter_proof = None

    # ========================================================================
    # Identity verification
    # ========================================================================

    async def verify_identity(self, credential: Credential, election_id: str) -> IdentityInfo:
        """
        Verify the voter's identity with the authority

        On success proofs are derived locally and the pre-OTP has-voted
        check runs immediately, before any OTP can be spent.

        Raises:
            ValidationError: no election selected
            AuthError: the authority rejected the identity (message verbatim)
            AlreadyVotedError: a vote already exists for this voter proof
        """
        self._require_state("verify_identity", SessionState.UNAUTHENTICATED)
        if not election_id or not election_id.strip():
            raise ValidationError("Please select an election to proceed")

        identity = await self._call(
            "verify_identity", lambda: self.client.verify_identity(credential)
        )

        if credential.legal_name is None:
            credential = credential.model_copy(update={"legal_name": identity.name})
        proofs = self.proof_generator.derive_proofs(credential)

        self._credential = credential
        self._proofs = proofs
        self._voter_proof = proofs.voter_proof
        self.identity = identity
        self.election_id = election_id.strip()
        self.state = SessionState.IDENTITY_VERIFIED
        self.logger.info(f"Identity verified for election {self.election_id}")

        await self.check_not_voted()
        return identity

    async def check_not_voted(
        self,
        election_id: Optional[str] = None,
        voter_proof: Optional[str] = None
    ) -> None:
        """
        Ask the authority whether this voter proof has already voted

        A positive answer is terminal. This check is a courtesy to the
        voter; the authority enforces one vote per voter proof itself.
        """
        self._require_state(
            "check_not_voted",
            SessionState.IDENTITY_VERIFIED,
            SessionState.OTP_SENT,
            SessionState.SESSION_ACTIVE,
        )
        election_id = election_id or self.election_id
        voter_proof = voter_proof or self._voter_proof
        if not election_id or not voter_proof:
            raise ProtocolStateError("Identity must be verified before the has-voted check")

        has_voted = await self._call(
            "check_not_voted",
            lambda: self.client.check_has_voted(election_id, voter_proof),
            mutating=False,
        )

        if has_voted:
            self.logger.warning(f"Voter proof {mask_secret(voter_proof, 16)} already voted in {election_id}")
            error = AlreadyVotedError("You have already voted in this election")
            self._fail(error)
            raise error

        if self.state == SessionState.IDENTITY_VERIFIED:
            self._pre_otp_check_passed = True

    # ========================================================================
    # OTP
    # ========================================================================

    async def send_otp(self) -> OtpChallenge:
        self._require_state("send_otp", SessionState.IDENTITY_VERIFIED)
        if not self._pre_otp_check_passed:
            raise ProtocolStateError("The has-voted check must pass before an OTP is sent")

        credential = self._credential
        challenge = await self._call("send_otp", lambda: self.client.send_otp(credential))
        self._start_otp(challenge)
        self.state = SessionState.OTP_SENT
        self.logger.info(f"OTP sent to {challenge.masked_email}, valid {challenge.expiry_minutes} min")
        return challenge

    def _start_otp(self, challenge: OtpChallenge):
        self.otp_challenge = challenge
        self.entered_otp = None
        self._otp_verified = False
        self.timers.start(CountdownKind.OTP, challenge.expires_at, self._on_otp_expired)

    def _on_otp_expired(self):
        self.logger.info("OTP expired, a new code can be requested")

    def otp_remaining_seconds(self) -> Optional[int]:
        return self.timers.remaining(CountdownKind.OTP)

    def can_resend_otp(self) -> bool:
        """Resend opens only in the final window of the OTP lifetime"""
        if self.state != SessionState.OTP_SENT:
            return False
        remaining = self.otp_remaining_seconds()
        if remaining is None:
            return True
        return remaining <= self.settings.OTP_RESEND_WINDOW_SECONDS

    async def resend_otp(self) -> OtpChallenge:
        self._require_state("resend_otp", SessionState.OTP_SENT)
        if not self.can_resend_otp():
            wait = (self.otp_remaining_seconds() or 0) - self.settings.OTP_RESEND_WINDOW_SECONDS
            raise ValidationError(f"You can request a new code in {wait} seconds")

        credential = self._credential
        challenge = await self._call("resend_otp", lambda: self.client.send_otp(credential))
        self._start_otp(challenge)
        self.logger.info("OTP resent")
        return challenge

    def enter_otp(self, code: str):
        self._require_state("enter_otp", SessionState.OTP_SENT)
        self.entered_otp = code.strip()

    async def verify_otp(self, code: Optional[str] = None) -> None:
        """
        Verify the code the voter received

        Raises:
            ValidationError: the code is not 4-8 digits
            PhaseTimeoutError: the OTP window has closed
            AuthError: the authority rejected the code
        """
        self._require_state("verify_otp", SessionState.OTP_SENT)
        code = (code if code is not None else self.entered_otp or "").strip()
        if not code.isdigit() or not 4 <= len(code) <= 8:
            raise ValidationError("Enter the code sent to your email")

        countdown = self.timers.get(CountdownKind.OTP)
        if countdown is not None and countdown.expired:
            raise PhaseTimeoutError("The code has expired. Request a new one.")

        credential = self._credential
        verified = await self._call("verify_otp", lambda: self.client.verify_otp(credential, code))
        if not verified:
            raise AuthError("Invalid OTP")

        self._otp_verified = True
        self.entered_otp = None
        self.logger.info("OTP verified")

    # ========================================================================
    # Session
    # ========================================================================

    async def create_session(self) -> Session:
        """
        Create the voting session after a verified OTP

        A success response without session id or token is a fatal
        contract error, not an authentication failure.
        """
        self._require_state("create_session", SessionState.OTP_SENT)
        if not self._otp_verified:
            raise ProtocolStateError("The OTP must be verified before a session is created")

        credential = self._credential
        election_id = self.election_id
        try:
            session = await self._call(
                "create_session", lambda: self.client.create_session(credential, election_id)
            )
        except ResponseShapeError as e:
            self.logger.error(f"Session creation returned an unusable response: {e.message}")
            self._fail(e)
            raise

        self._activate(session)
        if self.state == SessionState.TERMINAL_FAILED:
            raise self.failure
        return session

    def _activate(self, session: Session):
        self.session = session
        self.election_id = session.election_id
        self.state = SessionState.SESSION_ACTIVE
        self.timers.cancel(CountdownKind.OTP)
        self.otp_challenge = None

        # Raw identity leaves memory here; only the voter proof stays for
        # the final has-voted check.
        self._credential = None
        self._proofs = None

        self.store.set(session.to_record())
        self.timers.start(CountdownKind.SESSION, session.expires_at, self._on_session_expired)
        self.logger.info(f"Session {mask_secret(session.session_id)} active until {session.expires_at.isoformat()}")

    def _on_session_expired(self):
        if self.state != SessionState.SESSION_ACTIVE:
            return
        self._fail(SessionExpiredError("Your session has expired. Please sign in again."))

    def handle_unauthorized(self):
        """The authority rejected the bearer token"""
        self.store.clear()
        if self.state == SessionState.SESSION_ACTIVE:
            self._fail(NotAuthenticatedError("Your session is no longer valid. Please sign in again."))

    def session_remaining_seconds(self) -> Optional[int]:
        return self.timers.remaining(CountdownKind.SESSION)

    def authenticated_client(self) -> AuthenticatedClient:
        """The only way to reach protected operations"""
        if self.state != SessionState.SESSION_ACTIVE or self.session is None:
            raise NotAuthenticatedError("No active voting session")
        if self.session.is_expired(self.clock()):
            self._on_session_expired()
            raise NotAuthenticatedError("Your session has expired")
        return self.client.authenticated(self.session, on_unauthorized=self.handle_unauthorized)

    async def final_has_voted_check(self) -> None:
        """Second has-voted check, right before the blind signature request"""
        self._require_state("final_has_voted_check", SessionState.SESSION_ACTIVE)
        if self._voter_proof is None:
            self.logger.warning("No voter proof held (resumed session); skipping final has-voted check")
            return
        await self.check_not_voted()

    def mark_vote_cast(self):
        self._require_state("mark_vote_cast", SessionState.SESSION_ACTIVE)
        self.timers.cancel(CountdownKind.SESSION)
        self.store.clear()
        self.state = SessionState.VOTE_CAST
        self.session = None
        self._voter_proof = None
        self.logger.info("Vote cast, session closed")

    # ========================================================================
    # Teardown and resume
    # ========================================================================

    def teardown(self):
        """
        Abandon the flow

        Synchronously cancels every timer, clears stored session data and
        invalidates in-flight continuations.
        """
        self._generation += 1
        self.timers.cancel_all()
        self.store.clear()
        self._reset_fields()
        self.logger.info("Flow torn down")

    def logout(self):
        self.teardown()

    def reset(self):
        """Restart from UNAUTHENTICATED after a terminal failure"""
        self.teardown()

    @classmethod
    def resume(
        cls,
        client: ElectionAuthorityClient,
        store: SessionStore,
        **kwargs
    ) -> "IdentitySession":
        """
        Rebuild a flow from a persisted session, if it is still valid

        Returns an UNAUTHENTICATED flow when nothing usable is stored.
        """
        flow = cls(client, store=store, **kwargs)
        record = store.get()
        if not record:
            return flow

        try:
            session = Session.from_record(record)
        except (KeyError, pydantic.ValidationError):
            flow.logger.error("Discarding malformed persisted session")
            store.clear()
            return flow

        if session.is_expired(flow.clock()):
            flow.logger.info("Persisted session already expired")
            store.clear()
            return flow

        flow._activate(session)
        return flow
