"""
Election Authority API Client
HTTP boundary for every remote call the voting protocol makes
"""

import logging
import re
import time
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import quote

import httpx

from evote_client.api import adapters
from evote_client.config import Settings, get_settings
from evote_client.exceptions import (
    AuthError,
    NetworkError,
    NotAuthenticatedError,
    NotFoundError,
    ResponseShapeError,
    TokenExpiredError,
    TokenReuseError,
    ValidationError,
    VerificationError,
)
from evote_client.schemas import (
    CastResult,
    Credential,
    Election,
    ElectionResults,
    IdentityInfo,
    LedgerEntry,
    OtpChallenge,
    Receipt,
    Session,
    Vote,
)
from evote_client.services.monitoring_service import get_monitoring_service
from evote_client.utils.security import mask_secret
from evote_client.utils.timestamps import Clock, utc_now

logger = logging.getLogger(__name__)


class ApiRole(str, Enum):
    """Each role has its own static API key; headers are never mixed"""
    VOTER = "voter"
    ADMIN = "admin"
    TESTING = "testing"


ENDPOINTS = {
    "elections": "/elections/active",
    "identity": "/identity/verify",
    "has_voted": "/ec/has-voted",
    "send_otp": "/ec/send-otp",
    "verify_otp": "/ec/verify-otp",
    "create_session": "/ec/create-session",
    "blind_signature": "/ec/request-blind-signature",
    "cast_vote": "/votes/cast",
    "receipt": "/votes/receipt/{election_id}/{vote_id}",
    "verify_choice": "/votes/verify-choice/{token}",
    "verify_transaction": "/votes/verify/{transaction_id}",
    "results": "/votes/{election_id}",
}

ALREADY_USED_STATUSES = {"ALREADY_USED", "USED", "TOKEN_ALREADY_USED"}

TOKEN_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")
TRANSACTION_ID_PATTERN = re.compile(r"^[0-9a-fA-F]{64}$")


def role_headers(settings: Settings, role: ApiRole) -> Dict[str, str]:
    """Static headers for one role"""
    api_keys = {
        ApiRole.VOTER: settings.VOTER_API_KEY,
        ApiRole.ADMIN: settings.ADMIN_API_KEY,
        ApiRole.TESTING: settings.TESTING_API_KEY,
    }
    headers = {
        "Content-Type": "application/json",
        "x-api-key": api_keys[role],
    }
    if role == ApiRole.VOTER:
        headers["x-terminal-id"] = settings.TERMINAL_ID
    return headers


def path_segment(value: str, label: str) -> str:
    """Percent-encode one URL path segment; dot segments are never sent"""
    text = str(value)
    if text.strip() in ("", ".", ".."):
        raise ValidationError(f"Invalid {label}")
    return quote(text, safe="")


def _error_message(body: Dict[str, Any], status_code: int) -> str:
    for key in ("message", "error", "detail"):
        value = body.get(key)
        if isinstance(value, str) and value:
            return value
    return f"Request failed with status {status_code}"


class ElectionAuthorityClient:
    """Client for unauthenticated (API key only) calls"""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        role: ApiRole = ApiRole.VOTER,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Clock = utc_now
    ):
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")
        self.settings = settings or get_settings()
        self.role = role
        self.clock = clock
        self.monitoring = get_monitoring_service()

        base_url = self.settings.API_BASE_URL.rstrip("/")
        timeout = self.settings.REQUEST_TIMEOUT
        if role == ApiRole.TESTING:
            base_url = f"{base_url}/testing"
            timeout = self.settings.TESTING_REQUEST_TIMEOUT

        self._http = httpx.AsyncClient(
            base_url=base_url,
            headers=role_headers(self.settings, role),
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def close(self):
        await self._http.aclose()

    # ========================================================================
    # Transport
    # ========================================================================

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None
    ) -> Dict[str, Any]:
        """
        Perform one request and map failures onto the error taxonomy

        Returns:
            Decoded JSON body of a successful response

        Raises:
            NetworkError: transport failure, 5xx or 429
            NotAuthenticatedError: 401
            NotFoundError: 404
            AuthError: any other 4xx, or success=false in the body
            ResponseShapeError: a 2xx body that is not a JSON object
        """
        started = time.perf_counter()
        try:
            response = await self._http.request(
                method, path, json=json, params=params, headers=headers
            )
        except httpx.TimeoutException as e:
            self._record(operation, started, "timeout")
            self.logger.warning(f"{operation}: request timed out")
            raise NetworkError(f"{operation}: request timed out") from e
        except httpx.TransportError as e:
            self._record(operation, started, "network_error")
            self.logger.warning(f"{operation}: cannot reach election authority: {e}")
            raise NetworkError("Cannot reach the election authority") from e

        status = response.status_code
        body = self._decode(response, operation)
        self._record(operation, started, str(status))

        if status >= 500 or status == 429:
            message = _error_message(body, status)
            self.logger.error(f"{operation}: server error {status}: {message}")
            raise NetworkError(message, status_code=status)
        if status == 401:
            message = _error_message(body, status)
            self.logger.warning(f"{operation}: unauthorized: {message}")
            raise NotAuthenticatedError(message, status_code=status)
        if status == 404:
            raise NotFoundError(_error_message(body, status), status_code=status)
        if status >= 400:
            message = _error_message(body, status)
            self.logger.warning(f"{operation}: rejected with {status}: {message}")
            raise AuthError(message, status_code=status)
        if body.get("success") is False:
            message = _error_message(body, status)
            self.logger.warning(f"{operation}: declined: {message}")
            raise AuthError(message, status_code=status)

        return body

    def _decode(self, response: httpx.Response, operation: str) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            body = None

        if isinstance(body, dict):
            return body
        if response.is_success:
            adapters.contract_logger.error(
                f"CONTRACT DRIFT - {operation} response is not a JSON object"
            )
            raise ResponseShapeError(
                f"{operation} response is not a JSON object",
                response_type=operation,
                field="<body>",
            )
        return {}

    def _record(self, operation: str, started: float, outcome: str):
        duration_ms = (time.perf_counter() - started) * 1000
        self.monitoring.record_request(operation, duration_ms, outcome)

    # ========================================================================
    # Public operations
    # ========================================================================

    async def list_active_elections(self) -> List[Election]:
        body = await self._request("elections", "GET", ENDPOINTS["elections"])
        return adapters.adapt_elections(body)

    async def get_results(self, election_id: str) -> ElectionResults:
        path = ENDPOINTS["results"].format(election_id=path_segment(election_id, "election id"))
        body = await self._request("results", "GET", path)
        return adapters.adapt_results(body, election_id)

    async def verify_identity(self, credential: Credential) -> IdentityInfo:
        body = await self._request("identity", "POST", ENDPOINTS["identity"], json={
            "aadhaar": credential.aadhaar_number,
            "voterId": credential.voter_id_number,
        })
        return adapters.adapt_identity(body)

    async def check_has_voted(self, election_id: str, voter_proof: str) -> bool:
        body = await self._request("has_voted", "GET", ENDPOINTS["has_voted"], params={
            "electionId": election_id,
            "voterProof": voter_proof,
        })
        return adapters.adapt_has_voted(body)

    async def send_otp(self, credential: Credential) -> OtpChallenge:
        body = await self._request("send_otp", "POST", ENDPOINTS["send_otp"], json={
            "aadhaar": credential.aadhaar_number,
            "voterId": credential.voter_id_number,
        })
        return adapters.adapt_otp_sent(
            body, self.clock(), self.settings.DEFAULT_OTP_EXPIRY_MINUTES
        )

    async def verify_otp(self, credential: Credential, otp: str) -> bool:
        body = await self._request("verify_otp", "POST", ENDPOINTS["verify_otp"], json={
            "aadhaar": credential.aadhaar_number,
            "voterId": credential.voter_id_number,
            "otp": otp,
        })
        return adapters.adapt_otp_verified(body)

    async def create_session(self, credential: Credential, election_id: str) -> Session:
        body = await self._request("create_session", "POST", ENDPOINTS["create_session"], json={
            "aadhaar": credential.aadhaar_number,
            "voterId": credential.voter_id_number,
            "fingerprintVerified": True,
            "otpVerified": True,
            "electionId": election_id,
        })
        return adapters.adapt_session(body, election_id)

    async def get_receipt(self, election_id: str, vote_id: str) -> Receipt:
        path = ENDPOINTS["receipt"].format(
            election_id=path_segment(election_id, "election id"),
            vote_id=path_segment(vote_id, "vote id"),
        )
        body = await self._request("receipt", "GET", path)
        return adapters.adapt_receipt(body)

    async def redeem_verification_token(self, token: str) -> str:
        """
        Redeem a one-time verification token for the candidate it encodes

        Raises:
            ValidationError: the token is not in the issued format
            TokenReuseError: the token was already redeemed
            TokenExpiredError: the token expired or was never issued
            VerificationError: any other rejection
        """
        if not TOKEN_PATTERN.match(token or ""):
            raise ValidationError("This is not a valid verification token")

        path = ENDPOINTS["verify_choice"].format(token=path_segment(token, "verification token"))
        try:
            body = await self._request("verify_choice", "GET", path)
        except NotFoundError as e:
            raise TokenExpiredError(e.message, status_code=e.status_code) from e
        except AuthError as e:
            if e.status_code == 409:
                raise TokenReuseError(e.message, status_code=409) from e
            if e.status_code == 410:
                raise TokenExpiredError(e.message, status_code=410) from e
            if self._reports_already_used(e.message):
                raise TokenReuseError(e.message, status_code=e.status_code) from e
            raise VerificationError(e.message, status_code=e.status_code) from e

        self.logger.info(f"Verification token {mask_secret(token)} redeemed")
        return adapters.adapt_verification_choice(body)

    async def verify_transaction(self, transaction_id: str) -> LedgerEntry:
        """
        Look a vote up on the public ledger by its transaction id

        Raises:
            ValidationError: the id is not 64 hex characters
            NotFoundError: no vote is recorded under this id
        """
        transaction_id = (transaction_id or "").strip()
        if not TRANSACTION_ID_PATTERN.match(transaction_id):
            raise ValidationError("Enter the 64-character transaction ID")

        path = ENDPOINTS["verify_transaction"].format(
            transaction_id=path_segment(transaction_id, "transaction id")
        )
        body = await self._request("verify_transaction", "GET", path)
        entry = adapters.adapt_ledger_entry(body, transaction_id)
        if entry is None:
            raise NotFoundError("Vote not found on the ledger")
        return entry

    @staticmethod
    def _reports_already_used(message: str) -> bool:
        normalized = message.strip().upper().replace(" ", "_")
        return normalized in ALREADY_USED_STATUSES or "ALREADY_USED" in normalized

    def authenticated(
        self,
        session: Session,
        on_unauthorized: Optional[Callable[[], None]] = None
    ) -> "AuthenticatedClient":
        return AuthenticatedClient(self, session, on_unauthorized=on_unauthorized)


class AuthenticatedClient:
    """
    Client for protected operations

    Can only be built from a live Session; every call carries its bearer
    token alongside the role's API key.
    """

    def __init__(
        self,
        base: ElectionAuthorityClient,
        session: Session,
        on_unauthorized: Optional[Callable[[], None]] = None
    ):
        if not isinstance(session, Session):
            raise TypeError("AuthenticatedClient requires a Session")
        if session.is_expired(base.clock()):
            raise NotAuthenticatedError("Session has expired")

        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")
        self._base = base
        self.session = session
        self._on_unauthorized = on_unauthorized

    async def _request(self, operation: str, method: str, path: str, json: Dict[str, Any]) -> Dict[str, Any]:
        if self.session.is_expired(self._base.clock()):
            raise NotAuthenticatedError("Session has expired")

        try:
            return await self._base._request(
                operation, method, path, json=json,
                headers={"Authorization": f"Bearer {self.session.bearer_token}"},
            )
        except NotAuthenticatedError:
            self.logger.warning(f"{operation}: session {mask_secret(self.session.session_id)} rejected")
            if self._on_unauthorized is not None:
                self._on_unauthorized()
            raise

    async def request_blind_signature(self, blinded_vote: str, nonce: str) -> Tuple[str, Optional[str]]:
        body = await self._request("blind_signature", "POST", ENDPOINTS["blind_signature"], json={
            "sessionID": self.session.session_id,
            "blindedVote": blinded_vote,
            "nonce": nonce,
        })
        return adapters.adapt_blind_signature(body)

    async def cast_vote(self, vote: Vote) -> CastResult:
        body = await self._request("cast_vote", "POST", ENDPOINTS["cast_vote"], json=vote.to_payload())
        return adapters.adapt_cast_vote(
            body,
            vote.vote_id,
            vote.election_id,
            self._base.clock(),
            self._base.settings.VERIFICATION_TOKEN_TTL_SECONDS,
        )
