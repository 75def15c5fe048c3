"""
Shared fixtures: an in-process fake election authority served over
httpx's ASGI transport, and a controllable clock.
"""

import asyncio
import hashlib
import secrets
from datetime import datetime, timedelta, timezone

import httpx
import pytest
import pytest_asyncio
from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse

from evote_client.api.client import ElectionAuthorityClient
from evote_client.config import Settings
from evote_client.schemas import Credential
from evote_client.services.identity_service import IdentitySession
from evote_client.services.monitoring_service import get_monitoring_service
from evote_client.services.session_store import MemorySessionStore
from evote_client.services.timer_service import TimerService

API_PREFIX = "/api/v1"
VOTER_KEY = "voter-key-test"
ADMIN_KEY = "admin-key-test"

AADHAAR = "123456789012"
VOTER_ID = "ABC1234567"
VOTER_NAME = "Asha Rao"
OTP_CODE = "482913"
ELECTION_ID = "TN-2026"


class FakeClock:
    """Manually advanced UTC clock shared by client and authority"""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float):
        self.now = self.now + timedelta(seconds=seconds)


def reference_voter_proof(aadhaar: str, voter_id: str) -> str:
    hashed_aadhaar = hashlib.sha256(aadhaar.encode()).hexdigest()
    hashed_voter_id = hashlib.sha256(voter_id.encode()).hexdigest()
    return hashlib.sha256((hashed_aadhaar + hashed_voter_id).encode()).hexdigest()


def _fail(status_code: int, message: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "message": message, **extra})


def _ok(data) -> JSONResponse:
    return JSONResponse(content={"success": True, "data": data})


class FakeElectionAuthority:
    """Election authority with just enough behaviour to drive the protocol"""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.voters = {
            AADHAAR: {
                "voterId": VOTER_ID,
                "name": VOTER_NAME,
                "state": "Chennai, India",
                "maskedEmail": "as***@example.com",
            }
        }
        self.elections = [
            {
                "id": ELECTION_ID,
                "title": "Tamil Nadu Assembly 2026",
                "candidates": ["KVT", {"id": "DMK", "name": "DMK", "party": "Dravida"}, "TTF"],
            }
        ]
        self.otp_expiry_minutes = 10
        self.session_ttl = timedelta(minutes=10)
        self.token_ttl = timedelta(minutes=2)
        self.voted_proofs = set()
        self.sessions = {}
        self.receipts = {}
        self.tokens = {}
        self.transactions = {}
        self.tally = {}
        self.receipt_ready_after = 0
        self.receipt_errors = 0
        self.receipt_lookups = 0
        self.overrides = {}
        self.delays = {}
        self.calls = []
        self.headers_seen = []
        self.signature_requests = []
        self.cast_payloads = []
        self.app = self._build_app()

    def called(self, method: str, path: str) -> int:
        return self.calls.count((method, f"{API_PREFIX}{path}"))

    def override(self, method: str, path: str, status: int, body: dict):
        self.overrides[(method, f"{API_PREFIX}{path}")] = (status, body)

    def clear_override(self, method: str, path: str):
        self.overrides.pop((method, f"{API_PREFIX}{path}"), None)

    def _session_for(self, request: Request):
        auth = request.headers.get("authorization", "")
        if not auth.startswith("Bearer "):
            return None
        session = self.sessions.get(auth[len("Bearer "):])
        if session is None or self.clock() >= session["expiresAt"]:
            return None
        return session

    def _build_app(self) -> FastAPI:
        app = FastAPI()
        router = APIRouter(prefix=API_PREFIX)

        @app.middleware("http")
        async def record_and_gate(request: Request, call_next):
            key = (request.method, request.url.path)
            self.calls.append(key)
            self.headers_seen.append(dict(request.headers))

            delay = self.delays.get(key)
            if delay:
                await asyncio.sleep(delay)
            if key in self.overrides:
                status, body = self.overrides[key]
                return JSONResponse(status_code=status, content=body)
            if request.headers.get("x-api-key") not in (VOTER_KEY, ADMIN_KEY):
                return _fail(403, "Invalid API key")
            return await call_next(request)

        @router.get("/elections/active")
        async def active_elections():
            return _ok(self.elections)

        @router.post("/identity/verify")
        async def verify_identity(request: Request):
            body = await request.json()
            voter = self.voters.get(body.get("aadhaar"))
            if voter is None or voter["voterId"] != body.get("voterId"):
                return _fail(400, "Identity details do not match our records")
            return _ok({"name": voter["name"], "state": voter["state"], "maskedEmail": voter["maskedEmail"]})

        @router.get("/ec/has-voted")
        async def has_voted(electionId: str, voterProof: str):
            return _ok({"hasVoted": (electionId, voterProof) in self.voted_proofs})

        @router.post("/ec/send-otp")
        async def send_otp(request: Request):
            body = await request.json()
            voter = self.voters.get(body.get("aadhaar"))
            return _ok({"maskedEmail": voter["maskedEmail"], "expiryMinutes": self.otp_expiry_minutes})

        @router.post("/ec/verify-otp")
        async def verify_otp(request: Request):
            body = await request.json()
            if body.get("otp") != OTP_CODE:
                return _fail(400, "Invalid OTP")
            return JSONResponse(content={"success": True})

        @router.post("/ec/create-session")
        async def create_session(request: Request):
            body = await request.json()
            if not (body.get("fingerprintVerified") and body.get("otpVerified")):
                return _fail(400, "Verification incomplete")
            token = secrets.token_hex(16)
            expires_at = self.clock() + self.session_ttl
            self.sessions[token] = {
                "sessionID": f"SESS_{secrets.token_hex(6)}",
                "expiresAt": expires_at,
                "electionId": body["electionId"],
                "voterProof": reference_voter_proof(body["aadhaar"], body["voterId"]),
                "voted": False,
            }
            return _ok({
                "sessionID": self.sessions[token]["sessionID"],
                "authToken": token,
                "expiresAt": expires_at.isoformat(),
            })

        @router.post("/ec/request-blind-signature")
        async def request_blind_signature(request: Request):
            session = self._session_for(request)
            if session is None:
                return _fail(401, "Session expired or invalid")
            body = await request.json()
            if session["voted"]:
                return _fail(403, "Already voted in this session")
            self.signature_requests.append(body)
            signature = hashlib.sha256(f"sig:{body['blindedVote']}:{body['nonce']}".encode()).hexdigest()
            return _ok({"blindSignature": signature, "auditID": f"AUD_{len(self.signature_requests)}"})

        @router.post("/votes/cast")
        async def cast_vote(request: Request):
            session = self._session_for(request)
            if session is None:
                return _fail(401, "Session expired or invalid")
            body = await request.json()
            self.cast_payloads.append(body)
            session["voted"] = True
            self.voted_proofs.add((body["electionId"], session["voterProof"]))
            self.tally[body["candidateId"]] = self.tally.get(body["candidateId"], 0) + 1

            self.receipts[(body["electionId"], body["voteID"])] = {
                "voteID": body["voteID"],
                "electionId": body["electionId"],
                "status": "CONFIRMED",
                "timestamp": self.clock().isoformat(),
            }
            token = secrets.token_hex(16)
            expires_at = self.clock() + self.token_ttl
            self.tokens[token] = {"candidateId": body["candidateId"], "used": False, "expiresAt": expires_at}
            return _ok({
                "voteID": body["voteID"],
                "verificationToken": token,
                "verificationExpiry": expires_at.isoformat(),
            })

        @router.get("/votes/receipt/{election_id}/{vote_id}")
        async def receipt(election_id: str, vote_id: str):
            self.receipt_lookups += 1
            if self.receipt_lookups <= self.receipt_errors:
                return _fail(503, "Ledger temporarily unavailable")
            found = self.receipts.get((election_id, vote_id))
            if found is None or self.receipt_lookups <= self.receipt_errors + self.receipt_ready_after:
                return _fail(404, "Receipt not found")
            return _ok(found)

        @router.get("/votes/verify-choice/{token}")
        async def verify_choice(token: str):
            entry = self.tokens.get(token)
            if entry is None:
                return _fail(404, "Token not found")
            if entry["used"]:
                return _fail(409, "Token already used", status="ALREADY_USED")
            if self.clock() >= entry["expiresAt"]:
                return _fail(410, "Token expired")
            entry["used"] = True
            return _ok({"candidateId": entry["candidateId"]})

        @router.get("/votes/verify/{transaction_id}")
        async def verify_transaction(transaction_id: str):
            entry = self.transactions.get(transaction_id)
            if entry is None:
                return _fail(404, "Vote not found on blockchain")
            return _ok({"exists": True, "transactionId": transaction_id, **entry})

        @router.get("/votes/{election_id}")
        async def results(election_id: str):
            return _ok({
                "electionId": election_id,
                "results": dict(self.tally),
                "totalVotes": sum(self.tally.values()),
            })

        app.include_router(router)
        return app


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture(autouse=True)
def reset_metrics():
    get_monitoring_service().metrics.reset()
    yield


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def settings():
    return Settings(
        API_BASE_URL=f"http://authority.test{API_PREFIX}",
        VOTER_API_KEY=VOTER_KEY,
        ADMIN_API_KEY=ADMIN_KEY,
        TESTING_API_KEY=ADMIN_KEY,
        TERMINAL_ID="TEST_TERMINAL",
        RECEIPT_POLL_INTERVAL_MS=10,
        RECEIPT_POLL_MAX_ATTEMPTS=5,
        RESULTS_REFRESH_SECONDS=0.01,
    )


@pytest.fixture
def authority(clock):
    return FakeElectionAuthority(clock)


@pytest.fixture
def transport(authority):
    return httpx.ASGITransport(app=authority.app)


@pytest_asyncio.fixture
async def client(settings, transport, clock):
    api = ElectionAuthorityClient(settings=settings, transport=transport, clock=clock)
    yield api
    await api.close()


@pytest.fixture
def timers(clock, settings):
    return TimerService(clock=clock, autostart=False, settings=settings)


@pytest.fixture
def store():
    return MemorySessionStore()


@pytest.fixture
def identity(client, timers, store, settings, clock):
    flow = IdentitySession(client, timers=timers, store=store, settings=settings, clock=clock)
    yield flow
    flow.teardown()


@pytest.fixture
def credential():
    return Credential.parse("1234 5678 9012", VOTER_ID)


async def sign_in(identity: IdentitySession, credential: Credential, election_id: str = ELECTION_ID):
    """Drive a flow all the way to SESSION_ACTIVE"""
    await identity.verify_identity(credential, election_id)
    await identity.send_otp()
    await identity.verify_otp(OTP_CODE)
    return await identity.create_session()
