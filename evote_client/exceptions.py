"""
Anonymous Voting Client Errors
Error taxonomy shared by every protocol phase
"""

from typing import Optional


INLINE = "inline"
BANNER = "banner"


class VotingClientError(Exception):
    """Base class for all protocol errors"""

    retryable: bool = False
    presentation: str = INLINE

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class ValidationError(VotingClientError):
    """Local input problem, fixable without the network"""


class AuthError(VotingClientError):
    """User-correctable rejection by the election authority"""


class NotAuthenticatedError(AuthError):
    """A protected operation was attempted without a live session"""


class AlreadyVotedError(VotingClientError):
    """The voter proof already has a vote recorded for this election"""

    presentation = BANNER


class NotFoundError(VotingClientError):
    """The requested record does not exist (yet)"""


class TokenReuseError(VotingClientError):
    """Verification token was already redeemed"""


class TokenExpiredError(VotingClientError):
    """Verification token expired or is unknown to the authority"""


class VerificationError(VotingClientError):
    """Any other verification-token redemption failure"""


class ResponseShapeError(VotingClientError):
    """A trusted success response is missing a required field"""

    def __init__(self, message: str, response_type: str, field: str):
        super().__init__(message)
        self.response_type = response_type
        self.field = field


class NetworkError(VotingClientError):
    """Transient transport or server failure"""

    retryable = True


class PhaseTimeoutError(VotingClientError, TimeoutError):
    """A time budget for the current phase ran out"""

    presentation = BANNER


class SessionExpiredError(PhaseTimeoutError):
    """The voting session reached its expiry"""


class ProtocolStateError(VotingClientError):
    """An operation was called out of protocol order"""


class ConcurrentOperationError(VotingClientError):
    """Another mutating call is already in flight for this session"""


class FlowCancelledError(VotingClientError):
    """The owning flow was torn down while the call was in flight"""
