"""
Anonymous Voting Client Proof Service
Derives one-way identity digests from raw credentials
"""

import logging
from typing import Optional

from evote_client.exceptions import ValidationError
from evote_client.schemas import Credential, ProofSet
from evote_client.utils.security import mask_secret, sha256_hex

logger = logging.getLogger(__name__)


class ProofGenerator:
    """Pure, deterministic proof derivation. Never touches the network."""

    def __init__(self):
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    def derive_proofs(self, credential: Credential) -> ProofSet:
        """
        Derive the proof set for a credential

        The voter proof is the digest of the two hex-encoded sub-digests
        concatenated as text, which is how the authority recomputes it.
        Hashing the raw digest bytes instead would never match.

        Args:
            credential: Raw identity fields

        Returns:
            ProofSet with hashed fields and the voter proof

        Raises:
            ValidationError: if any field is empty
        """
        aadhaar = (credential.aadhaar_number or "").strip()
        voter_id = (credential.voter_id_number or "").strip()
        name = (credential.legal_name or "").strip()

        if not aadhaar:
            raise ValidationError("Aadhaar number is required")
        if not voter_id:
            raise ValidationError("Voter ID is required")
        if not name:
            raise ValidationError("Legal name is required to derive proofs")

        hashed_aadhaar = sha256_hex(aadhaar)
        hashed_voter_id = sha256_hex(voter_id)
        voter_proof = sha256_hex(hashed_aadhaar + hashed_voter_id)

        self.logger.debug(f"Derived voter proof {mask_secret(voter_proof, 16)}")

        return ProofSet(
            hashed_aadhaar=hashed_aadhaar,
            hashed_voter_id=hashed_voter_id,
            hashed_name=sha256_hex(name),
            voter_proof=voter_proof,
        )


# Global proof generator instance
_proof_generator: Optional[ProofGenerator] = None


def get_proof_generator() -> ProofGenerator:
    """Get global proof generator instance"""
    global _proof_generator
    if _proof_generator is None:
        _proof_generator = ProofGenerator()
    return _proof_generator


def derive_proofs(credential: Credential) -> ProofSet:
    return get_proof_generator().derive_proofs(credential)
