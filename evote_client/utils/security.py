"""
Security utilities for identity hashing and random identifiers
"""

import base64
import hashlib
import hmac
import json
import secrets
from typing import Any, Dict

VOTE_ID_PREFIX = "VOTE_"
BATCH_ID_PREFIX = "BATCH_"


def sha256_hex(value: str) -> str:
    """SHA-256 of the UTF-8 encoded string, hex encoded"""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def generate_vote_id() -> str:
    """Random vote id: VOTE_ + 32 hex characters, unlinkable to the voter"""
    return f"{VOTE_ID_PREFIX}{secrets.token_hex(16)}"


def generate_nonce() -> str:
    """Random 32 hex character nonce for replay protection"""
    return secrets.token_hex(16)


def generate_batch_id(timestamp_ms: int) -> str:
    """Anonymity batch id derived from the submission time"""
    return f"{BATCH_ID_PREFIX}{timestamp_ms}"


def generate_blinding_factor() -> bytes:
    """Fresh 256-bit blinding factor"""
    return secrets.token_bytes(32)


def canonical_json(data: Dict[str, Any]) -> bytes:
    """Deterministic JSON encoding (sorted keys, no whitespace)"""
    return json.dumps(data, sort_keys=True, separators=(",", ":")).encode("utf-8")


def blind_commitment(blinding_factor: bytes, payload: bytes) -> str:
    """
    Hide a payload behind a keyed commitment

    Without the blinding factor the commitment reveals nothing about the
    payload, so the signer can sign it without learning the choice.

    Returns:
        Base64 encoded HMAC-SHA256 of the payload
    """
    digest = hmac.new(blinding_factor, payload, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def mask_secret(value: str, visible: int = 8) -> str:
    """Shorten a token or digest for log output"""
    if not value:
        return "<empty>"
    return f"{value[:visible]}..."
