"""HMAC-SHA256 helpers for OTP hashes and patient decision callbacks."""

from __future__ import annotations

import hashlib
import hmac as hmac_mod
import json
import secrets

__all__ = [
    "generate_otp",
    "hash_otp",
    "verify_otp",
    "sign_body",
    "verify_body_signature",
]

_SIGNATURE_PREFIX = "sha256="


def _canonical(request_id: str, otp: str) -> str:
    """Deterministic JSON: sorted keys, no whitespace."""
    return json.dumps({"otp": otp, "request_id": request_id}, sort_keys=True, separators=(",", ":"))


def generate_otp(length: int) -> str:
    """Numeric one-time password of exactly *length* digits."""
    return "".join(secrets.choice("0123456789") for _ in range(length))


def hash_otp(request_id: str, otp: str, secret: str) -> str:
    """Bind the OTP to its request so a hash is useless for any other request."""
    return hmac_mod.new(
        secret.encode(), _canonical(request_id, otp).encode(), hashlib.sha256
    ).hexdigest()


def verify_otp(request_id: str, candidate: str, secret: str, expected_hash: str) -> bool:
    """Constant-time comparison of a candidate OTP against the stored hash."""
    if not expected_hash:
        return False
    return hmac_mod.compare_digest(hash_otp(request_id, candidate.strip(), secret), expected_hash)


def sign_body(body: bytes, secret: str) -> str:
    """Signature header value for a decision callback body."""
    return _SIGNATURE_PREFIX + hmac_mod.new(secret.encode(), body, hashlib.sha256).hexdigest()


def verify_body_signature(body: bytes, secret: str, signature_header: str) -> bool:
    """Verify an ``X-Signature: sha256=<hex>`` header against the raw body."""
    if not secret or not signature_header.startswith(_SIGNATURE_PREFIX):
        return False
    return hmac_mod.compare_digest(sign_body(body, secret), signature_header)
