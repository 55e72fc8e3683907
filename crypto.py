"""Shared crypto utilities for the x402-assured protocol.

Provides:
- Ed25519 identity (keypair generation, signing, verification)
- Canonical trace and mirror messages (delivery attestations, signed mirrors)
- SHA-256 content addressing for response payloads and stream chunks
- HMAC-SHA256 signing for settlement webhooks
- Call id generation

Dependencies: base64, hashlib, hmac, json, os, secrets, cryptography
"""

import base64
import binascii
import hashlib
import hmac as hmac_mod
import json
import os
import secrets
import time as _time

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)
from cryptography.hazmat.primitives import serialization

from protocol import TRACE_PREFIX, MIRROR_PREFIX

ED25519_SIG_LEN = 64
ED25519_KEY_LEN = 32


# ---------------------------------------------------------------------------
# SHA-256 content addressing
# ---------------------------------------------------------------------------

def sha256_hash(data: bytes) -> str:
    """SHA-256 hex digest of raw bytes."""
    return hashlib.sha256(data).hexdigest()


def canonical_json(obj: dict) -> bytes:
    """Canonical JSON: sorted keys, no extra whitespace, UTF-8."""
    return json.dumps(obj, sort_keys=True, separators=(",", ":")).encode("utf-8")


def response_hash(payload: dict) -> str:
    """Content address of a delivered JSON payload."""
    return sha256_hash(canonical_json(payload))


# ---------------------------------------------------------------------------
# HMAC-SHA256 signing -- settlement webhooks
# ---------------------------------------------------------------------------

def hmac_sign(key: bytes, data: bytes) -> str:
    """HMAC-SHA256 of *data* under *key*, returned as hex."""
    return hmac_mod.new(key, data, hashlib.sha256).hexdigest()


def hmac_verify(key: bytes, data: bytes, signature: str) -> bool:
    """Constant-time comparison of HMAC-SHA256 signature."""
    if not signature:
        return False
    expected = hmac_sign(key, data)
    return hmac_mod.compare_digest(expected, signature)


# ---------------------------------------------------------------------------
# Ed25519 identity
# ---------------------------------------------------------------------------

def generate_ed25519_keypair() -> tuple[bytes, bytes]:
    """Generate a new Ed25519 keypair. Returns (privkey_bytes, pubkey_bytes).
    Both are 32 bytes raw."""
    privkey = Ed25519PrivateKey.generate()
    priv_bytes = privkey.private_bytes(
        serialization.Encoding.Raw,
        serialization.PrivateFormat.Raw,
        serialization.NoEncryption(),
    )
    pub_bytes = privkey.public_key().public_bytes(
        serialization.Encoding.Raw,
        serialization.PublicFormat.Raw,
    )
    return priv_bytes, pub_bytes


def load_ed25519_key(path: str) -> bytes:
    """Load a 32-byte raw Ed25519 private key from file."""
    with open(path, "rb") as f:
        data = f.read()
    if len(data) != ED25519_KEY_LEN:
        raise ValueError(f"Expected 32-byte Ed25519 key, got {len(data)} bytes")
    return data


def save_ed25519_key(path: str, key: bytes) -> None:
    """Save a 32-byte raw Ed25519 private key to file (mode 0600)."""
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    try:
        os.write(fd, key)
    finally:
        os.close(fd)


def ed25519_privkey_to_pubkey(privkey_bytes: bytes) -> bytes:
    """Derive the 32-byte public key from a 32-byte private key."""
    privkey = Ed25519PrivateKey.from_private_bytes(privkey_bytes)
    return privkey.public_key().public_bytes(
        serialization.Encoding.Raw,
        serialization.PublicFormat.Raw,
    )


def ed25519_sign(privkey_bytes: bytes, data: bytes) -> bytes:
    """Sign data with Ed25519 private key. Returns the raw 64-byte signature."""
    privkey = Ed25519PrivateKey.from_private_bytes(privkey_bytes)
    return privkey.sign(data)


def ed25519_verify(pubkey_bytes: bytes, data: bytes, sig: bytes) -> bool:
    """Verify Ed25519 signature. Returns True if valid, False on any bad input."""
    if len(pubkey_bytes) != ED25519_KEY_LEN or len(sig) != ED25519_SIG_LEN:
        return False
    try:
        pubkey = Ed25519PublicKey.from_public_bytes(pubkey_bytes)
        pubkey.verify(sig, data)
        return True
    except (InvalidSignature, ValueError):
        return False


def sign_message(privkey_bytes: bytes, message: str) -> str:
    """Sign a canonical message string. Returns base64 signature."""
    return base64.b64encode(ed25519_sign(privkey_bytes, message.encode("utf-8"))).decode("ascii")


def verify_message(message: str, signature: str, pubkey_hex: str) -> bool:
    """Verify a base64 signature over *message* against a hex pubkey.

    Never raises: empty/undersized signatures, bad base64 and malformed
    public keys all verify as False.
    """
    if not signature or not pubkey_hex or not isinstance(message, str):
        return False
    try:
        sig = base64.b64decode(signature, validate=True)
        pubkey = bytes.fromhex(pubkey_hex)
    except (binascii.Error, ValueError, TypeError):
        return False
    return ed25519_verify(pubkey, message.encode("utf-8"), sig)


# ---------------------------------------------------------------------------
# Canonical trust-layer messages
# ---------------------------------------------------------------------------

def build_trace_message(call_id: str, response_hash_hex: str, delivered_at_ms: int) -> str:
    """assured-trace|<callId>|<responseHashHex>|<deliveredAtMillis>"""
    return f"{TRACE_PREFIX}|{call_id}|{response_hash_hex}|{int(delivered_at_ms)}"


def build_mirror_message(service_id: str, mirror_url: str) -> str:
    """assured-mirror|<serviceId>|<mirrorUrl>"""
    return f"{MIRROR_PREFIX}|{service_id}|{mirror_url}"


def sign_trace(privkey_bytes: bytes, call_id: str, response_hash_hex: str,
               delivered_at_ms: int) -> str:
    return sign_message(privkey_bytes, build_trace_message(call_id, response_hash_hex, delivered_at_ms))


def verify_trace(call_id: str, response_hash_hex: str, delivered_at_ms: int,
                 signature: str, signer_pubkey_hex: str) -> bool:
    try:
        message = build_trace_message(call_id, response_hash_hex, delivered_at_ms)
    except (TypeError, ValueError):
        return False
    return verify_message(message, signature, signer_pubkey_hex)


def sign_mirror(privkey_bytes: bytes, service_id: str, mirror_url: str) -> str:
    return sign_message(privkey_bytes, build_mirror_message(service_id, mirror_url))


def verify_mirror(service_id: str, mirror_url: str, signature: str, signer_pubkey_hex: str) -> bool:
    return verify_message(build_mirror_message(service_id, mirror_url), signature, signer_pubkey_hex)


# ---------------------------------------------------------------------------
# Call ids
# ---------------------------------------------------------------------------

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def _base36(n: int) -> str:
    if n == 0:
        return "0"
    out = []
    while n:
        n, r = divmod(n, 36)
        out.append(_BASE36[r])
    return "".join(reversed(out))


def generate_call_id(service_id: str, now_ms: int | None = None) -> str:
    """Globally unique call id: <serviceId>:<base36 ms>:<12 hex>."""
    ts = int(_time.time() * 1000) if now_ms is None else int(now_ms)
    return f"{service_id}:{_base36(ts)}:{secrets.token_hex(6)}"
