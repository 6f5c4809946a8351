"""
Secure QR check-in tokens.

A token is the AES-256-GCM encryption of a signed JSON claim::

    {"id": <attendee id>, "exp": <epoch ms>, "nonce": <hex>,
     "env": <device hash>?, "ip": <ip hash>?, "sig": <hmac hex>}

rendered as unpadded base64url so it can be placed directly into a QR code.
Signing and encryption keys are both derived from the event secret with
HKDF; the raw secret is never used as a key.

Verification is a pure function of the token, the secret and the optional
binding inputs. It never raises for a bad token; the failure is reported as a
:class:`TokenFailure` so a scanning UI can show a specific message and retry.
Checks always run in the order decrypt -> signature -> expiry -> binding.
"""
from __future__ import annotations
import base64
import hashlib
import hmac
import json
import os
import secrets
import time
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from functools import lru_cache
from io import BytesIO
from typing import Any, Dict, Tuple

import qrcode
from qrcode.constants import ERROR_CORRECT_H
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

DEFAULT_TTL = timedelta(minutes=15)

NONCE_BYTES = 16
BINDING_HASH_LEN = 16
_IV_BYTES = 12

_SIGN_INFO = b"qr-token/sign"
_ENC_INFO = b"qr-token/encrypt"

class TokenFailure(str, Enum):
    CORRUPTED = "corrupted or tampered token"
    TAMPERED = "tampered"
    EXPIRED = "expired"
    NETWORK_MISMATCH = "token was issued for a different network"
    DEVICE_MISMATCH = "token was issued for a different device"

    @property
    def is_binding(self) -> bool:
        return self in (TokenFailure.NETWORK_MISMATCH, TokenFailure.DEVICE_MISMATCH)

@dataclass(frozen=True)
class TokenVerification:
    valid: bool
    attendee_id: str | None = None
    failure: TokenFailure | None = None
    expires_in_ms: int | None = None
    nonce: str | None = None

    @property
    def reason(self) -> str | None:
        return self.failure.value if self.failure else None

    @classmethod
    def fail(cls, failure: TokenFailure) -> "TokenVerification":
        return cls(valid=False, failure=failure)

def _now_ms() -> int:
    return time.time_ns() // 1_000_000

@lru_cache(maxsize=32)
def _derive_key(secret: str, info: bytes) -> bytes:
    return HKDF(algorithm=hashes.SHA256(), length=32, salt=None, info=info).derive(
        secret.encode("utf-8")
    )

def binding_hash(value: str) -> str:
    """Truncated SHA-256 used for the ``env`` and ``ip`` claims."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:BINDING_HASH_LEN]

def _canonical(claim: Dict[str, Any]) -> bytes:
    return json.dumps(claim, sort_keys=True, separators=(",", ":")).encode("utf-8")

def _sign(claim: Dict[str, Any], secret: str) -> str:
    return hmac.new(_derive_key(secret, _SIGN_INFO), _canonical(claim), hashlib.sha256).hexdigest()

def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")

def _b64decode(text: str) -> bytes:
    raw = base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))
    # reject non-canonical spellings (stray chars, dirty trailing bits)
    if _b64encode(raw) != text:
        raise ValueError("non-canonical token encoding")
    return raw

def _encrypt(plaintext: bytes, secret: str) -> str:
    iv = os.urandom(_IV_BYTES)
    ct = AESGCM(_derive_key(secret, _ENC_INFO)).encrypt(iv, plaintext, None)
    return _b64encode(iv + ct)

def _decrypt(token: str, secret: str) -> bytes:
    raw = _b64decode(token)
    if len(raw) <= _IV_BYTES:
        raise ValueError("token too short")
    return AESGCM(_derive_key(secret, _ENC_INFO)).decrypt(raw[:_IV_BYTES], raw[_IV_BYTES:], None)

def issue_token(
    attendee_id: str,
    secret: str,
    *,
    ttl: timedelta | None = None,
    client_ip: str | None = None,
    device_info: str | None = None,
) -> Tuple[str, int]:
    """Build a token and return it with its ``exp`` (epoch ms)."""
    if not attendee_id:
        raise ValueError("attendee_id is required")
    if not secret:
        raise ValueError("secret is required")
    ttl = DEFAULT_TTL if ttl is None else ttl
    ttl_ms = int(ttl.total_seconds() * 1000)
    if ttl_ms <= 0:
        raise ValueError("ttl must be positive")

    claim: Dict[str, Any] = {
        "id": str(attendee_id),
        "exp": _now_ms() + ttl_ms,
        "nonce": secrets.token_hex(NONCE_BYTES),
    }
    if device_info:
        claim["env"] = binding_hash(device_info)
    if client_ip:
        claim["ip"] = binding_hash(client_ip)
    claim["sig"] = _sign(claim, secret)
    token = _encrypt(json.dumps(claim, separators=(",", ":")).encode("utf-8"), secret)
    return token, claim["exp"]

def build_token(
    attendee_id: str,
    secret: str,
    *,
    ttl: timedelta | None = None,
    client_ip: str | None = None,
    device_info: str | None = None,
) -> str:
    token, _ = issue_token(attendee_id, secret, ttl=ttl, client_ip=client_ip, device_info=device_info)
    return token

def verify_token(
    token: str,
    secret: str,
    *,
    client_ip: str | None = None,
    device_info: str | None = None,
) -> TokenVerification:
    # 1) decrypt; nothing from a failed decryption is looked at
    try:
        claim = json.loads(_decrypt(token.strip(), secret))
    except (ValueError, TypeError, AttributeError, InvalidTag):
        return TokenVerification.fail(TokenFailure.CORRUPTED)
    if not isinstance(claim, dict):
        return TokenVerification.fail(TokenFailure.CORRUPTED)

    # 2) signature
    sig = claim.pop("sig", None)
    if not isinstance(sig, str) or not hmac.compare_digest(sig, _sign(claim, secret)):
        return TokenVerification.fail(TokenFailure.TAMPERED)

    # 3) expiry
    exp = claim.get("exp")
    if not isinstance(exp, int) or not claim.get("id"):
        return TokenVerification.fail(TokenFailure.TAMPERED)
    now = _now_ms()
    if exp <= now:
        return TokenVerification.fail(TokenFailure.EXPIRED)

    # 4) binding, only when the caller opts in and the claim carries it
    if client_ip and claim.get("ip") and binding_hash(client_ip) != claim["ip"]:
        return TokenVerification.fail(TokenFailure.NETWORK_MISMATCH)
    if device_info and claim.get("env") and binding_hash(device_info) != claim["env"]:
        return TokenVerification.fail(TokenFailure.DEVICE_MISMATCH)

    return TokenVerification(
        valid=True,
        attendee_id=str(claim["id"]),
        expires_in_ms=exp - now,
        nonce=claim.get("nonce"),
    )

# --- rendering ---

def _make_image(token: str):
    qr = qrcode.QRCode(error_correction=ERROR_CORRECT_H, border=1)
    qr.add_data(token)
    qr.make(fit=True)
    return qr.make_image(fill_color="black", back_color="white")

def render_qr_png(token: str) -> bytes:
    b = BytesIO()
    _make_image(token).save(b, format="PNG")
    return b.getvalue()

def render_qr_data_url(token: str) -> str:
    return "data:image/png;base64," + base64.b64encode(render_qr_png(token)).decode("ascii")
