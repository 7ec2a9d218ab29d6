"""Compact HS256 signed tokens.

Tokens are ``base64url(header).base64url(payload).base64url(signature)``
with padding stripped, where the signature is HMAC-SHA256 over the first two
segments keyed by the raw secret. Only ``exp`` (seconds since epoch) is
interpreted; every other claim is opaque to this module.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import secrets
import time
from typing import Any, Optional

_HEADER = {"alg": "HS256", "typ": "JWT"}


class TokenError(Exception):
    """Base class for token decoding and verification failures."""


class MalformedToken(TokenError):
    pass


class InvalidSignature(TokenError):
    pass


class Expired(TokenError):
    pass


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _json_segment(data: dict[str, Any]) -> str:
    return _encode_segment(json.dumps(data, separators=(",", ":")).encode())


def _signature(signing_input: str, secret: str) -> str:
    digest = hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
    return _encode_segment(digest)


def _split(token: str) -> tuple[str, str, str]:
    if not isinstance(token, str):
        raise MalformedToken("token must be a string")
    parts = token.split(".")
    if len(parts) != 3:
        raise MalformedToken("token must have three segments")
    return parts[0], parts[1], parts[2]


def _load_object(segment: str, what: str) -> dict[str, Any]:
    try:
        data = json.loads(_decode_segment(segment))
    except (binascii.Error, ValueError, UnicodeDecodeError) as exc:
        raise MalformedToken(f"{what} is not valid base64url JSON") from exc
    if not isinstance(data, dict):
        raise MalformedToken(f"{what} is not a JSON object")
    return data


def sign(payload: dict[str, Any], secret: str) -> str:
    signing_input = f"{_json_segment(_HEADER)}.{_json_segment(payload)}"
    return f"{signing_input}.{_signature(signing_input, secret)}"


def decode(token: str) -> dict[str, Any]:
    """Return the payload without checking the signature.

    Never use the result for an authorization decision.
    """
    _header, payload_b64, _sig = _split(token)
    return _load_object(payload_b64, "payload")


def verify(token: str, secret: str, *, now: Optional[float] = None) -> dict[str, Any]:
    header_b64, payload_b64, sig_b64 = _split(token)

    expected = _signature(f"{header_b64}.{payload_b64}", secret)
    if not hmac.compare_digest(expected.encode(), sig_b64.encode()):
        raise InvalidSignature("signature mismatch")

    header = _load_object(header_b64, "header")
    # Reject algorithm confusion even when the HMAC happens to match
    if header.get("alg") != "HS256":
        raise InvalidSignature("unsupported algorithm")

    payload = _load_object(payload_b64, "payload")
    exp = payload.get("exp")
    if exp is not None:
        try:
            exp_ts = float(exp)
        except (TypeError, ValueError) as exc:
            raise MalformedToken("exp is not numeric") from exc
        current = time.time() if now is None else now
        if exp_ts <= current:
            raise Expired("token expired")
    return payload


def generate_opaque_token() -> str:
    """32 random bytes as 64 lowercase hex characters."""
    return secrets.token_hex(32)
