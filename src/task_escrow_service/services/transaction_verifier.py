"""Signed call envelopes: JWS verification, caller addresses and replay nonces."""

from __future__ import annotations

import base64
import hashlib
import json
from dataclasses import dataclass
from threading import RLock
from typing import Any

from joserfc import jws
from joserfc.errors import JoseError
from joserfc.jwk import OKPKey

from task_escrow_service.core.exceptions import ServiceError

SIGNING_ALGORITHM = "EdDSA"


def _b64url_decode(part: str) -> bytes:
    padded = part + "=" * (-len(part) % 4)
    return base64.urlsafe_b64decode(padded)


def address_from_public_key(raw_public_key: bytes) -> str:
    """Caller address: 0x + the last 20 bytes of SHA-256 over the raw Ed25519 public key."""
    if len(raw_public_key) != 32:
        msg = "Ed25519 public key must be 32 bytes"
        raise ValueError(msg)
    return "0x" + hashlib.sha256(raw_public_key).digest()[-20:].hex()


@dataclass(frozen=True)
class VerifiedCall:
    """A call envelope whose signature, action and nonce have been accepted."""

    caller: str
    action: str
    nonce: int
    payload: dict[str, Any]


class TransactionVerifier:
    """
    Verifies call envelopes and derives the ambient caller identity.

    An envelope is a compact JWS signed with EdDSA whose protected header
    embeds the signer's public key as a ``jwk``. The caller address is
    derived from that key, so no identity registry is needed. Each address
    has a nonce that must be presented in order; a nonce is consumed as
    soon as the envelope verifies, even if the ledger call then fails.
    """

    def __init__(self) -> None:
        self._lock = RLock()
        self._nonces: dict[str, int] = {}

    def next_nonce(self, address: str) -> int:
        with self._lock:
            return self._nonces.get(address, 0)

    def verify(self, token: str, expected_action: str) -> VerifiedCall:
        """
        Verify an envelope and consume its nonce.

        Error precedence:
        1. INVALID_JWS: not a three-part compact JWS, unreadable header,
           missing or unusable embedded key
        2. FORBIDDEN: signature does not verify against the embedded key
        3. INVALID_PAYLOAD: payload not a JSON object, wrong action,
           missing or mistyped nonce
        4. INVALID_NONCE: nonce is not the caller's next nonce
        """
        if not token:
            raise ServiceError("INVALID_JWS", "Token must be a non-empty string", 400, {})

        parts = token.split(".")
        if len(parts) != 3:
            raise ServiceError(
                "INVALID_JWS",
                "Token must be in JWS compact serialization format (header.payload.signature)",
                400,
                {},
            )

        header = _decode_json_part(parts[0], "header")
        key, caller = _load_embedded_key(header)

        try:
            verified = jws.deserialize_compact(token, key, algorithms=[SIGNING_ALGORITHM])
        except JoseError as exc:
            raise ServiceError("FORBIDDEN", "JWS signature verification failed", 403, {}) from exc

        try:
            payload = json.loads(verified.payload)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise ServiceError(
                "INVALID_PAYLOAD", "JWS payload is not valid JSON", 400, {}
            ) from exc
        if not isinstance(payload, dict):
            raise ServiceError("INVALID_PAYLOAD", "JWS payload must be a JSON object", 400, {})

        action = payload.get("action")
        if action != expected_action:
            raise ServiceError(
                "INVALID_PAYLOAD",
                f"Expected action '{expected_action}', got '{action}'",
                400,
                {},
            )

        nonce = payload.get("nonce")
        if not isinstance(nonce, int) or isinstance(nonce, bool) or nonce < 0:
            raise ServiceError(
                "INVALID_PAYLOAD", "Payload must include a non-negative integer nonce", 400, {}
            )

        with self._lock:
            expected_nonce = self._nonces.get(caller, 0)
            if nonce != expected_nonce:
                raise ServiceError(
                    "INVALID_NONCE",
                    "Nonce does not match the caller's next nonce",
                    409,
                    {"expected": expected_nonce, "received": nonce},
                )
            self._nonces[caller] = expected_nonce + 1

        return VerifiedCall(caller=caller, action=action, nonce=nonce, payload=payload)


def _decode_json_part(part: str, section_name: str) -> dict[str, Any]:
    """Decode a base64url JSON object from a JWS part."""
    try:
        decoded = _b64url_decode(part)
    except Exception as exc:
        raise ServiceError(
            "INVALID_JWS",
            f"Token {section_name} is not valid base64url",
            400,
            {},
        ) from exc

    try:
        value = json.loads(decoded)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ServiceError(
            "INVALID_JWS",
            f"Token {section_name} is not valid JSON",
            400,
            {},
        ) from exc

    if not isinstance(value, dict):
        raise ServiceError(
            "INVALID_JWS",
            f"Token {section_name} must be a JSON object",
            400,
            {},
        )
    return value


def _load_embedded_key(header: dict[str, Any]) -> tuple[OKPKey, str]:
    """Import the Ed25519 public key from the header's jwk and derive its address."""
    jwk = header.get("jwk")
    if not isinstance(jwk, dict):
        raise ServiceError("INVALID_JWS", "Token header must embed the signer's jwk", 400, {})
    if jwk.get("kty") != "OKP" or jwk.get("crv") != "Ed25519":
        raise ServiceError("INVALID_JWS", "Embedded jwk must be an Ed25519 OKP key", 400, {})
    if "d" in jwk:
        raise ServiceError("INVALID_JWS", "Embedded jwk must not contain a private key", 400, {})

    x_value = jwk.get("x")
    if not isinstance(x_value, str):
        raise ServiceError("INVALID_JWS", "Embedded jwk is missing 'x'", 400, {})
    try:
        raw_public_key = _b64url_decode(x_value)
        caller = address_from_public_key(raw_public_key)
        key = OKPKey.import_key({"kty": "OKP", "crv": "Ed25519", "x": x_value})
    except (ValueError, JoseError) as exc:
        raise ServiceError(
            "INVALID_JWS", "Embedded jwk is not a valid public key", 400, {}
        ) from exc
    return key, caller
