"""Shared test helpers for signed call envelopes."""

from __future__ import annotations

import base64
import json
from typing import Any

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from joserfc import jws
from joserfc.jwk import OKPKey

from task_escrow_service.services.transaction_verifier import address_from_public_key

# Native amounts are integers in base units, like wei.
UNIT = 10**18


def to_base_units(amount: int | float) -> int:
    """Convert a whole-unit amount (e.g. 1.5) to base units."""
    return int(amount * UNIT)


def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode()


def generate_keypair() -> tuple[Ed25519PrivateKey, str]:
    """Generate an Ed25519 keypair -> (private_key, caller address)."""
    private_key = Ed25519PrivateKey.generate()
    return private_key, address_from_public_key(private_key.public_key().public_bytes_raw())


def public_jwk(private_key: Ed25519PrivateKey) -> dict[str, str]:
    return {
        "kty": "OKP",
        "crv": "Ed25519",
        "x": _b64url(private_key.public_key().public_bytes_raw()),
    }


def make_call_token(
    private_key: Ed25519PrivateKey,
    payload: dict[str, Any],
    *,
    header_overrides: dict[str, Any] | None = None,
) -> str:
    """Create a JWS compact token whose protected header embeds the signer's public jwk."""
    jwk_dict = {**public_jwk(private_key), "d": _b64url(private_key.private_bytes_raw())}
    key = OKPKey.import_key(jwk_dict)
    protected: dict[str, Any] = {"alg": "EdDSA", "jwk": public_jwk(private_key)}
    if header_overrides:
        protected.update(header_overrides)
    payload_bytes = json.dumps(payload, separators=(",", ":"), sort_keys=True).encode()
    return jws.serialize_compact(protected, payload_bytes, key, algorithms=["EdDSA"])


def make_unsigned_token(header: dict[str, Any], payload: dict[str, Any]) -> str:
    """Build a structurally valid token with a fake signature (for format-only tests)."""
    header_b64 = _b64url(json.dumps(header).encode())
    payload_b64 = _b64url(json.dumps(payload).encode())
    return f"{header_b64}.{payload_b64}.{_b64url(b'fake-signature')}"


def tamper_jws(token: str) -> str:
    """Alter the payload of a JWS after signing (creates invalid signature)."""
    parts = token.split(".")
    payload_bytes = base64.urlsafe_b64decode(parts[1] + "==")
    payload = json.loads(payload_bytes)
    payload["_tampered"] = True
    return f"{parts[0]}.{_b64url(json.dumps(payload).encode())}.{parts[2]}"


class Signer:
    """A keypair that signs call envelopes with its own running nonce."""

    def __init__(self) -> None:
        self.private_key, self.address = generate_keypair()
        self.nonce = 0

    def sign(self, action: str, **fields: Any) -> str:
        token = make_call_token(
            self.private_key, {"action": action, "nonce": self.nonce, **fields}
        )
        self.nonce += 1
        return token
