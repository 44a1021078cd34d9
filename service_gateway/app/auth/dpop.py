"""
Proof-of-possession (DPoP-style) verification.

A proof binds the HTTP method, target URL and issue time of one request to
the caller's Ed25519 key. Two wire shapes are accepted:

* compact ``header.payload.signature`` where the payload is base64url JSON
  and the third segment is the detached signature;
* a single base64 JSON blob carrying an inline ``sig`` field.

The signature covers ``f"{htm}:{htu}:{iat}"``. Proofs carrying a ``jti`` are
single-use: the nonce is consumed in the replay cache on acceptance.
"""

from __future__ import annotations

import base64
import binascii
import json
import time
import uuid
from typing import Any, Dict, Optional
from urllib.parse import urlsplit

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey

from shared.errors import AuthenticationError, BackendDegradedError
from shared.logging import get_logger
from shared.metrics import MetricsCollector

from .credentials import _b64decode, normalize_expiry
from .policy import SecurityPolicy
from .replay_cache import ReplayCache


class ProofRejected(AuthenticationError):
    """A proof failed one of the verification steps."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__("Proof of possession rejected", details={"reason": reason})


def signing_string(htm: str, htu: str, iat: Any) -> str:
    return f"{htm}:{htu}:{iat}"


def parse_proof(proof_header: str) -> Dict[str, Any]:
    """Decode either wire shape into a claim dict, raising ``ProofRejected('malformed')``."""
    if not proof_header or not isinstance(proof_header, str):
        raise ProofRejected("malformed")

    try:
        if proof_header.count(".") == 2:
            _, payload_segment, signature_segment = proof_header.split(".")
            parsed = json.loads(_b64decode(payload_segment).decode("utf-8"))
            if isinstance(parsed, dict) and not parsed.get("sig") and signature_segment:
                parsed["sig"] = signature_segment
        else:
            parsed = json.loads(_b64decode(proof_header).decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, ValueError, RecursionError):
        raise ProofRejected("malformed")

    if not isinstance(parsed, dict):
        raise ProofRejected("malformed")
    return parsed


def _decode_binary(value: str) -> bytes:
    """Key and signature material is hex (optionally 0x-prefixed) or base64url."""
    candidate = value[2:] if value.startswith("0x") else value
    try:
        return bytes.fromhex(candidate)
    except ValueError:
        return _b64decode(value)


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def public_key_hex(private_key: Ed25519PrivateKey) -> str:
    raw = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )
    return raw.hex()


def build_proof(
    private_key: Ed25519PrivateKey,
    htm: str,
    htu: str,
    iat: Optional[int] = None,
    jti: Optional[str] = None,
) -> str:
    """Build a signed compact proof, as a client SDK would."""
    iat = int(time.time()) if iat is None else iat
    jti = jti or uuid.uuid4().hex
    signature = private_key.sign(signing_string(htm, htu, iat).encode("utf-8"))
    header = {"typ": "dpop+jwt", "alg": "EdDSA"}
    payload = {"htm": htm, "htu": htu, "iat": iat, "jti": jti, "signer": public_key_hex(private_key)}
    return ".".join([
        _b64url(json.dumps(header, separators=(",", ":")).encode("utf-8")),
        _b64url(json.dumps(payload, separators=(",", ":")).encode("utf-8")),
        _b64url(signature),
    ])


class ProofOfPossessionVerifier:
    """Validates per-request proofs against the request and the replay cache."""

    def __init__(
        self,
        replay_cache: ReplayCache,
        policy: SecurityPolicy,
        metrics: Optional[MetricsCollector] = None,
        clock=time.time,
    ):
        self.replay_cache = replay_cache
        self.policy = policy
        self.metrics = metrics
        self._clock = clock
        self.logger = get_logger("gateway.auth.dpop")

    async def verify(self, proof_header: str, request_method: str, request_url: str) -> bool:
        """Return True if the proof is acceptable for this request."""
        try:
            await self.check(proof_header, request_method, request_url)
            return True
        except ProofRejected as e:
            self.logger.debug("Proof rejected", reason=e.reason, method=request_method)
            if self.metrics:
                self.metrics.increment_counter("auth_rejections_total", reason=e.reason)
            return False

    async def check(self, proof_header: str, request_method: str, request_url: str) -> Dict[str, Any]:
        """Verify the proof and return its claims, raising ``ProofRejected`` otherwise."""
        claims = parse_proof(proof_header)

        htm, htu, iat = claims.get("htm"), claims.get("htu"), claims.get("iat")
        if not htm or not htu or iat in (None, ""):
            raise ProofRejected("missing_claims")
        if not isinstance(htm, str) or not isinstance(htu, str):
            raise ProofRejected("malformed")

        try:
            issued_at = normalize_expiry(iat)
        except (ValueError, TypeError):
            raise ProofRejected("malformed")
        if abs(self._clock() - issued_at) > self.policy.max_clock_skew_seconds:
            raise ProofRejected("clock_skew")

        if htm.upper() != (request_method or "").upper():
            raise ProofRejected("method_mismatch")
        request_path = urlsplit(request_url).path or request_url
        if not htu.endswith(request_path):
            raise ProofRejected("url_mismatch")

        signer, sig = claims.get("signer"), claims.get("sig")
        if signer and sig:
            self._verify_signature(signer, sig, signing_string(htm, htu, iat))
        elif not self.policy.allow_unsigned_proofs:
            raise ProofRejected("unsigned")
        else:
            self.logger.debug("Accepting unsigned proof outside production", mode=self.policy.mode)

        jti = claims.get("jti")
        if jti:
            await self._consume_jti(str(jti))

        return claims

    def _verify_signature(self, signer: Any, sig: Any, message: str) -> None:
        if not isinstance(signer, str) or not isinstance(sig, str):
            raise ProofRejected("bad_signature")
        try:
            public_key = Ed25519PublicKey.from_public_bytes(_decode_binary(signer))
            public_key.verify(_decode_binary(sig), message.encode("utf-8"))
        except (InvalidSignature, ValueError, binascii.Error):
            raise ProofRejected("bad_signature")

    async def _consume_jti(self, jti: str) -> None:
        try:
            first_use = await self.replay_cache.set_if_absent(jti, self.policy.jti_ttl_seconds)
        except BackendDegradedError:
            raise ProofRejected("replay_cache_unavailable")
        if not first_use:
            raise ProofRejected("replay")
