"""
Usage credential signing and decoding.

Signed credentials are HS256 JWTs over the claim set. A second, unsigned
legacy format (base64 JSON carrying ``job_id`` and ``expires_at``) is only
decoded when the security policy lists it.
"""

from __future__ import annotations

import base64
import binascii
import json
import math
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

import jwt

from shared.logging import get_logger

ExpiryValue = Union[int, float, str, datetime]

# Epoch values above this are milliseconds (year 33658 in seconds).
_MILLIS_THRESHOLD = 10 ** 12

logger = get_logger("gateway.auth.credentials")


class CredentialFormat(str, Enum):
    """Wire formats a usage credential may arrive in."""

    SIGNED = "signed"
    LEGACY = "legacy"


@dataclass(frozen=True)
class DecodedCredential:
    format: CredentialFormat
    claims: Dict[str, Any]

    @property
    def job_id(self) -> Optional[str]:
        return self.claims.get("job_id")


@dataclass
class UsageCredential:
    """Grant to execute paid work against a locked budget."""

    job_id: str
    locked_budget: int
    endpoints: List[str]
    expires_at: int
    issued_at: int = field(default_factory=lambda: int(time.time()))
    subject: Optional[str] = None

    def to_claims(self) -> Dict[str, Any]:
        claims: Dict[str, Any] = {
            "job_id": self.job_id,
            "locked_budget": self.locked_budget,
            "endpoints": list(self.endpoints),
            "iat": self.issued_at,
            "exp": self.expires_at,
        }
        if self.subject:
            claims["cnf"] = {"jkt": self.subject}
        return claims

    @classmethod
    def from_claims(cls, claims: Mapping[str, Any]) -> "UsageCredential":
        cnf = claims.get("cnf") or {}
        return cls(
            job_id=str(claims["job_id"]),
            locked_budget=int(claims.get("locked_budget", 0)),
            endpoints=list(claims.get("endpoints") or []),
            expires_at=normalize_expiry(claims["exp"]),
            issued_at=int(claims.get("iat", 0)),
            subject=cnf.get("jkt") if isinstance(cnf, dict) else None,
        )


def normalize_expiry(value: ExpiryValue) -> int:
    """Normalize an expiry to integer epoch seconds.

    Accepts epoch seconds, epoch milliseconds, datetimes (naive ones are
    taken as UTC) and ISO-8601 strings.
    """
    if isinstance(value, bool):
        raise ValueError("expiry must not be a boolean")
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return int(value.timestamp())
    if isinstance(value, str):
        candidate = value.strip()
        try:
            value = float(candidate)
        except ValueError:
            if candidate.endswith("Z"):
                candidate = candidate[:-1] + "+00:00"
            return normalize_expiry(datetime.fromisoformat(candidate))
    if isinstance(value, (int, float)):
        if isinstance(value, float) and not math.isfinite(value):
            raise ValueError("expiry must be a finite number")
        if value > _MILLIS_THRESHOLD:
            value = value / 1000
        return int(value)
    raise ValueError(f"unsupported expiry type: {type(value).__name__}")


def _b64decode(segment: str) -> bytes:
    """Decode standard or URL-safe base64 with or without padding."""
    segment = segment.strip()
    padded = segment + "=" * (-len(segment) % 4)
    if "-" in segment or "_" in segment:
        return base64.urlsafe_b64decode(padded)
    return base64.b64decode(padded, validate=True)


class CredentialCodec:
    """Issues and verifies signed usage credentials under a shared secret."""

    algorithm = "HS256"

    def __init__(self, secret: str, clock=time.time):
        if not secret:
            raise ValueError("usage credential secret must not be empty")
        self._secret = secret
        self._clock = clock

    def issue(self, claims: Mapping[str, Any]) -> str:
        """Sign ``claims`` into an opaque token.

        The expiry may be given as ``exp`` or ``expires_at`` in any unit
        :func:`normalize_expiry` understands; the token always carries
        ``exp`` in epoch seconds.
        """
        payload = dict(claims)
        if "exp" in payload:
            expiry = payload.pop("exp")
        elif "expires_at" in payload:
            expiry = payload.pop("expires_at")
        else:
            raise ValueError("claims must carry an expiry (exp or expires_at)")
        payload["exp"] = normalize_expiry(expiry)

        canonical = dict(sorted(payload.items()))
        return jwt.encode(canonical, self._secret, algorithm=self.algorithm)

    def verify(self, token: str) -> Tuple[bool, Optional[Dict[str, Any]]]:
        """Return ``(True, claims)`` for an authentic unexpired token, else ``(False, None)``."""
        claims = self._decode_signed(token)
        if claims is None:
            return False, None
        return True, claims

    def decode(
        self,
        token: str,
        formats: Iterable[CredentialFormat] = (CredentialFormat.SIGNED,),
    ) -> Optional[DecodedCredential]:
        """Try each format in order and return the first that accepts ``token``."""
        decoders = {
            CredentialFormat.SIGNED: self._decode_signed,
            CredentialFormat.LEGACY: self._decode_legacy,
        }
        for credential_format in formats:
            claims = decoders[credential_format](token)
            if claims is not None:
                return DecodedCredential(format=credential_format, claims=claims)
        return None

    def _decode_signed(self, token: str) -> Optional[Dict[str, Any]]:
        # Expiry is checked against the codec clock below, not PyJWT's.
        try:
            claims = jwt.decode(
                token,
                self._secret,
                algorithms=[self.algorithm],
                options={"require": ["exp"], "verify_exp": False},
            )
        except (jwt.PyJWTError, ValueError, TypeError, RecursionError) as e:
            logger.debug("Signed credential rejected", error=str(e))
            return None

        try:
            expires_at = normalize_expiry(claims["exp"])
        except (ValueError, TypeError):
            return None
        if expires_at <= self._clock():
            logger.debug("Signed credential expired", job_id=claims.get("job_id"))
            return None
        return claims

    def _decode_legacy(self, token: str) -> Optional[Dict[str, Any]]:
        try:
            parsed = json.loads(_b64decode(token).decode("utf-8"))
        except (binascii.Error, UnicodeDecodeError, ValueError, RecursionError):
            logger.debug("Legacy credential is not base64 JSON")
            return None

        if not isinstance(parsed, dict) or not parsed.get("job_id") or not parsed.get("expires_at"):
            return None
        try:
            expires_at = normalize_expiry(parsed["expires_at"])
        except (ValueError, TypeError):
            return None
        if expires_at <= self._clock():
            return None
        return parsed
