"""
Authorization gate for protected gateway endpoints.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from cachetools import TTLCache
from fastapi import Request

from shared.logging import get_logger
from shared.metrics import MetricsCollector

from .credentials import CredentialCodec, UsageCredential
from .dpop import ProofOfPossessionVerifier, ProofRejected
from .policy import SecurityPolicy

USAGE_AUTH_HEADER = "Usage-Auth"
DPOP_HEADER = "DPoP"


@dataclass
class AuthDecision:
    """Outcome of authenticating one request."""

    allowed: bool
    method: str
    claims: Dict[str, Any] = field(default_factory=dict)
    subject: Optional[str] = None


class AuthGate:
    """Accepts a request holding either a usage credential or a valid proof.

    The usage credential is tried first since it needs no I/O. Positive
    credential results are cached briefly by raw token; proofs are never
    cached because each one is single-use.
    """

    def __init__(
        self,
        codec: CredentialCodec,
        verifier: ProofOfPossessionVerifier,
        policy: SecurityPolicy,
        metrics: Optional[MetricsCollector] = None,
        *,
        cache_ttl_seconds: float = 5.0,
        cache_max_entries: int = 1000,
        credential_ttl_seconds: int = 3600,
        clock=time.time,
    ):
        self.codec = codec
        self.verifier = verifier
        self.policy = policy
        self.metrics = metrics
        self.credential_ttl_seconds = credential_ttl_seconds
        self._clock = clock
        self._positive_cache: TTLCache = TTLCache(maxsize=cache_max_entries, ttl=cache_ttl_seconds)
        self.logger = get_logger("gateway.auth.gate")

    async def authorize(self, request: Request) -> bool:
        decision = await self.authenticate(request)
        return decision.allowed

    async def authenticate(self, request: Request) -> AuthDecision:
        if self.metrics:
            with self.metrics.time_operation_ms("auth_verify_ms"):
                decision = await self._authenticate(request)
        else:
            decision = await self._authenticate(request)

        if self.metrics:
            self.metrics.increment_counter(
                "auth_decisions_total",
                method=decision.method,
                result="allow" if decision.allowed else "deny",
            )
        return decision

    async def _authenticate(self, request: Request) -> AuthDecision:
        usage_token = request.headers.get(USAGE_AUTH_HEADER)
        if usage_token:
            cached = self._positive_cache.get(usage_token)
            if cached is not None:
                return AuthDecision(True, "cache", claims=cached, subject=_subject_of(cached))

            decoded = self.codec.decode(usage_token, self.policy.credential_formats)
            if decoded is not None:
                self._positive_cache[usage_token] = decoded.claims
                return AuthDecision(
                    True,
                    decoded.format.value,
                    claims=decoded.claims,
                    subject=_subject_of(decoded.claims),
                )
            self.logger.debug("Usage credential rejected, trying proof of possession")
            if self.metrics:
                self.metrics.increment_counter("auth_rejections_total", reason="invalid_credential")

        proof = request.headers.get(DPOP_HEADER)
        if not proof:
            return AuthDecision(False, "none")

        try:
            claims = await self.verifier.check(proof, request.method, str(request.url))
        except ProofRejected as e:
            self.logger.debug("Proof rejected", reason=e.reason)
            if self.metrics:
                self.metrics.increment_counter("auth_rejections_total", reason=e.reason)
            return AuthDecision(False, "dpop")

        signer = claims.get("signer")
        return AuthDecision(True, "dpop", claims=claims, subject=signer if isinstance(signer, str) else None)

    def mint_credential(
        self,
        job_id: str,
        locked_budget: int,
        endpoints: List[str],
        subject: Optional[str] = None,
        ttl_seconds: Optional[int] = None,
    ) -> Tuple[str, int]:
        """Issue a usage credential for a lock; returns the token and its expiry."""
        ttl = self.credential_ttl_seconds if ttl_seconds is None else ttl_seconds
        if ttl <= 0:
            raise ValueError("credential validity window must be positive")
        now = int(self._clock())
        credential = UsageCredential(
            job_id=job_id,
            locked_budget=locked_budget,
            endpoints=endpoints,
            expires_at=now + ttl,
            issued_at=now,
            subject=subject,
        )
        return self.codec.issue(credential.to_claims()), credential.expires_at


def _subject_of(claims: Dict[str, Any]) -> Optional[str]:
    cnf = claims.get("cnf")
    if isinstance(cnf, dict):
        return cnf.get("jkt")
    return None
