"""
Authentication and authorization for the gateway's protected endpoints.
"""

from .credentials import CredentialCodec, CredentialFormat, DecodedCredential, UsageCredential, normalize_expiry
from .dpop import ProofOfPossessionVerifier, ProofRejected, build_proof, parse_proof
from .gate import AuthDecision, AuthGate, DPOP_HEADER, USAGE_AUTH_HEADER
from .policy import SecurityPolicy
from .replay_cache import InMemoryReplayCache, RedisReplayCache, ReplayCache, create_replay_cache

__all__ = [
    "AuthDecision",
    "AuthGate",
    "CredentialCodec",
    "CredentialFormat",
    "DecodedCredential",
    "DPOP_HEADER",
    "InMemoryReplayCache",
    "ProofOfPossessionVerifier",
    "ProofRejected",
    "RedisReplayCache",
    "ReplayCache",
    "SecurityPolicy",
    "USAGE_AUTH_HEADER",
    "UsageCredential",
    "build_proof",
    "create_replay_cache",
    "normalize_expiry",
    "parse_proof",
]
