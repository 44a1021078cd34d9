"""
Security policy shared by the auth gate and proof verifier.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple

from shared.config import GatewayConfig

from .credentials import CredentialFormat


@dataclass(frozen=True)
class SecurityPolicy:
    """Acceptance policy for proofs and credentials.

    Built once from configuration and handed to the verifier and gate at
    construction; verification code never consults the environment.
    """

    mode: str = "production"
    allow_unsigned_proofs: bool = False
    allow_legacy_credentials: bool = False
    max_clock_skew_seconds: int = 60
    jti_ttl_seconds: int = 120

    @property
    def is_production(self) -> bool:
        return self.mode == "production"

    @property
    def credential_formats(self) -> Tuple[CredentialFormat, ...]:
        """Credential wire formats to try, in order."""
        if self.allow_legacy_credentials:
            return (CredentialFormat.SIGNED, CredentialFormat.LEGACY)
        return (CredentialFormat.SIGNED,)

    @classmethod
    def production(cls, **overrides) -> "SecurityPolicy":
        return cls(mode="production", **overrides)

    @classmethod
    def development(cls, **overrides) -> "SecurityPolicy":
        params = {"allow_unsigned_proofs": True, "allow_legacy_credentials": True}
        params.update(overrides)
        return cls(mode="development", **params)

    @classmethod
    def from_config(cls, config: GatewayConfig) -> "SecurityPolicy":
        # Production never accepts unsigned proofs or legacy credentials.
        relaxed = not config.is_production
        return cls(
            mode=config.security_mode,
            allow_unsigned_proofs=relaxed and config.allow_unsigned_proofs,
            allow_legacy_credentials=relaxed and config.allow_legacy_credentials,
            max_clock_skew_seconds=config.max_clock_skew_seconds,
            jti_ttl_seconds=config.jti_ttl_seconds,
        )
