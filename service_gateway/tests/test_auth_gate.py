"""
Unit tests for AuthGate.
"""

import time
from unittest.mock import AsyncMock

import pytest
from fastapi import Request

from shared.metrics import MetricsCollector
from service_gateway.app.auth import (
    AuthGate,
    CredentialCodec,
    ProofOfPossessionVerifier,
    SecurityPolicy,
    build_proof,
)
from service_gateway.app.auth.dpop import public_key_hex
from service_gateway.tests.factories import TEST_SECRET, encode_blob

LOCK_HTU = "https://gateway.example.com/v1/jobs/lock"


def make_request(headers=None, method="POST", path="/v1/jobs/lock") -> Request:
    scope = {
        "type": "http",
        "method": method,
        "path": path,
        "root_path": "",
        "scheme": "http",
        "query_string": b"",
        "server": ("testserver", 80),
        "headers": [(k.lower().encode("latin-1"), v.encode("latin-1")) for k, v in (headers or {}).items()],
    }
    return Request(scope)


def make_gate(policy, replay_cache, metrics=None, **kwargs):
    codec = CredentialCodec(TEST_SECRET)
    verifier = ProofOfPossessionVerifier(replay_cache, policy, metrics)
    return AuthGate(codec, verifier, policy, metrics, **kwargs)


class TestAuthGate:
    """Test cases for AuthGate."""

    @pytest.fixture
    def metrics(self):
        return MetricsCollector("gateway")

    @pytest.fixture
    def gate(self, replay_cache, metrics):
        return make_gate(SecurityPolicy.production(), replay_cache, metrics)

    @pytest.mark.asyncio
    async def test_no_headers_denied(self, gate, metrics):
        decision = await gate.authenticate(make_request())

        assert decision.allowed is False
        assert decision.method == "none"
        assert metrics.sample("auth_decisions_total", method="none", result="deny") == 1.0

    @pytest.mark.asyncio
    async def test_signed_usage_credential_allowed(self, gate):
        token, _ = gate.mint_credential("job-1", 100, ["llm.chat.v1"])

        decision = await gate.authenticate(make_request({"Usage-Auth": token}))

        assert decision.allowed is True
        assert decision.method == "signed"
        assert decision.claims["job_id"] == "job-1"

    @pytest.mark.asyncio
    async def test_repeat_credential_served_from_cache(self, gate):
        token, _ = gate.mint_credential("job-1", 100, [])
        gate.codec.decode = lambda *args, **kwargs: pytest.fail("cache should short-circuit decode")

        gate._positive_cache[token] = {"job_id": "job-1"}
        decision = await gate.authenticate(make_request({"Usage-Auth": token}))

        assert decision.allowed is True
        assert decision.method == "cache"

    @pytest.mark.asyncio
    async def test_positive_result_is_cached(self, gate):
        token, _ = gate.mint_credential("job-1", 100, [])

        await gate.authenticate(make_request({"Usage-Auth": token}))
        second = await gate.authenticate(make_request({"Usage-Auth": token}))

        assert second.method == "cache"

    @pytest.mark.asyncio
    async def test_invalid_credential_falls_back_to_proof(self, gate, private_key):
        proof = build_proof(private_key, "POST", LOCK_HTU)

        decision = await gate.authenticate(make_request({"Usage-Auth": "garbage", "DPoP": proof}))

        assert decision.allowed is True
        assert decision.method == "dpop"
        assert decision.subject == public_key_hex(private_key)

    @pytest.mark.asyncio
    async def test_proofs_are_not_cached(self, gate, private_key):
        proof = build_proof(private_key, "POST", LOCK_HTU)

        assert await gate.authorize(make_request({"DPoP": proof})) is True
        assert await gate.authorize(make_request({"DPoP": proof})) is False

    @pytest.mark.asyncio
    async def test_legacy_credential_rejected_in_production(self, gate, legacy_token):
        assert await gate.authorize(make_request({"Usage-Auth": legacy_token})) is False

    @pytest.mark.asyncio
    async def test_legacy_credential_allowed_in_development(self, replay_cache, legacy_token):
        gate = make_gate(SecurityPolicy.development(), replay_cache)

        decision = await gate.authenticate(make_request({"Usage-Auth": legacy_token}))

        assert decision.allowed is True
        assert decision.method == "legacy"

    @pytest.mark.asyncio
    async def test_unsigned_proof_only_in_development(self, replay_cache):
        proof = encode_blob({"htm": "POST", "htu": LOCK_HTU, "iat": int(time.time())})

        production = make_gate(SecurityPolicy.production(), replay_cache)
        development = make_gate(SecurityPolicy.development(), replay_cache)

        assert await production.authorize(make_request({"DPoP": proof})) is False
        assert await development.authorize(make_request({"DPoP": proof})) is True

    @pytest.mark.asyncio
    async def test_verification_latency_recorded(self, gate, metrics):
        await gate.authenticate(make_request())

        assert metrics.sample("auth_verify_ms_count") == 1.0

    @pytest.mark.asyncio
    async def test_proof_verifier_not_called_for_valid_credential(self, gate):
        token, _ = gate.mint_credential("job-1", 1, [])
        gate.verifier.check = AsyncMock()

        await gate.authenticate(make_request({"Usage-Auth": token, "DPoP": "anything"}))

        gate.verifier.check.assert_not_awaited()


class TestMintCredential:

    def test_expiry_in_future_with_default_window(self, replay_cache):
        now = 1_900_000_000
        gate = make_gate(SecurityPolicy.production(), replay_cache, clock=lambda: now)

        _, expires_at = gate.mint_credential("job-1", 10, [])

        assert expires_at == now + 3600

    def test_subject_bound_into_credential(self, replay_cache):
        gate = make_gate(SecurityPolicy.production(), replay_cache)

        token, _ = gate.mint_credential("job-1", 10, ["a"], subject="cafe")
        valid, claims = gate.codec.verify(token)

        assert valid is True
        assert claims["cnf"] == {"jkt": "cafe"}
        assert claims["locked_budget"] == 10

    def test_non_positive_window_refused(self, replay_cache):
        gate = make_gate(SecurityPolicy.production(), replay_cache)

        with pytest.raises(ValueError):
            gate.mint_credential("job-1", 10, [], ttl_seconds=0)


class TestSecurityPolicy:

    def test_production_config_forces_strict_policy(self):
        from service_gateway.tests.factories import make_config

        policy = SecurityPolicy.from_config(make_config(security_mode="production", allow_unsigned_proofs=True))

        assert policy.allow_unsigned_proofs is False
        assert policy.allow_legacy_credentials is False

    def test_development_config_honours_flags(self):
        from service_gateway.tests.factories import make_config

        policy = SecurityPolicy.from_config(
            make_config(security_mode="development", allow_legacy_credentials=False)
        )

        assert policy.allow_unsigned_proofs is True
        assert policy.allow_legacy_credentials is False
        assert len(policy.credential_formats) == 1
