"""
Shared fixtures for gateway tests.
"""

import time

import pytest
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from service_gateway.app.auth import (
    CredentialCodec,
    InMemoryReplayCache,
    ProofOfPossessionVerifier,
    SecurityPolicy,
)
from service_gateway.tests.factories import TEST_SECRET, encode_blob


@pytest.fixture
def private_key():
    return Ed25519PrivateKey.generate()


@pytest.fixture
def codec():
    return CredentialCodec(TEST_SECRET)


@pytest.fixture
def replay_cache():
    return InMemoryReplayCache()


@pytest.fixture
def production_verifier(replay_cache):
    return ProofOfPossessionVerifier(replay_cache, SecurityPolicy.production())


@pytest.fixture
def development_verifier(replay_cache):
    return ProofOfPossessionVerifier(replay_cache, SecurityPolicy.development())


@pytest.fixture
def legacy_token():
    return encode_blob({"job_id": "job-legacy", "expires_at": int(time.time()) + 600})
