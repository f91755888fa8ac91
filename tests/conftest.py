"""Test configuration and fixtures."""

import os

import pytest

# Set up test environment variables BEFORE importing policykms modules
os.environ.setdefault("KMS_DEV_MODE", "true")
os.environ.setdefault("KMS_HKDF_SALT", "test-hkdf-salt-for-tests")

from policykms.config import Settings, get_settings
from policykms.core.auth import LocalSigner
from policykms.core.facts import StaticFactSource
from policykms.schemas.keys import AuthSignature

NOW = 1_700_000_000
AUTH_MESSAGE = "Sign in to policykms"


@pytest.fixture(autouse=True)
def reset_kms():
    """Reset the cached KMS service and settings between tests."""
    from policykms.core.kms.factory import reset_kms

    reset_kms()
    get_settings.cache_clear()
    yield
    reset_kms()
    get_settings.cache_clear()


@pytest.fixture
def now() -> int:
    return NOW


@pytest.fixture
def settings() -> Settings:
    """Dev-mode settings with fixed secrets so derived keys are stable."""
    return Settings(
        dev_mode=True,
        enclave_root_secret="test-enclave-root-secret",
        fallback_secret="test-fallback-secret",
        hkdf_salt="test-hkdf-salt",
        probe_timeout_seconds=0.5,
        mpc_poll_interval_seconds=0.01,
    )


@pytest.fixture
def facts() -> StaticFactSource:
    """In-memory facts with a frozen clock."""
    return StaticFactSource(clock=NOW)


@pytest.fixture
def auth_for():
    """Build a personal-signed AuthSignature with a signer's key."""
    def _auth(signer: LocalSigner) -> AuthSignature:
        return signer.auth_signature(AUTH_MESSAGE)
    return _auth
