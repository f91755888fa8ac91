"""Tests for the enclave KMS provider."""

import asyncio
import time

import httpx
import pytest
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec, utils
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey

from policykms.config import Settings
from policykms.core.auth import LocalSigner
from policykms.core.errors import (
    AuthRequiredError,
    DecryptionError,
    FeatureNotImplementedError,
    KeyNotFoundError,
    KeyRevokedError,
    KMSError,
    PolicyNotSatisfiedError,
    ProviderUnavailableError,
)
from policykms.core.hashing import from_hex, keccak256
from policykms.core.kms.base import (
    DecryptRequest,
    EncryptRequest,
    SignRequest,
    ThresholdSignRequest,
)
from policykms.core.kms.enclave import EnclaveProvider
from policykms.core.secp256k1 import public_point, recover
from policykms.schemas.keys import AuthSignature, KeyCurve, KeyType, ProviderType
from policykms.schemas.policy import (
    AccessControlPolicy,
    AgentCondition,
    StakeCondition,
    TimestampCondition,
)

REGISTRY = "0x" + "11" * 20
ALICE_SIGNER = LocalSigner.from_secret(b"alice")
ALICE = ALICE_SIGNER.address
BOB_SIGNER = LocalSigner.from_secret(b"bob")
BOB = BOB_SIGNER.address
ENCLAVE_URL = "http://enclave.test"


def open_policy(now: int) -> AccessControlPolicy:
    return AccessControlPolicy(conditions=[TimestampCondition(chain="base", value=now - 60)])


def staker_policy(minimum: int = 10) -> AccessControlPolicy:
    return AccessControlPolicy(conditions=[
        StakeCondition(chain="base", registry_address=REGISTRY, minimum=minimum),
    ])


def production_settings(**overrides) -> Settings:
    values = dict(
        dev_mode=False,
        enclave_root_secret="prod-root-secret",
        fallback_secret="prod-fallback-secret",
        hkdf_salt="prod-salt",
        probe_timeout_seconds=0.2,
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def provider(settings, facts):
    return EnclaveProvider(settings, facts)


class TestAttestation:
    """Tests for enclave availability."""

    @pytest.mark.asyncio
    async def test_dev_mode_simulated_attestation(self, provider):
        assert await provider.is_available()
        await provider.connect()

        status = await provider.get_status()
        assert status.connected
        assert status.implemented
        assert status.details["simulated"] is True

    @pytest.mark.asyncio
    async def test_no_endpoint_outside_dev_mode_is_unavailable(self, facts):
        provider = EnclaveProvider(production_settings(), facts)

        assert not await provider.is_available()
        with pytest.raises(ProviderUnavailableError):
            await provider.connect()

    @pytest.mark.asyncio
    async def test_remote_attestation_verified(self, facts):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/attestation"
            assert request.headers["Authorization"] == "Bearer enclave-key"
            return httpx.Response(200, json={
                "enclave_id": "enc-1",
                "measurement": "0xmeasure",
                "quote": "quote",
                "timestamp": 1,
                "verified": True,
            })

        settings = production_settings(enclave_endpoint=ENCLAVE_URL, enclave_api_key="enclave-key")
        provider = EnclaveProvider(settings, facts, transport=httpx.MockTransport(handler))

        assert await provider.is_available()
        await provider.connect()
        status = await provider.get_status()
        assert status.details["enclave_id"] == "enc-1"
        assert status.details["simulated"] is False

    @pytest.mark.asyncio
    async def test_unverified_attestation_rejected(self, facts):
        transport = httpx.MockTransport(lambda r: httpx.Response(200, json={"verified": False}))
        provider = EnclaveProvider(production_settings(enclave_endpoint=ENCLAVE_URL), facts, transport=transport)

        assert not await provider.is_available()
        with pytest.raises(ProviderUnavailableError):
            await provider.connect()

    @pytest.mark.asyncio
    async def test_slow_attestation_probe_is_bounded(self, facts):
        async def slow(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(5)
            return httpx.Response(200, json={"verified": True})

        provider = EnclaveProvider(
            production_settings(enclave_endpoint=ENCLAVE_URL), facts, transport=httpx.MockTransport(slow)
        )

        start = time.monotonic()
        assert await provider.is_available() is False
        assert time.monotonic() - start < 3

    def test_root_secret_required(self, facts):
        settings = production_settings()
        settings.enclave_root_secret = None
        with pytest.raises(KMSError):
            EnclaveProvider(settings, facts)


class TestKeyGeneration:
    """Tests for deterministic key derivation."""

    @pytest.mark.asyncio
    async def test_generation_is_idempotent(self, provider, now):
        policy = open_policy(now)
        first = await provider.generate_key(ALICE, KeyType.SIGNING, KeyCurve.SECP256K1, policy, label="main")
        second = await provider.generate_key(ALICE, KeyType.SIGNING, KeyCurve.SECP256K1, policy, label="main")

        assert first.metadata.key_id == second.metadata.key_id
        assert first.public_key == second.public_key
        assert first.metadata.provider == ProviderType.ENCLAVE
        assert first.address.startswith("0x") and len(first.address) == 42

    @pytest.mark.asyncio
    async def test_same_secret_derives_same_key(self, settings, facts, now):
        policy = open_policy(now)
        a = await EnclaveProvider(settings, facts).generate_key(ALICE, KeyType.SIGNING, KeyCurve.SECP256K1, policy)
        b = await EnclaveProvider(settings, facts).generate_key(ALICE, KeyType.SIGNING, KeyCurve.SECP256K1, policy)
        assert a.public_key == b.public_key

    @pytest.mark.asyncio
    async def test_labels_give_distinct_keys(self, provider, now):
        policy = open_policy(now)
        a = await provider.generate_key(ALICE, KeyType.SIGNING, KeyCurve.SECP256K1, policy, label="a")
        b = await provider.generate_key(ALICE, KeyType.SIGNING, KeyCurve.SECP256K1, policy, label="b")
        assert a.metadata.key_id != b.metadata.key_id
        assert a.public_key != b.public_key

    @pytest.mark.asyncio
    async def test_policy_cannot_change(self, provider, now):
        await provider.generate_key(ALICE, KeyType.SIGNING, KeyCurve.SECP256K1, open_policy(now), label="main")
        with pytest.raises(KMSError):
            await provider.generate_key(ALICE, KeyType.SIGNING, KeyCurve.SECP256K1, staker_policy(), label="main")

    @pytest.mark.asyncio
    async def test_revoked_key_cannot_be_regenerated(self, provider, now):
        policy = open_policy(now)
        key = await provider.generate_key(ALICE, KeyType.SIGNING, KeyCurve.SECP256K1, policy, label="main")

        revoked = await provider.revoke_key(key.metadata.key_id)
        assert revoked.revoked
        # Revocation is idempotent
        assert (await provider.revoke_key(key.metadata.key_id)).revoked

        with pytest.raises(KeyRevokedError):
            await provider.generate_key(ALICE, KeyType.SIGNING, KeyCurve.SECP256K1, policy, label="main")

    @pytest.mark.asyncio
    async def test_revoke_unknown_key(self, provider):
        with pytest.raises(KeyNotFoundError):
            await provider.revoke_key("enclave-missing")

    @pytest.mark.asyncio
    async def test_ed25519_public_key(self, provider, now):
        key = await provider.generate_key(ALICE, KeyType.SIGNING, KeyCurve.ED25519, open_policy(now))
        assert len(from_hex(key.public_key)) == 32
        assert key.address is None


class TestEncryption:
    """Tests for policy-bound sealing."""

    @pytest.mark.asyncio
    async def test_roundtrip_with_satisfied_policy(self, provider, facts, auth_for):
        facts.set_stake("base", REGISTRY, ALICE, 100)
        payload = await provider.encrypt(EncryptRequest(data=b"secret weights", policy=staker_policy()))

        assert payload.provider == ProviderType.ENCLAVE
        assert payload.policy_hash == staker_policy().policy_hash()
        plaintext = await provider.decrypt(DecryptRequest(payload=payload, auth_sig=auth_for(ALICE_SIGNER)))
        assert plaintext == b"secret weights"

    @pytest.mark.asyncio
    async def test_unsatisfied_policy_refused(self, provider, auth_for):
        payload = await provider.encrypt(EncryptRequest(data="data", policy=staker_policy()))
        with pytest.raises(PolicyNotSatisfiedError):
            await provider.decrypt(DecryptRequest(payload=payload, auth_sig=auth_for(BOB_SIGNER)))

    @pytest.mark.asyncio
    async def test_missing_signer_requires_auth(self, provider):
        payload = await provider.encrypt(EncryptRequest(data="data", policy=staker_policy()))
        with pytest.raises(AuthRequiredError):
            await provider.decrypt(DecryptRequest(payload=payload))

    @pytest.mark.asyncio
    async def test_swapped_policy_detected(self, provider, facts, auth_for):
        facts.set_stake("base", REGISTRY, ALICE, 5)
        payload = await provider.encrypt(EncryptRequest(data="data", policy=staker_policy(100)))

        weaker = staker_policy(1)
        tampered = payload.model_copy(update={"policy": weaker})
        with pytest.raises(DecryptionError):
            await provider.decrypt(DecryptRequest(payload=tampered, auth_sig=auth_for(ALICE_SIGNER)))

        rehashed = tampered.model_copy(update={"policy_hash": weaker.policy_hash()})
        with pytest.raises(DecryptionError):
            await provider.decrypt(DecryptRequest(payload=rehashed, auth_sig=auth_for(ALICE_SIGNER)))

    @pytest.mark.asyncio
    async def test_payload_survives_json(self, provider, now):
        from policykms.schemas.keys import EncryptedPayload

        payload = await provider.encrypt(EncryptRequest(data="hello", policy=open_policy(now)))
        restored = EncryptedPayload.from_json(payload.to_json())
        assert await provider.decrypt(DecryptRequest(payload=restored)) == b"hello"

    @pytest.mark.asyncio
    async def test_encrypt_with_key(self, provider, now):
        key = await provider.generate_key(ALICE, KeyType.ENCRYPTION, KeyCurve.SECP256K1, open_policy(now))
        payload = await provider.encrypt(EncryptRequest(
            data="hello", policy=open_policy(now), key_id=key.metadata.key_id,
        ))

        assert payload.key_id == key.metadata.key_id
        assert await provider.decrypt(DecryptRequest(payload=payload)) == b"hello"

        await provider.revoke_key(key.metadata.key_id)
        with pytest.raises(KeyRevokedError):
            await provider.decrypt(DecryptRequest(payload=payload))

    @pytest.mark.asyncio
    async def test_payload_refused_once_key_revoked(self, provider, facts, auth_for):
        facts.set_stake("base", REGISTRY, ALICE, 100)
        key = await provider.generate_key(ALICE, KeyType.ENCRYPTION, KeyCurve.SECP256K1, staker_policy())
        payload = await provider.encrypt(EncryptRequest(
            data="sealed before revocation", policy=staker_policy(), key_id=key.metadata.key_id,
        ))

        await provider.revoke_key(key.metadata.key_id)

        # Refused before the policy is evaluated
        with pytest.raises(KeyRevokedError):
            await provider.decrypt(DecryptRequest(payload=payload))
        with pytest.raises(KeyRevokedError):
            await provider.decrypt(DecryptRequest(payload=payload, auth_sig=auth_for(ALICE_SIGNER)))

    @pytest.mark.asyncio
    async def test_key_payload_opens_on_fresh_instance(self, settings, facts, now):
        issuer = EnclaveProvider(settings, facts)
        key = await issuer.generate_key(ALICE, KeyType.ENCRYPTION, KeyCurve.SECP256K1, open_policy(now))
        payload = await issuer.encrypt(EncryptRequest(
            data="portable", policy=open_policy(now), key_id=key.metadata.key_id,
        ))

        reader = EnclaveProvider(settings, facts)
        assert await reader.get_key(key.metadata.key_id) is None
        assert await reader.decrypt(DecryptRequest(payload=payload)) == b"portable"

    @pytest.mark.asyncio
    async def test_forged_owner_signature_refused(self, provider, facts, auth_for):
        facts.set_agent_owner("base", REGISTRY, 7, ALICE)
        policy = AccessControlPolicy(conditions=[
            AgentCondition(chain="base", registry_address=REGISTRY, agent_id=7),
        ])
        payload = await provider.encrypt(EncryptRequest(data="agent memory", policy=policy))

        forged = AuthSignature(sig="0x" + "00" * 65, signed_message="Sign in to policykms", address=ALICE)
        with pytest.raises(AuthRequiredError):
            await provider.decrypt(DecryptRequest(payload=payload, auth_sig=forged))

        impersonation = auth_for(BOB_SIGNER).model_copy(update={"address": ALICE})
        with pytest.raises(AuthRequiredError):
            await provider.decrypt(DecryptRequest(payload=payload, auth_sig=impersonation))

        plaintext = await provider.decrypt(DecryptRequest(payload=payload, auth_sig=auth_for(ALICE_SIGNER)))
        assert plaintext == b"agent memory"

    @pytest.mark.asyncio
    async def test_signing_key_cannot_encrypt(self, provider, now):
        key = await provider.generate_key(ALICE, KeyType.SIGNING, KeyCurve.SECP256K1, open_policy(now))
        with pytest.raises(KMSError):
            await provider.encrypt(EncryptRequest(data="x", policy=open_policy(now), key_id=key.metadata.key_id))


class TestSigning:
    """Tests for policy-gated signatures."""

    @pytest.mark.asyncio
    async def test_secp256k1_signature_verifies_and_recovers(self, provider, now):
        key = await provider.generate_key(ALICE, KeyType.SIGNING, KeyCurve.SECP256K1, open_policy(now))

        signed = await provider.sign(SignRequest(message=b"transfer 1 ETH", key_id=key.metadata.key_id))

        digest = keccak256(b"transfer 1 ETH")
        assert from_hex(signed.message) == digest
        raw = from_hex(signed.signature)
        assert len(raw) == 65
        r, s = int.from_bytes(raw[:32], "big"), int.from_bytes(raw[32:64], "big")
        assert raw[64] == 27 + signed.recovery_id

        public_key = ec.EllipticCurvePublicKey.from_encoded_point(ec.SECP256K1(), from_hex(key.public_key))
        public_key.verify(
            utils.encode_dss_signature(r, s), digest, ec.ECDSA(utils.Prehashed(hashes.SHA256()))
        )
        assert recover(digest, r, s, signed.recovery_id) == public_point(public_key)

    @pytest.mark.asyncio
    async def test_signatures_are_low_s(self, provider, now):
        from policykms.core.secp256k1 import CURVE_ORDER

        key = await provider.generate_key(ALICE, KeyType.SIGNING, KeyCurve.SECP256K1, open_policy(now))
        for i in range(5):
            signed = await provider.sign(SignRequest(message=f"msg {i}", key_id=key.metadata.key_id))
            s = int.from_bytes(from_hex(signed.signature)[32:64], "big")
            assert s <= CURVE_ORDER // 2

    @pytest.mark.asyncio
    async def test_ed25519_signature_verifies(self, provider, now):
        key = await provider.generate_key(ALICE, KeyType.SIGNING, KeyCurve.ED25519, open_policy(now))

        signed = await provider.sign(SignRequest(message=b"hello", key_id=key.metadata.key_id))

        public_key = Ed25519PublicKey.from_public_bytes(from_hex(key.public_key))
        public_key.verify(from_hex(signed.signature), b"hello")
        assert signed.recovery_id is None

    @pytest.mark.asyncio
    async def test_signing_gated_by_key_policy(self, provider, facts, auth_for):
        key = await provider.generate_key(ALICE, KeyType.SIGNING, KeyCurve.SECP256K1, staker_policy())

        with pytest.raises(AuthRequiredError):
            await provider.sign(SignRequest(message="m", key_id=key.metadata.key_id))
        with pytest.raises(PolicyNotSatisfiedError):
            await provider.sign(SignRequest(message="m", key_id=key.metadata.key_id, auth_sig=auth_for(BOB_SIGNER)))

        facts.set_stake("base", REGISTRY, BOB, 10)
        signed = await provider.sign(SignRequest(message="m", key_id=key.metadata.key_id, auth_sig=auth_for(BOB_SIGNER)))
        assert signed.key_id == key.metadata.key_id

    @pytest.mark.asyncio
    async def test_revoked_key_cannot_sign(self, provider, now):
        key = await provider.generate_key(ALICE, KeyType.SIGNING, KeyCurve.SECP256K1, open_policy(now))
        await provider.revoke_key(key.metadata.key_id)
        with pytest.raises(KeyRevokedError):
            await provider.sign(SignRequest(message="m", key_id=key.metadata.key_id))

    @pytest.mark.asyncio
    async def test_unknown_key(self, provider):
        with pytest.raises(KeyNotFoundError):
            await provider.sign(SignRequest(message="m", key_id="enclave-missing"))

    @pytest.mark.asyncio
    async def test_threshold_operations_not_implemented(self, provider, now):
        key = await provider.generate_key(ALICE, KeyType.SIGNING, KeyCurve.SECP256K1, open_policy(now))
        with pytest.raises(FeatureNotImplementedError) as exc_info:
            await provider.threshold_sign(ThresholdSignRequest(
                message="m", key_id=key.metadata.key_id, threshold=2, total_parties=3,
            ))
        assert exc_info.value.feature == "threshold_sign"
        assert exc_info.value.kind == "not_implemented"

        with pytest.raises(FeatureNotImplementedError):
            await provider.refresh_shares(key.metadata.key_id)
