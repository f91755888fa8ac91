"""Enclave KMS provider.

Keys live inside a hardware-isolated enclave and are derived
deterministically from the enclave root secret, so generating a key for the
same (owner, label) pair always yields the same key id and public key.

Availability is the enclave's attestation status:
- with KMS_ENCLAVE_ENDPOINT set, GET {endpoint}/attestation must return a
  verified quote
- without an endpoint, dev mode reports a simulated attestation; otherwise
  the provider is unavailable

Operations:
- generate_key: HKDF(root secret, owner/label/curve) -> secp256k1 or Ed25519
- encrypt/decrypt: AES-256-GCM, sealing key derived per key id, policy hash
  bound as associated data
- sign: ECDSA secp256k1 (low-s, with recovery id) or Ed25519, gated by the
  key's policy
"""

import time
from dataclasses import dataclass

import httpx
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, utils
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from policykms.core.errors import (
    DecryptionError,
    KMSError,
    KeyRevokedError,
    ProviderUnavailableError,
)
from policykms.core.hashing import digest_message, keccak256, to_hex
from policykms.core.logging import get_logger
from policykms.core.secp256k1 import CURVE_ORDER, address_of, normalize_signature, recovery_id_for
from policykms.schemas.keys import (
    EncryptedPayload,
    GeneratedKey,
    KeyCurve,
    KeyMetadata,
    KeyType,
    ProviderType,
)
from policykms.schemas.policy import AccessControlPolicy

from .base import (
    DecryptRequest,
    EncryptRequest,
    KMSProvider,
    ProviderStatus,
    SignedMessage,
    SignRequest,
)
from .sealing import (
    b64decode,
    build_payload,
    check_integrity,
    derive_key,
    open_sealed,
    policy_aad,
    seal,
)

logger = get_logger(__name__)

DEFAULT_SEAL_LABEL = "default"


@dataclass
class EnclaveAttestation:
    """Attestation report for the enclave."""
    enclave_id: str
    measurement: str
    quote: str
    timestamp: int
    verified: bool
    simulated: bool = False


class EnclaveProvider(KMSProvider):
    """KMS provider backed by an attested enclave."""

    provider_type = ProviderType.ENCLAVE

    def __init__(self, settings, facts, engine=None, transport: httpx.AsyncBaseTransport | None = None):
        super().__init__(settings, facts, engine)
        if not settings.enclave_root_secret:
            raise KMSError("Enclave root secret not configured. Set KMS_ENCLAVE_ROOT_SECRET.")
        self._root = settings.enclave_root_secret.encode()
        self._salt = (settings.hkdf_salt or "policykms-enclave-salt").encode()
        self._transport = transport
        self._attestation: EnclaveAttestation | None = None

    # =========================================================================
    # Attestation
    # =========================================================================

    async def _attest(self) -> EnclaveAttestation:
        endpoint = self.settings.enclave_endpoint
        if not endpoint:
            if not self.settings.dev_mode:
                raise ProviderUnavailableError(
                    self.provider_type.value, "no enclave endpoint configured"
                )
            measurement = to_hex(keccak256(derive_key(self._root, self._salt, "measurement")))
            return EnclaveAttestation(
                enclave_id="simulated",
                measurement=measurement,
                quote="",
                timestamp=int(time.time()),
                verified=True,
                simulated=True,
            )

        headers = {}
        if self.settings.enclave_api_key:
            headers["Authorization"] = f"Bearer {self.settings.enclave_api_key}"

        async with httpx.AsyncClient(
            base_url=endpoint,
            timeout=self.settings.probe_timeout_seconds,
            transport=self._transport,
        ) as client:
            response = await client.get("/attestation", headers=headers)
            response.raise_for_status()
            data = response.json()

        return EnclaveAttestation(
            enclave_id=str(data.get("enclave_id", "")),
            measurement=str(data.get("measurement", "")),
            quote=str(data.get("quote", "")),
            timestamp=int(data.get("timestamp", time.time())),
            verified=bool(data.get("verified", False)),
        )

    async def _probe(self) -> bool:
        attestation = await self._attest()
        return attestation.verified

    async def connect(self) -> None:
        try:
            attestation = await self._attest()
        except ProviderUnavailableError:
            raise
        except (httpx.HTTPError, ValueError) as e:
            raise ProviderUnavailableError(self.provider_type.value, f"attestation failed: {e}") from e

        if not attestation.verified:
            raise ProviderUnavailableError(self.provider_type.value, "attestation not verified")

        self._attestation = attestation
        self._connected = True
        logger.info(
            "Enclave provider connected",
            provider=self.provider_type.value,
            enclave_id=attestation.enclave_id,
            measurement=attestation.measurement,
            simulated=attestation.simulated,
        )
        if attestation.simulated:
            logger.warning("Enclave attestation is simulated. Do not use in production.")

    async def disconnect(self) -> None:
        self._attestation = None
        await super().disconnect()

    async def _ensure_connected(self) -> None:
        if not self._connected:
            await self.connect()

    async def get_status(self) -> ProviderStatus:
        details = {"key_count": len(self._keys)}
        if self._attestation:
            details.update({
                "enclave_id": self._attestation.enclave_id,
                "measurement": self._attestation.measurement,
                "simulated": self._attestation.simulated,
                "attested_at": self._attestation.timestamp,
            })
        return ProviderStatus(
            provider=self.provider_type,
            connected=self._connected,
            implemented=True,
            details=details,
        )

    # =========================================================================
    # Key derivation
    # =========================================================================

    @staticmethod
    def _key_id(owner: str, label: str) -> str:
        digest = keccak256(f"{owner.lower()}:{label}".encode())
        return f"enclave-{digest[:12].hex()}"

    def _private_key(self, metadata: KeyMetadata):
        material = derive_key(
            self._root,
            self._salt,
            f"key:{metadata.curve.value}:{metadata.owner.lower()}:{metadata.label}",
        )
        if metadata.curve == KeyCurve.ED25519:
            return Ed25519PrivateKey.from_private_bytes(material)
        scalar = int.from_bytes(material, "big") % (CURVE_ORDER - 1) + 1
        return ec.derive_private_key(scalar, ec.SECP256K1())

    def _public_material(self, metadata: KeyMetadata) -> tuple[str, str | None]:
        public_key = self._private_key(metadata).public_key()
        if metadata.curve == KeyCurve.ED25519:
            raw = public_key.public_bytes(
                encoding=serialization.Encoding.Raw,
                format=serialization.PublicFormat.Raw,
            )
            return to_hex(raw), None
        raw = public_key.public_bytes(
            encoding=serialization.Encoding.X962,
            format=serialization.PublicFormat.CompressedPoint,
        )
        return to_hex(raw), address_of(public_key)

    async def generate_key(
        self,
        owner: str,
        key_type: KeyType,
        curve: KeyCurve,
        policy: AccessControlPolicy,
        label: str | None = None,
    ) -> GeneratedKey:
        """Derive (or re-derive) the key for (owner, label).

        Raises:
            KeyRevokedError: The (owner, label) key was revoked
            KMSError: The key exists with a different type, curve or policy
        """
        await self._ensure_connected()
        label = label or key_type.value
        key_id = self._key_id(owner, label)

        existing = self._keys.get(key_id)
        if existing is not None:
            if existing.revoked:
                raise KeyRevokedError(key_id)
            if existing.key_type != key_type or existing.curve != curve:
                raise KMSError(
                    f"Key {key_id} already exists as {existing.key_type.value}/{existing.curve.value}"
                )
            if existing.policy != policy:
                raise KMSError(f"Key {key_id} is bound to a different policy; policies cannot be changed")
            public_key, address = self._public_material(existing)
            return GeneratedKey(metadata=existing, public_key=public_key, address=address)

        metadata = KeyMetadata(
            key_id=key_id,
            owner=owner,
            key_type=key_type,
            curve=curve,
            created_at=int(time.time()),
            policy=policy,
            provider=self.provider_type,
            label=label,
        )
        public_key, address = self._public_material(metadata)
        self._keys[key_id] = metadata

        logger.info(
            "Enclave key generated",
            key_id=key_id,
            key_type=key_type.value,
            curve=curve.value,
            owner=owner,
        )
        return GeneratedKey(metadata=metadata, public_key=public_key, address=address)

    # =========================================================================
    # Encryption
    # =========================================================================

    def _sealing_key(self, key_id: str | None) -> bytes:
        return derive_key(self._root, self._salt, f"seal:{key_id or DEFAULT_SEAL_LABEL}")

    async def encrypt(self, request: EncryptRequest) -> EncryptedPayload:
        await self._ensure_connected()
        if request.key_id:
            metadata = self._usable_key(request.key_id)
            if metadata.key_type != KeyType.ENCRYPTION:
                raise KMSError(f"Key {request.key_id} is not an encryption key")

        plaintext = request.data_bytes
        ciphertext = seal(self._sealing_key(request.key_id), plaintext, policy_aad(request.policy))
        return build_payload(
            ciphertext=ciphertext,
            plaintext=plaintext,
            policy=request.policy,
            provider=self.provider_type,
            key_id=request.key_id,
            encapsulation={
                "scheme": "aes-256-gcm",
                "enclave_id": self._attestation.enclave_id if self._attestation else "",
            },
            metadata=request.metadata,
        )

    async def decrypt(self, request: DecryptRequest) -> bytes:
        await self._ensure_connected()
        payload = request.payload
        if payload.provider != self.provider_type:
            raise DecryptionError(f"Payload was sealed by the {payload.provider.value} provider")
        if payload.policy_hash != payload.policy.policy_hash():
            raise DecryptionError("Payload policy does not match its policy hash")
        # Only locally issued keys carry a revocation flag
        if payload.key_id and payload.key_id in self._keys:
            self._usable_key(payload.key_id)

        await self.engine.authorize(payload.policy, request.auth_sig)

        plaintext = open_sealed(
            self._sealing_key(payload.key_id),
            b64decode(payload.ciphertext),
            policy_aad(payload.policy),
        )
        check_integrity(payload, plaintext)
        return plaintext

    # =========================================================================
    # Signing
    # =========================================================================

    async def sign(self, request: SignRequest) -> SignedMessage:
        await self._ensure_connected()
        metadata = self._usable_key(request.key_id)
        if metadata.key_type != KeyType.SIGNING:
            raise KMSError(f"Key {request.key_id} is not a signing key")

        await self.engine.authorize(metadata.policy, request.auth_sig)

        private_key = self._private_key(metadata)
        if metadata.curve == KeyCurve.ED25519:
            # Ed25519 hashes internally; sign the raw message unless it is pre-hashed
            message = request.message_bytes
            if request.hash_algorithm == "none":
                message = digest_message(message, "none")
            signature = private_key.sign(message)
            return SignedMessage(
                message=to_hex(message),
                signature=to_hex(signature),
                key_id=request.key_id,
                signed_at=int(time.time()),
            )

        digest = digest_message(request.message_bytes, request.hash_algorithm)
        der = private_key.sign(digest, ec.ECDSA(utils.Prehashed(hashes.SHA256())))
        r, s = normalize_signature(der)
        recovery_id = recovery_id_for(digest, r, s, private_key.public_key())
        signature = r.to_bytes(32, "big") + s.to_bytes(32, "big") + bytes([27 + recovery_id])

        logger.debug("Enclave signature produced", key_id=request.key_id)
        return SignedMessage(
            message=to_hex(digest),
            signature=to_hex(signature),
            key_id=request.key_id,
            signed_at=int(time.time()),
            recovery_id=recovery_id,
        )
