"""Base KMS provider interface.

All key-custody backends implement this interface so that callers are
polymorphic over the capability set:

    connect, disconnect, is_available, generate_key, get_key, revoke_key,
    encrypt, decrypt, sign, threshold_sign, get_signing_session, submit_partial,
    refresh_shares, get_status

A backend that lacks a capability raises FeatureNotImplementedError with the
feature name and a remediation hint. That is ordinary control flow for the
orchestration layer (it falls back to another provider), not a fault.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from policykms.config import Settings
from policykms.core.errors import (
    FeatureNotImplementedError,
    KeyNotFoundError,
    KeyRevokedError,
)
from policykms.core.facts import FactSource
from policykms.core.logging import get_logger
from policykms.core.policy_engine import PolicyEngine
from policykms.core.signing_sessions import SigningSession
from policykms.schemas.keys import (
    AuthSignature,
    EncryptedPayload,
    GeneratedKey,
    KeyCurve,
    KeyMetadata,
    KeyType,
    ProviderType,
)
from policykms.schemas.policy import AccessControlPolicy

logger = get_logger(__name__)


@dataclass
class EncryptRequest:
    """Seal ``data`` under ``policy``, optionally with an existing key."""
    data: bytes | str
    policy: AccessControlPolicy
    key_id: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)

    @property
    def data_bytes(self) -> bytes:
        return self.data.encode() if isinstance(self.data, str) else bytes(self.data)


@dataclass
class DecryptRequest:
    payload: EncryptedPayload
    auth_sig: AuthSignature | None = None


@dataclass
class SignRequest:
    """Sign a message with a provider-held key.

    hash_algorithm: "keccak256", "sha256" or "none" (message is a 32-byte digest)
    """
    message: bytes | str
    key_id: str
    hash_algorithm: str = "keccak256"
    auth_sig: AuthSignature | None = None

    @property
    def message_bytes(self) -> bytes:
        return self.message.encode() if isinstance(self.message, str) else bytes(self.message)


@dataclass
class SignedMessage:
    message: str  # hex digest that was signed
    signature: str  # hex
    key_id: str
    signed_at: int
    recovery_id: int | None = None


@dataclass
class ThresholdSignRequest:
    message: bytes | str
    key_id: str
    threshold: int
    total_parties: int
    hash_algorithm: str = "keccak256"
    auth_sig: AuthSignature | None = None

    @property
    def message_bytes(self) -> bytes:
        return self.message.encode() if isinstance(self.message, str) else bytes(self.message)


@dataclass
class ThresholdSignature:
    signature: str
    participant_count: int
    threshold: int
    key_id: str
    session_id: str
    signed_at: int


@dataclass
class ProviderStatus:
    """Provider health snapshot."""
    provider: ProviderType
    connected: bool
    implemented: bool = True
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider": self.provider.value,
            "connected": self.connected,
            "implemented": self.implemented,
            **self.details,
        }


class KMSProvider(ABC):
    """Abstract base class for KMS providers.

    Subclasses keep their key metadata in ``self._keys`` and must never
    return private key material from any operation.
    """

    provider_type: ProviderType

    def __init__(
        self,
        settings: Settings,
        facts: FactSource,
        engine: PolicyEngine | None = None,
    ):
        """Initialize the provider.

        Args:
            settings: KMS settings
            facts: Fact source used to evaluate access policies
            engine: Policy engine (defaults to one built over ``facts``)
        """
        self.settings = settings
        self.facts = facts
        self.engine = engine or PolicyEngine(facts)
        self._keys: dict[str, KeyMetadata] = {}
        self._connected = False

    @property
    def connected(self) -> bool:
        return self._connected

    # =========================================================================
    # Lifecycle
    # =========================================================================

    @abstractmethod
    async def connect(self) -> None:
        """Connect to the backend.

        Raises:
            ProviderUnavailableError: If the backend cannot be reached
        """

    async def disconnect(self) -> None:
        """Close any open connections."""
        self._connected = False

    @abstractmethod
    async def _probe(self) -> bool:
        """Lightweight reachability check. May raise."""

    async def is_available(self) -> bool:
        """Bounded reachability probe. Never raises; failures report False."""
        timeout = self.settings.probe_timeout_seconds
        start = time.monotonic()
        try:
            available = bool(await asyncio.wait_for(self._probe(), timeout=timeout))
        except asyncio.TimeoutError:
            logger.debug("Availability probe timed out", provider=self.provider_type.value, timeout=timeout)
            available = False
        except Exception as e:
            logger.debug("Availability probe failed", provider=self.provider_type.value, error=str(e))
            available = False

        logger.debug(
            "Availability probe",
            provider=self.provider_type.value,
            available=available,
            latency_ms=round((time.monotonic() - start) * 1000, 2),
        )
        return available

    @abstractmethod
    async def get_status(self) -> ProviderStatus:
        pass

    # =========================================================================
    # Key lifecycle
    # =========================================================================

    @abstractmethod
    async def generate_key(
        self,
        owner: str,
        key_type: KeyType,
        curve: KeyCurve,
        policy: AccessControlPolicy,
        label: str | None = None,
    ) -> GeneratedKey:
        """Generate a key bound to ``policy``. The binding is permanent."""

    async def get_key(self, key_id: str) -> KeyMetadata | None:
        return self._keys.get(key_id)

    async def list_keys(self, owner: str | None = None) -> list[KeyMetadata]:
        """Metadata for every key this provider holds, optionally for one owner."""
        keys = list(self._keys.values())
        if owner is not None:
            keys = [k for k in keys if k.owner.lower() == owner.lower()]
        return keys

    async def revoke_key(self, key_id: str) -> KeyMetadata:
        """Revoke a key. Terminal and idempotent."""
        metadata = self._keys.get(key_id)
        if metadata is None:
            raise KeyNotFoundError(f"Key {key_id} not found")
        if not metadata.revoked:
            metadata = metadata.model_copy(update={"revoked": True})
            self._keys[key_id] = metadata
            logger.info("Key revoked", provider=self.provider_type.value, key_id=key_id)
        return metadata

    def _usable_key(self, key_id: str) -> KeyMetadata:
        metadata = self._keys.get(key_id)
        if metadata is None:
            raise KeyNotFoundError(f"Key {key_id} not found")
        if metadata.revoked:
            raise KeyRevokedError(key_id)
        return metadata

    # =========================================================================
    # Cryptographic operations
    # =========================================================================

    @abstractmethod
    async def encrypt(self, request: EncryptRequest) -> EncryptedPayload:
        pass

    @abstractmethod
    async def decrypt(self, request: DecryptRequest) -> bytes:
        """Decrypt after the payload's embedded policy is satisfied.

        Raises:
            PolicyNotSatisfiedError, AuthRequiredError
        """

    async def sign(self, request: SignRequest) -> SignedMessage:
        self._not_implemented("sign")

    async def threshold_sign(self, request: ThresholdSignRequest) -> ThresholdSignature:
        self._not_implemented("threshold_sign", "use the mpc provider")

    async def get_signing_session(self, session_id: str) -> SigningSession | None:
        return None

    async def list_pending_sessions(self) -> list[SigningSession]:
        return []

    async def submit_partial(self, session_id: str, party_id: int, partial: str) -> SigningSession:
        self._not_implemented("submit_partial", "use the mpc provider")

    async def refresh_shares(self, key_id: str) -> None:
        self._not_implemented("refresh_shares", "use the mpc provider")

    def _not_implemented(self, feature: str, hint: str = ""):
        raise FeatureNotImplementedError(feature, hint, provider=self.provider_type.value)
