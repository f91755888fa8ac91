"""KMS orchestration service.

Selects a provider, routes operations to it and falls back to the next
available provider when the active one lacks a capability.

Selection:
- KMS_PROVIDER=network|enclave|mpc forces a provider
- KMS_PROVIDER=auto (default) picks the first provider whose bounded
  availability probe succeeds, in the order network, enclave, mpc

Routing:
- key-bound operations go to the provider that generated the key
- decrypt goes to the provider named in the payload
- everything else goes to the active provider

The service holds a key id -> provider lookup but never key material, and
adds no authorization logic of its own; providers gate every operation on
the relevant policy.
"""

import asyncio
from functools import lru_cache
from typing import Any, Awaitable, Callable, TypeVar

import httpx

from policykms.config import Settings, get_settings
from policykms.core.errors import (
    FeatureNotImplementedError,
    KMSError,
    KeyNotFoundError,
    ProviderUnavailableError,
    SessionNotFoundError,
)
from policykms.core.facts import ChainFactSource, FactSource
from policykms.core.logging import get_logger, log_operation, setup_logging
from policykms.core.policy_engine import PolicyEngine
from policykms.core.signing_sessions import SigningSession
from policykms.schemas.keys import (
    PROVIDER_PREFERENCE,
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
    SignedMessage,
    SignRequest,
    ThresholdSignature,
    ThresholdSignRequest,
)
from .enclave import EnclaveProvider
from .mpc import MPCProvider
from .network import NetworkProvider

logger = get_logger(__name__)

T = TypeVar("T")

# Registry of KMS providers
_providers: dict[ProviderType, type[KMSProvider]] = {
    ProviderType.NETWORK: NetworkProvider,
    ProviderType.ENCLAVE: EnclaveProvider,
    ProviderType.MPC: MPCProvider,
}


def register_provider(provider_type: ProviderType, provider_class: type[KMSProvider]) -> None:
    """Register a KMS provider class.

    Allows swapping in new backends without modifying this module.

    Args:
        provider_type: Provider identifier
        provider_class: Class implementing KMSProvider
    """
    _providers[provider_type] = provider_class
    logger.info("Registered KMS provider", provider=provider_type.value, cls=provider_class.__name__)


class KMSService:
    """Process-wide KMS context.

    Args:
        settings: KMS settings (defaults to get_settings())
        facts: Fact source for policy evaluation (defaults to a ChainFactSource
            over KMS_CHAIN_RPC_URLS)
        engine: Policy engine shared by all providers
        transport: httpx transport handed to every provider (tests)
    """

    def __init__(
        self,
        settings: Settings | None = None,
        facts: FactSource | None = None,
        engine: PolicyEngine | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.settings = settings or get_settings()
        self.facts = facts or ChainFactSource(
            self.settings.chain_rpc_urls,
            timeout=self.settings.request_timeout_seconds,
        )
        self.engine = engine or PolicyEngine(self.facts)
        self._provider_options: dict[str, Any] = {"transport": transport} if transport else {}
        self._instances: dict[ProviderType, KMSProvider] = {}
        self._active: KMSProvider | None = None
        self._key_owners: dict[str, ProviderType] = {}
        self._lock = asyncio.Lock()

    @property
    def initialized(self) -> bool:
        return self._active is not None

    @property
    def active_provider(self) -> ProviderType | None:
        return self._active.provider_type if self._active else None

    # =========================================================================
    # Provider management
    # =========================================================================

    def _provider(self, provider_type: ProviderType) -> KMSProvider:
        """Get (or construct) the provider instance for a type."""
        if provider_type in self._instances:
            return self._instances[provider_type]
        provider_class = _providers.get(provider_type)
        if provider_class is None:
            raise ProviderUnavailableError(provider_type.value, "provider is not registered")
        provider = provider_class(self.settings, self.facts, self.engine, **self._provider_options)
        self._instances[provider_type] = provider
        return provider

    async def _connected_provider(self, provider_type: ProviderType) -> KMSProvider:
        provider = self._provider(provider_type)
        if not provider.connected:
            await provider.connect()
        return provider

    async def _probe(self, provider_type: ProviderType) -> KMSProvider | None:
        try:
            provider = self._provider(provider_type)
        except KMSError as e:
            logger.debug("Provider not constructible", provider=provider_type.value, error=str(e))
            return None
        if provider.connected or await provider.is_available():
            return provider
        return None

    async def _select(self) -> KMSProvider:
        choice = self.settings.provider.lower()
        if choice != "auto":
            try:
                provider_type = ProviderType(choice)
            except ValueError:
                raise KMSError(
                    f"Unknown KMS provider: {choice}. "
                    f"Supported: auto, {', '.join(p.value for p in ProviderType)}"
                )
            return self._provider(provider_type)

        for provider_type in PROVIDER_PREFERENCE:
            if provider_type not in _providers:
                continue
            provider = await self._probe(provider_type)
            if provider is not None:
                return provider

        raise ProviderUnavailableError(
            "auto",
            f"no provider available (tried {', '.join(p.value for p in PROVIDER_PREFERENCE)})",
        )

    async def initialize(self) -> KMSProvider:
        """Select and connect the active provider.

        Idempotent: once a provider is active further calls return it. A
        failed attempt leaves the service uninitialized so a later call
        retries.
        """
        async with self._lock:
            if self._active is not None:
                return self._active
            provider = await self._select()
            await provider.connect()
            self._active = provider
            logger.info(
                "KMS service initialized",
                provider=provider.provider_type.value,
                selection=self.settings.provider,
            )
            return provider

    async def _fallbacks(self, exclude: ProviderType):
        for provider_type in PROVIDER_PREFERENCE:
            if provider_type == exclude or provider_type not in _providers:
                continue
            provider = await self._probe(provider_type)
            if provider is None:
                continue
            try:
                await self._connected_provider(provider_type)
            except KMSError as e:
                logger.debug("Fallback provider failed to connect", provider=provider_type.value, error=str(e))
                continue
            yield provider

    async def _run(self, call: Callable[[KMSProvider], Awaitable[T]]) -> tuple[T, KMSProvider]:
        """Run ``call`` on the active provider, falling back on not-implemented."""
        provider = await self.initialize()
        try:
            return await call(provider), provider
        except FeatureNotImplementedError as e:
            if not self.settings.fallback_enabled:
                raise
            first_error = e

        async for alternative in self._fallbacks(exclude=provider.provider_type):
            logger.info(
                "Falling back to another provider",
                feature=first_error.feature,
                from_provider=provider.provider_type.value,
                to_provider=alternative.provider_type.value,
            )
            try:
                return await call(alternative), alternative
            except FeatureNotImplementedError:
                continue
        raise first_error

    def _owner_of(self, key_id: str) -> KMSProvider:
        provider_type = self._key_owners.get(key_id)
        if provider_type is None:
            raise KeyNotFoundError(f"Key {key_id} not found")
        return self._provider(provider_type)

    # =========================================================================
    # Operations
    # =========================================================================

    @log_operation("kms.generate_key")
    async def generate_key(
        self,
        owner: str,
        key_type: KeyType,
        curve: KeyCurve,
        policy: AccessControlPolicy,
        label: str | None = None,
    ) -> GeneratedKey:
        key, provider = await self._run(
            lambda p: p.generate_key(owner, key_type, curve, policy, label)
        )
        self._key_owners[key.metadata.key_id] = provider.provider_type
        return key

    async def get_key(self, key_id: str) -> KeyMetadata | None:
        provider_type = self._key_owners.get(key_id)
        if provider_type is None:
            return None
        return await self._provider(provider_type).get_key(key_id)

    async def list_keys(self, owner: str | None = None) -> list[KeyMetadata]:
        """Keys issued through this service across every provider."""
        keys = []
        for provider in self._instances.values():
            keys.extend(k for k in await provider.list_keys(owner) if k.key_id in self._key_owners)
        return keys

    @log_operation("kms.revoke_key")
    async def revoke_key(self, key_id: str) -> KeyMetadata:
        return await self._owner_of(key_id).revoke_key(key_id)

    @log_operation("kms.encrypt")
    async def encrypt(self, request: EncryptRequest) -> EncryptedPayload:
        if request.key_id:
            return await self._owner_of(request.key_id).encrypt(request)
        payload, _ = await self._run(lambda p: p.encrypt(request))
        return payload

    @log_operation("kms.decrypt")
    async def decrypt(self, request: DecryptRequest) -> bytes:
        provider = await self._connected_provider(request.payload.provider)
        return await provider.decrypt(request)

    @log_operation("kms.sign")
    async def sign(self, request: SignRequest) -> SignedMessage:
        return await self._owner_of(request.key_id).sign(request)

    @log_operation("kms.threshold_sign")
    async def threshold_sign(self, request: ThresholdSignRequest) -> ThresholdSignature:
        return await self._owner_of(request.key_id).threshold_sign(request)

    async def get_signing_session(self, session_id: str) -> SigningSession | None:
        for provider in self._instances.values():
            session = await provider.get_signing_session(session_id)
            if session is not None:
                return session
        return None

    async def submit_partial(self, session_id: str, party_id: int, partial: str) -> SigningSession:
        """Deliver a party's partial signature to the session's provider."""
        for provider in self._instances.values():
            if await provider.get_signing_session(session_id) is not None:
                return await provider.submit_partial(session_id, party_id, partial)
        raise SessionNotFoundError(f"Signing session {session_id} not found")

    async def list_pending_sessions(self) -> list[SigningSession]:
        sessions = []
        for provider in self._instances.values():
            sessions.extend(await provider.list_pending_sessions())
        return sessions

    @log_operation("kms.refresh_shares")
    async def refresh_shares(self, key_id: str) -> None:
        await self._owner_of(key_id).refresh_shares(key_id)

    async def get_status(self) -> dict[str, Any]:
        providers = {}
        for provider_type, provider in self._instances.items():
            status = await provider.get_status()
            providers[provider_type.value] = status.to_dict()
        return {
            "environment": self.settings.environment,
            "initialized": self.initialized,
            "active_provider": self.active_provider.value if self.active_provider else None,
            "selection": self.settings.provider,
            "fallback_enabled": self.settings.fallback_enabled,
            "key_count": len(self._key_owners),
            "providers": providers,
        }

    async def close(self) -> None:
        """Disconnect every provider and release the fact source."""
        for provider in self._instances.values():
            if provider.connected:
                await provider.disconnect()
        await self.facts.close()
        self._active = None
        logger.info("KMS service closed")


@lru_cache(maxsize=1)
def get_kms() -> KMSService:
    """Get the process-wide KMS service (constructed lazily, not connected)."""
    return KMSService()


async def initialize_kms() -> KMSService:
    """Initialize and return the process-wide KMS service.

    This should be called during application startup. Also configures
    logging from KMS_LOG_LEVEL and KMS_LOG_JSON.
    """
    service = get_kms()
    setup_logging(json_output=service.settings.log_json, level=service.settings.log_level)
    await service.initialize()
    return service


def reset_kms() -> None:
    """Reset the cached KMS service.

    Useful for testing or reconfiguration.
    """
    get_kms.cache_clear()
