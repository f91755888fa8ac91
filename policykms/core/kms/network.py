"""Distributed threshold-cryptography network provider.

Keys and ciphertexts are held by a network of nodes reached through a
gateway. The network evaluates access conditions itself, so policies are
translated into its condition format before they are sent.

Modes:
- network: gateway reachable, encrypt/decrypt round-trip through it
- fallback: gateway unreachable at connect() and KMS_FALLBACK_ENABLED set;
  encrypt/decrypt use local AES-256-GCM under a key derived from
  KMS_FALLBACK_SECRET. Payloads are marked ``encapsulation.mode = "fallback"``
  and remain policy gated.

The network has no signing capability in this deployment.
"""

import secrets
import time
from typing import Any

import httpx

from policykms.core.errors import (
    DecryptionError,
    KMSError,
    ProviderUnavailableError,
)
from policykms.core.logging import get_logger
from policykms.schemas.keys import (
    EncryptedPayload,
    GeneratedKey,
    KeyCurve,
    KeyMetadata,
    KeyType,
    ProviderType,
)
from policykms.schemas.policy import (
    USER_ADDRESS,
    AccessControlPolicy,
    AgentCondition,
    BalanceCondition,
    Comparator,
    ContractCondition,
    PolicyCondition,
    RoleCondition,
    StakeCondition,
    TimestampCondition,
)

from .base import (
    DecryptRequest,
    EncryptRequest,
    KMSProvider,
    ProviderStatus,
    SignedMessage,
    SignRequest,
    ThresholdSignature,
    ThresholdSignRequest,
)
from .sealing import (
    b64decode,
    b64encode,
    build_payload,
    check_integrity,
    derive_key,
    open_sealed,
    policy_aad,
    seal,
)

logger = get_logger(__name__)

MODE_NETWORK = "network"
MODE_FALLBACK = "fallback"


# =============================================================================
# Condition translation
# =============================================================================

def _return_test(comparator: Comparator | str, value: Any) -> dict[str, str]:
    comparator = comparator.value if isinstance(comparator, Comparator) else comparator
    return {"comparator": comparator, "value": str(value)}


def condition_to_network(condition) -> dict[str, Any] | list:
    """Translate one access condition into the network's condition format."""
    if isinstance(condition, PolicyCondition):
        return policy_to_network(condition.policy)

    if isinstance(condition, ContractCondition):
        return {
            "contractAddress": condition.contract_address,
            "standardContractType": "Custom",
            "chain": condition.chain,
            "method": condition.method,
            "parameters": [str(p).lower() if isinstance(p, bool) else str(p) for p in condition.parameters],
            "returnValueTest": _return_test(condition.comparator, condition.expected),
        }

    if isinstance(condition, TimestampCondition):
        return {
            "contractAddress": "",
            "standardContractType": "timestamp",
            "chain": condition.chain,
            "method": "eth_getBlockByNumber",
            "parameters": ["latest"],
            "returnValueTest": _return_test(condition.comparator, condition.value),
        }

    if isinstance(condition, BalanceCondition):
        if condition.token_address:
            return {
                "contractAddress": condition.token_address,
                "standardContractType": "ERC20",
                "chain": condition.chain,
                "method": "balanceOf",
                "parameters": [condition.address],
                "returnValueTest": _return_test(Comparator.GE, condition.minimum),
            }
        return {
            "contractAddress": "",
            "standardContractType": "",
            "chain": condition.chain,
            "method": "eth_getBalance",
            "parameters": [condition.address, "latest"],
            "returnValueTest": _return_test(Comparator.GE, condition.minimum),
        }

    if isinstance(condition, StakeCondition):
        return {
            "contractAddress": condition.registry_address,
            "standardContractType": "Custom",
            "chain": condition.chain,
            "method": "getStake",
            "parameters": [condition.address],
            "returnValueTest": _return_test(Comparator.GE, condition.minimum),
        }

    if isinstance(condition, RoleCondition):
        return {
            "contractAddress": condition.registry_address,
            "standardContractType": "Custom",
            "chain": condition.chain,
            "method": "hasRole",
            "parameters": [condition.role, condition.address],
            "returnValueTest": _return_test(Comparator.EQ, "true"),
        }

    if isinstance(condition, AgentCondition):
        return {
            "contractAddress": condition.registry_address,
            "standardContractType": "Custom",
            "chain": condition.chain,
            "method": "ownerOf",
            "parameters": [str(condition.agent_id)],
            "returnValueTest": _return_test(Comparator.EQ, USER_ADDRESS),
        }

    raise KMSError(f"Cannot translate condition type: {type(condition).__name__}")


def policy_to_network(policy: AccessControlPolicy) -> list:
    """Flatten a policy into a condition list with interleaved operators.

    Sub-policies become nested lists, e.g.
    ``[c1, {"operator": "and"}, [c2, {"operator": "or"}, c3]]``.
    """
    translated: list = []
    for index, condition in enumerate(policy.conditions):
        if index:
            translated.append({"operator": policy.operator.value})
        translated.append(condition_to_network(condition))
    return translated


class NetworkProvider(KMSProvider):
    """KMS provider backed by a distributed threshold-cryptography network."""

    provider_type = ProviderType.NETWORK

    def __init__(self, settings, facts, engine=None, transport: httpx.AsyncBaseTransport | None = None):
        super().__init__(settings, facts, engine)
        self.endpoint = settings.network_endpoint
        self.network = settings.network_name
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._fallback_key: bytes | None = None
        self.mode: str | None = None

    @property
    def fallback_mode(self) -> bool:
        return self.mode == MODE_FALLBACK

    def _http(self) -> httpx.AsyncClient:
        if not self.endpoint:
            raise ProviderUnavailableError(self.provider_type.value, "no network endpoint configured")
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.endpoint,
                timeout=self.settings.request_timeout_seconds,
                transport=self._transport,
            )
        return self._client

    def _fallback_sealing_key(self) -> bytes:
        if not self.settings.fallback_secret:
            raise ProviderUnavailableError(
                self.provider_type.value, "network unreachable and KMS_FALLBACK_SECRET not set"
            )
        return derive_key(
            self.settings.fallback_secret.encode(),
            (self.settings.hkdf_salt or "").encode(),
            "network-fallback",
        )

    async def _request(self, method: str, path: str, **kwargs) -> dict[str, Any]:
        try:
            response = await self._http().request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise ProviderUnavailableError(self.provider_type.value, f"{method} {path} failed: {e}") from e

        if response.status_code == 403:
            raise DecryptionError(f"Network refused {path}: {response.text}")
        if response.is_error:
            raise KMSError(f"Network gateway error on {path}: HTTP {response.status_code}")
        try:
            return response.json()
        except ValueError as e:
            raise KMSError(f"Network gateway returned malformed JSON on {path}") from e

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def _probe(self) -> bool:
        response = await self._http().get("/health", timeout=self.settings.probe_timeout_seconds)
        return response.is_success

    async def connect(self) -> None:
        """Handshake with the gateway, or enter fallback mode.

        Raises:
            ProviderUnavailableError: Gateway unreachable and fallback disabled
        """
        if self.mode is not None:
            return

        try:
            info = await self._request("POST", "/handshake", json={"network": self.network})
            self.mode = MODE_NETWORK
            self._connected = True
            logger.info(
                "Network provider connected",
                provider=self.provider_type.value,
                network=self.network,
                nodes=info.get("nodes"),
            )
            return
        except (ProviderUnavailableError, KMSError) as e:
            if not self.settings.fallback_enabled:
                raise ProviderUnavailableError(self.provider_type.value, str(e)) from e
            reason = str(e)

        self._fallback_key = self._fallback_sealing_key()
        self.mode = MODE_FALLBACK
        self._connected = True
        logger.warning(
            "Network unreachable, fallback mode enabled",
            provider=self.provider_type.value,
            network=self.network,
            reason=reason,
        )

    async def disconnect(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        self.mode = None
        self._fallback_key = None
        await super().disconnect()

    async def get_status(self) -> ProviderStatus:
        return ProviderStatus(
            provider=self.provider_type,
            connected=self._connected,
            implemented=True,
            details={
                "network": self.network,
                "endpoint": self.endpoint,
                "fallback_mode": self.fallback_mode,
                "key_count": len(self._keys),
            },
        )

    # =========================================================================
    # Keys
    # =========================================================================

    async def generate_key(
        self,
        owner: str,
        key_type: KeyType,
        curve: KeyCurve,
        policy: AccessControlPolicy,
        label: str | None = None,
    ) -> GeneratedKey:
        await self.connect()
        if key_type == KeyType.SIGNING:
            self._not_implemented("generate_key(signing)", "use the enclave or mpc provider")
        if self.fallback_mode:
            self._not_implemented("generate_key", "network unreachable; running in fallback mode")

        data = await self._request("POST", "/keys", json={
            "owner": owner,
            "keyType": key_type.value,
            "curve": curve.value,
            "chain": policy.chain(self.settings.default_chain),
            "accessControlConditions": policy_to_network(policy),
        })
        key_id = data.get("keyId") or f"network-{secrets.token_hex(8)}"
        if key_id in self._keys:
            raise KMSError(f"Network reissued existing key id {key_id}")
        public_key = data.get("publicKey")
        if not public_key:
            raise KMSError(f"Network returned no public key for {key_id}")

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
        self._keys[key_id] = metadata
        logger.info("Network key generated", key_id=key_id, owner=owner, key_type=key_type.value)
        return GeneratedKey(metadata=metadata, public_key=public_key)

    # =========================================================================
    # Encryption
    # =========================================================================

    async def encrypt(self, request: EncryptRequest) -> EncryptedPayload:
        await self.connect()
        if request.key_id:
            self._usable_key(request.key_id)

        plaintext = request.data_bytes
        if self.fallback_mode:
            return build_payload(
                ciphertext=seal(self._fallback_key, plaintext, policy_aad(request.policy)),
                plaintext=plaintext,
                policy=request.policy,
                provider=self.provider_type,
                key_id=request.key_id,
                encapsulation={"mode": MODE_FALLBACK, "scheme": "aes-256-gcm"},
                metadata=request.metadata,
            )

        chain = request.policy.chain(self.settings.default_chain)
        data = await self._request("POST", "/encrypt", json={
            "data": b64encode(plaintext),
            "chain": chain,
            "keyId": request.key_id,
            "accessControlConditions": policy_to_network(request.policy),
        })
        if not data.get("ciphertext"):
            raise KMSError("Network returned no ciphertext")
        return build_payload(
            ciphertext=data["ciphertext"],
            plaintext=plaintext,
            policy=request.policy,
            provider=self.provider_type,
            key_id=request.key_id,
            encapsulation={
                "mode": MODE_NETWORK,
                "network": self.network,
                "chain": chain,
                "dataToEncryptHash": data.get("dataToEncryptHash", ""),
            },
            metadata=request.metadata,
        )

    async def decrypt(self, request: DecryptRequest) -> bytes:
        await self.connect()
        payload = request.payload
        if payload.provider != self.provider_type:
            raise DecryptionError(f"Payload was sealed by the {payload.provider.value} provider")
        if payload.policy_hash != payload.policy.policy_hash():
            raise DecryptionError("Payload policy does not match its policy hash")
        if payload.key_id and payload.key_id in self._keys:
            self._usable_key(payload.key_id)

        # Evaluated locally first; the network re-checks on its side
        await self.engine.authorize(payload.policy, request.auth_sig)

        mode = payload.encapsulation.get("mode", MODE_NETWORK)
        if mode == MODE_FALLBACK:
            if self._fallback_key is None:
                self._fallback_key = self._fallback_sealing_key()
            plaintext = open_sealed(
                self._fallback_key, b64decode(payload.ciphertext), policy_aad(payload.policy)
            )
        else:
            if self.fallback_mode:
                raise ProviderUnavailableError(
                    self.provider_type.value, "payload requires the network but it is unreachable"
                )
            auth = request.auth_sig.model_dump(by_alias=True) if request.auth_sig else None
            data = await self._request("POST", "/decrypt", json={
                "ciphertext": payload.ciphertext,
                "dataToEncryptHash": payload.encapsulation.get("dataToEncryptHash", ""),
                "chain": payload.encapsulation.get("chain", payload.policy.chain(self.settings.default_chain)),
                "accessControlConditions": policy_to_network(payload.policy),
                "authSig": auth,
            })
            try:
                plaintext = b64decode(data["data"])
            except (KeyError, TypeError, ValueError) as e:
                raise DecryptionError("Network returned malformed decrypted data") from e

        check_integrity(payload, plaintext)
        return plaintext

    # =========================================================================
    # Signing
    # =========================================================================

    async def sign(self, request: SignRequest) -> SignedMessage:
        self._not_implemented("sign", "network signing requires programmable key pairs; use the enclave provider")

    async def threshold_sign(self, request: ThresholdSignRequest) -> ThresholdSignature:
        self._not_implemented("threshold_sign", "use the mpc provider")

    async def refresh_shares(self, key_id: str) -> None:
        self._not_implemented("refresh_shares", "share refresh is managed by the network")
