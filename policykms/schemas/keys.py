"""Key, payload and authentication schemas.

Wire types use camelCase aliases so that payloads produced here can be stored
or shipped next to data produced by other KMS clients; both spellings are
accepted on input.
"""

import json
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from policykms.schemas.policy import AccessControlPolicy, Address


def to_camel(string: str) -> str:
    """Convert snake_case to camelCase."""
    components = string.split("_")
    return components[0] + "".join(x.title() for x in components[1:])


class ProviderType(str, Enum):
    """Key-custody backends, in automatic selection preference order."""
    NETWORK = "network"   # Distributed threshold-cryptography network
    ENCLAVE = "enclave"   # Hardware-isolated enclave
    MPC = "mpc"           # Multi-party computation coordinator


PROVIDER_PREFERENCE: tuple[ProviderType, ...] = (
    ProviderType.NETWORK,
    ProviderType.ENCLAVE,
    ProviderType.MPC,
)


class KeyType(str, Enum):
    SIGNING = "signing"
    ENCRYPTION = "encryption"


class KeyCurve(str, Enum):
    SECP256K1 = "secp256k1"
    ED25519 = "ed25519"


class _WireModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )


class KeyMetadata(_WireModel):
    """Metadata about a provider-held key. Never contains key material."""
    key_id: str = Field(description="Provider-assigned opaque identifier")
    owner: Address
    key_type: KeyType
    curve: KeyCurve
    created_at: int = Field(description="Unix timestamp (seconds)")
    policy: AccessControlPolicy
    provider: ProviderType
    revoked: bool = False
    label: str | None = None


class GeneratedKey(_WireModel):
    """A newly generated key: metadata plus public material."""
    metadata: KeyMetadata
    public_key: str = Field(description="Hex-encoded public key")
    address: str | None = Field(default=None, description="EVM address for secp256k1 keys")


class AuthSignature(_WireModel):
    """Externally produced signature proving the caller's identity."""
    sig: str
    signed_message: str
    address: Address
    derived_via: Literal["web3.eth.personal.sign", "EIP712", "siwe"] = "web3.eth.personal.sign"


class EncryptedPayload(_WireModel):
    """Self-describing ciphertext: carries the policy it was sealed under."""
    ciphertext: str = Field(description="Base64 ciphertext")
    encapsulation: dict[str, Any] = Field(
        default_factory=dict,
        description="Provider-specific public data needed for decryption",
    )
    policy: AccessControlPolicy
    provider: ProviderType
    key_id: str | None = None
    data_hash: str = Field(description="keccak256 of the plaintext")
    policy_hash: str
    encrypted_at: int
    metadata: dict[str, str] = Field(default_factory=dict)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)

    @classmethod
    def from_json(cls, data: str | bytes) -> "EncryptedPayload":
        return cls.model_validate_json(data)

    def to_dict(self) -> dict[str, Any]:
        return json.loads(self.to_json())
