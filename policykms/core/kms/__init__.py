"""Key Management Service abstraction layer.

Supports three key-custody backends behind one policy-gated interface:
- Network: distributed threshold-cryptography network (with local fallback)
- Enclave: keys derived and used inside an attested enclave
- MPC: key shares held by independent parties, driven by a coordinator

This abstraction enables:
1. Encrypting data to a policy instead of to a recipient
2. Signing with keys whose use is gated on on-chain facts
3. Moving between custody backends without changing callers
"""

from policykms.core.errors import (
    AuthRequiredError,
    DecryptionError,
    FeatureNotImplementedError,
    InvalidPartyError,
    KeyBusyError,
    KeyNotFoundError,
    KeyRevokedError,
    KMSError,
    PolicyNotSatisfiedError,
    ProviderUnavailableError,
    SessionNotFoundError,
    SessionTerminalError,
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
from .enclave import EnclaveProvider
from .factory import KMSService, get_kms, initialize_kms, register_provider, reset_kms
from .mpc import MPCProvider
from .network import NetworkProvider

__all__ = [
    "KMSProvider",
    "ProviderStatus",
    "EncryptRequest",
    "DecryptRequest",
    "SignRequest",
    "SignedMessage",
    "ThresholdSignRequest",
    "ThresholdSignature",
    "NetworkProvider",
    "EnclaveProvider",
    "MPCProvider",
    "KMSService",
    "get_kms",
    "initialize_kms",
    "reset_kms",
    "register_provider",
    "KMSError",
    "FeatureNotImplementedError",
    "PolicyNotSatisfiedError",
    "AuthRequiredError",
    "ProviderUnavailableError",
    "SessionTerminalError",
    "SessionNotFoundError",
    "InvalidPartyError",
    "KeyNotFoundError",
    "KeyRevokedError",
    "KeyBusyError",
    "DecryptionError",
]
