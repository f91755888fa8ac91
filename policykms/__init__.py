"""
policykms - Policy-gated key management.

Usage:
    from policykms import get_kms, EncryptRequest, DecryptRequest, LocalSigner
    from policykms.policies import stake_gated

    kms = get_kms()
    payload = await kms.encrypt(EncryptRequest(
        data=b"model weights key",
        policy=stake_gated("0x5f...", minimum=10**18),
    ))

    sig = LocalSigner.generate().auth_signature("Sign in")
    plaintext = await kms.decrypt(DecryptRequest(payload=payload, auth_sig=sig))

Backends:
    network   distributed threshold-cryptography network (local fallback)
    enclave   attested enclave, deterministic key derivation
    mpc       MPC coordinator with threshold signing sessions
"""

from policykms.core.auth import LocalSigner, verify_auth_signature
from policykms.core.errors import (
    AuthRequiredError,
    FeatureNotImplementedError,
    KMSError,
    PolicyNotSatisfiedError,
    ProviderUnavailableError,
)
from policykms.core.kms import (
    DecryptRequest,
    EncryptRequest,
    KMSService,
    SignRequest,
    ThresholdSignRequest,
    get_kms,
    initialize_kms,
    reset_kms,
)
from policykms.schemas import (
    AccessControlPolicy,
    AuthSignature,
    EncryptedPayload,
    KeyCurve,
    KeyType,
    ProviderType,
)

__version__ = "0.1.0"
__all__ = [
    "get_kms",
    "initialize_kms",
    "reset_kms",
    "KMSService",
    "EncryptRequest",
    "DecryptRequest",
    "SignRequest",
    "ThresholdSignRequest",
    "AccessControlPolicy",
    "AuthSignature",
    "EncryptedPayload",
    "LocalSigner",
    "verify_auth_signature",
    "KeyCurve",
    "KeyType",
    "ProviderType",
    "KMSError",
    "FeatureNotImplementedError",
    "PolicyNotSatisfiedError",
    "AuthRequiredError",
    "ProviderUnavailableError",
]
