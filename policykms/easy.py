"""Typed convenience wrappers over the KMS service.

Each wrapper builds a policy (or request) and calls the process-wide
service from get_kms(), unless an explicit ``kms`` is passed.

Usage:
    from policykms import easy

    payload = await easy.encrypt_for_agent(b"api-key", registry, agent_id=7)
    data = await easy.decrypt_json(payload, auth_sig=sig)
"""

import json
from typing import Any

from policykms.core.errors import KMSError
from policykms.core.hashing import from_hex, personal_message_digest
from policykms.core.kms.base import (
    DecryptRequest,
    EncryptRequest,
    SignedMessage,
    SignRequest,
    ThresholdSignature,
    ThresholdSignRequest,
)
from policykms.core.kms.factory import KMSService, get_kms
from policykms.policies import DEFAULT_CHAIN, agent_owner, stake_gated
from policykms.schemas.keys import AuthSignature, EncryptedPayload
from policykms.schemas.policy import AccessControlPolicy

JSON_CONTENT_TYPE = "application/json"


def _service(kms: KMSService | None) -> KMSService:
    return kms or get_kms()


async def encrypt_for_agent(
    data: bytes | str,
    registry_address: str,
    agent_id: int,
    chain: str = DEFAULT_CHAIN,
    kms: KMSService | None = None,
) -> EncryptedPayload:
    """Encrypt so that only the agent's owner can decrypt."""
    policy = agent_owner(registry_address, agent_id, chain=chain)
    return await _service(kms).encrypt(EncryptRequest(data=data, policy=policy))


async def encrypt_for_stakers(
    data: bytes | str,
    registry_address: str,
    minimum: int,
    chain: str = DEFAULT_CHAIN,
    kms: KMSService | None = None,
) -> EncryptedPayload:
    """Encrypt so that anyone staking at least ``minimum`` can decrypt."""
    policy = stake_gated(registry_address, minimum, chain=chain)
    return await _service(kms).encrypt(EncryptRequest(data=data, policy=policy))


async def encrypt_json(
    value: Any,
    policy: AccessControlPolicy,
    metadata: dict[str, str] | None = None,
    kms: KMSService | None = None,
) -> EncryptedPayload:
    """Serialize ``value`` as JSON and encrypt it under ``policy``."""
    data = json.dumps(value, separators=(",", ":")).encode()
    metadata = {**(metadata or {}), "contentType": JSON_CONTENT_TYPE}
    return await _service(kms).encrypt(EncryptRequest(data=data, policy=policy, metadata=metadata))


async def decrypt_json(
    payload: EncryptedPayload | str,
    auth_sig: AuthSignature | None = None,
    kms: KMSService | None = None,
) -> Any:
    """Decrypt a payload (object or its JSON form) and parse the plaintext as JSON."""
    if isinstance(payload, str):
        payload = EncryptedPayload.from_json(payload)
    plaintext = await _service(kms).decrypt(DecryptRequest(payload=payload, auth_sig=auth_sig))
    try:
        return json.loads(plaintext)
    except ValueError as e:
        raise KMSError("Decrypted payload is not valid JSON") from e


async def personal_sign(
    message: bytes | str,
    key_id: str,
    auth_sig: AuthSignature | None = None,
    kms: KMSService | None = None,
) -> SignedMessage:
    """Sign an EIP-191 personal message (``\\x19Ethereum Signed Message:\\n<len>``)."""
    if isinstance(message, str):
        message = message.encode()
    digest = personal_message_digest(message)
    return await _service(kms).sign(
        SignRequest(message=digest, key_id=key_id, hash_algorithm="none", auth_sig=auth_sig)
    )


async def threshold_sign_transaction(
    tx_hash: bytes | str,
    key_id: str,
    threshold: int | None = None,
    total_parties: int | None = None,
    auth_sig: AuthSignature | None = None,
    kms: KMSService | None = None,
) -> ThresholdSignature:
    """Threshold-sign a 32-byte transaction hash.

    Threshold and party count default to KMS_MPC_THRESHOLD and
    KMS_MPC_TOTAL_PARTIES.
    """
    service = _service(kms)
    digest = from_hex(tx_hash) if isinstance(tx_hash, str) else tx_hash
    if len(digest) != 32:
        raise ValueError("Transaction hash must be 32 bytes")
    return await service.threshold_sign(ThresholdSignRequest(
        message=digest,
        key_id=key_id,
        threshold=threshold or service.settings.mpc_threshold,
        total_parties=total_parties or service.settings.mpc_total_parties,
        hash_algorithm="none",
        auth_sig=auth_sig,
    ))
