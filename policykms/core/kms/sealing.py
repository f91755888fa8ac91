"""Local sealing primitives shared by providers.

HKDF-SHA256 for key derivation and AES-256-GCM with a random 96-bit nonce
prepended to the ciphertext. The policy hash is used as associated data so
that a payload's policy cannot be swapped without breaking decryption.
"""

import base64
import secrets
import time

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from policykms.core.errors import DecryptionError
from policykms.core.hashing import keccak256, to_hex
from policykms.schemas.keys import EncryptedPayload, ProviderType
from policykms.schemas.policy import AccessControlPolicy

NONCE_SIZE = 12


def derive_key(secret: bytes, salt: bytes, info: str, length: int = 32) -> bytes:
    """Derive key material with HKDF-SHA256."""
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=length,
        salt=salt,
        info=info.encode(),
    )
    return hkdf.derive(secret)


def seal(key: bytes, plaintext: bytes, aad: bytes) -> bytes:
    """AES-256-GCM encrypt. Returns nonce || ciphertext+tag."""
    nonce = secrets.token_bytes(NONCE_SIZE)
    return nonce + AESGCM(key).encrypt(nonce, plaintext, aad)


def open_sealed(key: bytes, blob: bytes, aad: bytes) -> bytes:
    if len(blob) < NONCE_SIZE + 16:
        raise DecryptionError("Invalid ciphertext: too short")
    nonce, ciphertext = blob[:NONCE_SIZE], blob[NONCE_SIZE:]
    try:
        return AESGCM(key).decrypt(nonce, ciphertext, aad)
    except InvalidTag as e:
        raise DecryptionError("Ciphertext or policy has been tampered with") from e


def b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode()


def b64decode(data: str) -> bytes:
    try:
        return base64.b64decode(data, validate=True)
    except ValueError as e:
        raise DecryptionError("Ciphertext is not valid base64") from e


def policy_aad(policy: AccessControlPolicy) -> bytes:
    return policy.policy_hash().encode()


def build_payload(
    *,
    ciphertext: bytes | str,
    plaintext: bytes,
    policy: AccessControlPolicy,
    provider: ProviderType,
    key_id: str | None,
    encapsulation: dict | None = None,
    metadata: dict[str, str] | None = None,
    data_hash: str | None = None,
) -> EncryptedPayload:
    """Assemble a self-describing payload."""
    if isinstance(ciphertext, bytes):
        ciphertext = b64encode(ciphertext)
    return EncryptedPayload(
        ciphertext=ciphertext,
        encapsulation=encapsulation or {},
        policy=policy,
        provider=provider,
        key_id=key_id,
        data_hash=data_hash or to_hex(keccak256(plaintext)),
        policy_hash=policy.policy_hash(),
        encrypted_at=int(time.time()),
        metadata=metadata or {},
    )


def check_integrity(payload: EncryptedPayload, plaintext: bytes) -> None:
    """Verify the decrypted plaintext against the payload's data hash."""
    if to_hex(keccak256(plaintext)) != payload.data_hash:
        raise DecryptionError("Decrypted data does not match payload data hash")
