"""Digest helpers shared by providers, fact sources and the SDK layer.

keccak256 is the original (pre-standard) Keccak used by EVM chains, which is
not the same function as hashlib's sha3_256, so it comes from pycryptodome.
"""

import hashlib

from Crypto.Hash import keccak


def keccak256(data: bytes) -> bytes:
    """Compute the EVM keccak256 digest."""
    h = keccak.new(digest_bits=256)
    h.update(data)
    return h.digest()


def sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def to_hex(data: bytes) -> str:
    return "0x" + data.hex()


def from_hex(value: str) -> bytes:
    """Decode a hex string with or without the 0x prefix."""
    if value.startswith(("0x", "0X")):
        value = value[2:]
    return bytes.fromhex(value)


def personal_message_digest(message: bytes) -> bytes:
    """Digest of an EIP-191 personal message (``personal_sign``)."""
    prefix = f"\x19Ethereum Signed Message:\n{len(message)}".encode()
    return keccak256(prefix + message)


def function_selector(signature: str) -> bytes:
    """First four bytes of keccak256 over an ABI function signature."""
    return keccak256(signature.replace(" ", "").encode())[:4]


def digest_message(message: bytes, algorithm: str) -> bytes:
    """Hash a message for signing.

    Args:
        message: Raw message bytes
        algorithm: "keccak256", "sha256" or "none" (message is already a 32-byte digest)
    """
    if algorithm == "keccak256":
        return keccak256(message)
    if algorithm == "sha256":
        return sha256(message)
    if algorithm == "none":
        if len(message) != 32:
            raise ValueError("Pre-hashed messages must be exactly 32 bytes")
        return message
    raise ValueError(f"Unsupported hash algorithm: {algorithm}")
