"""Caller authentication.

An AuthSignature claims an address. The claim is only trusted once the
signature over ``signed_message`` recovers to that address:

- web3.eth.personal.sign / siwe: EIP-191 personal message, 65-byte r || s || v
- EIP712: rejected (typed-data domains are not carried by AuthSignature)

LocalSigner produces AuthSignatures from an in-process secp256k1 key, for
agents that hold their own wallet key and for tests.
"""

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec, utils

from policykms.core.hashing import from_hex, keccak256, personal_message_digest, to_hex
from policykms.core.logging import get_logger, log_operation
from policykms.core.secp256k1 import (
    CURVE_ORDER,
    address_of,
    address_of_point,
    normalize_signature,
    recover,
    recovery_id_for,
)
from policykms.schemas.keys import AuthSignature

logger = get_logger(__name__)

PERSONAL_SIGN_SCHEMES = ("web3.eth.personal.sign", "siwe")


@log_operation("auth.recover_signer")
def recover_signer(message: bytes, signature: str) -> str:
    """Recover the EVM address that personal-signed ``message``.

    Raises:
        ValueError: Malformed signature or no valid recovery
    """
    raw = from_hex(signature)
    if len(raw) != 65:
        raise ValueError(f"Signature must be 65 bytes, got {len(raw)}")

    r = int.from_bytes(raw[:32], "big")
    s = int.from_bytes(raw[32:64], "big")
    v = raw[64]
    recovery_id = v - 27 if v >= 27 else v
    if recovery_id not in (0, 1):
        raise ValueError(f"Invalid recovery byte: {v}")
    if not (0 < r < CURVE_ORDER and 0 < s < CURVE_ORDER):
        raise ValueError("Signature scalars out of range")

    point = recover(personal_message_digest(message), r, s, recovery_id)
    return address_of_point(point)


async def verify_auth_signature(auth_sig: AuthSignature) -> bool:
    """Check that ``auth_sig.sig`` was produced by ``auth_sig.address``."""
    if auth_sig.derived_via not in PERSONAL_SIGN_SCHEMES:
        logger.warning(
            "Unsupported auth signature scheme",
            derived_via=auth_sig.derived_via,
            address=auth_sig.address,
        )
        return False

    try:
        signer = recover_signer(auth_sig.signed_message.encode(), auth_sig.sig)
    except ValueError as e:
        logger.debug("Auth signature recovery failed", address=auth_sig.address, error=str(e))
        return False
    return signer == auth_sig.address.lower()


class LocalSigner:
    """Wallet key held in process memory."""

    def __init__(self, private_key: ec.EllipticCurvePrivateKey):
        self._private_key = private_key
        self.address = address_of(private_key.public_key())

    @classmethod
    def generate(cls) -> "LocalSigner":
        return cls(ec.generate_private_key(ec.SECP256K1()))

    @classmethod
    def from_secret(cls, secret: bytes) -> "LocalSigner":
        """Deterministic key from arbitrary secret bytes."""
        scalar = int.from_bytes(keccak256(secret), "big") % (CURVE_ORDER - 1) + 1
        return cls(ec.derive_private_key(scalar, ec.SECP256K1()))

    def sign_message(self, message: bytes | str) -> str:
        """EIP-191 personal_sign. Returns the 65-byte r || s || v hex signature."""
        if isinstance(message, str):
            message = message.encode()
        digest = personal_message_digest(message)
        der = self._private_key.sign(digest, ec.ECDSA(utils.Prehashed(hashes.SHA256())))
        r, s = normalize_signature(der)
        recovery_id = recovery_id_for(digest, r, s, self._private_key.public_key())
        return to_hex(r.to_bytes(32, "big") + s.to_bytes(32, "big") + bytes([27 + recovery_id]))

    def auth_signature(self, message: str) -> AuthSignature:
        return AuthSignature(
            sig=self.sign_message(message),
            signed_message=message,
            address=self.address,
        )
