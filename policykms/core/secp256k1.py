"""secp256k1 helpers for EVM-compatible ECDSA signatures.

``cryptography`` produces and verifies ECDSA signatures but does not expose
public-key recovery, which EVM tooling needs (the ``v`` byte). Recovery here
uses plain affine point arithmetic; it only handles public values.
"""

from dataclasses import dataclass
from typing import Optional

from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import decode_dss_signature

from policykms.core.hashing import keccak256

CURVE_ORDER = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141
FIELD_P = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEFFFFFC2F
G_X = 0x79BE667EF9DCBBAC55A06295CE870B07029BFCDB2DCE28D959F2815B16F81798
G_Y = 0x483ADA7726A3C4655DA4FBFC0E1108A8FD17B448A68554199C47D08FFB10D4B8


@dataclass(frozen=True)
class Point:
    """Affine curve point; (None, None) is the point at infinity."""
    x: Optional[int]
    y: Optional[int]

    @property
    def is_identity(self) -> bool:
        return self.x is None

    @classmethod
    def identity(cls) -> "Point":
        return cls(None, None)

    @classmethod
    def generator(cls) -> "Point":
        return cls(G_X, G_Y)


def point_add(p1: Point, p2: Point) -> Point:
    if p1.is_identity:
        return p2
    if p2.is_identity:
        return p1
    if p1.x == p2.x and p1.y != p2.y:
        return Point.identity()
    if p1 == p2:
        return point_double(p1)

    slope = ((p2.y - p1.y) * pow(p2.x - p1.x, -1, FIELD_P)) % FIELD_P
    x3 = (slope * slope - p1.x - p2.x) % FIELD_P
    y3 = (slope * (p1.x - x3) - p1.y) % FIELD_P
    return Point(x3, y3)


def point_double(p: Point) -> Point:
    if p.is_identity or p.y == 0:
        return Point.identity()

    # (3x^2 + a) / 2y with a = 0
    slope = (3 * p.x * p.x * pow(2 * p.y, -1, FIELD_P)) % FIELD_P
    x3 = (slope * slope - 2 * p.x) % FIELD_P
    y3 = (slope * (p.x - x3) - p.y) % FIELD_P
    return Point(x3, y3)


def scalar_mult(point: Point, scalar: int) -> Point:
    """Double-and-add scalar multiplication."""
    result = Point.identity()
    addend = point
    scalar %= CURVE_ORDER
    while scalar > 0:
        if scalar & 1:
            result = point_add(result, addend)
        addend = point_double(addend)
        scalar >>= 1
    return result


def lift_x(x: int, odd: bool) -> Point:
    """Point with the given x coordinate and y parity."""
    y_squared = (pow(x, 3, FIELD_P) + 7) % FIELD_P
    y = pow(y_squared, (FIELD_P + 1) // 4, FIELD_P)
    if (y * y) % FIELD_P != y_squared:
        raise ValueError("x is not on the curve")
    if (y % 2 == 1) != odd:
        y = FIELD_P - y
    return Point(x, y)


def recover(digest: bytes, r: int, s: int, recovery_id: int) -> Point:
    """Recover the signer's public point from a signature and recovery id."""
    R = lift_x(r, odd=bool(recovery_id & 1))
    e = int.from_bytes(digest, "big") % CURVE_ORDER
    r_inv = pow(r, -1, CURVE_ORDER)
    sR = scalar_mult(R, s)
    eG = scalar_mult(Point.generator(), e)
    neg_eG = Point(eG.x, (-eG.y) % FIELD_P) if not eG.is_identity else eG
    return scalar_mult(point_add(sR, neg_eG), r_inv)


def public_point(public_key: ec.EllipticCurvePublicKey) -> Point:
    numbers = public_key.public_numbers()
    return Point(numbers.x, numbers.y)


def normalize_signature(der: bytes) -> tuple[int, int]:
    """Decode a DER signature and enforce low-s form (EIP-2)."""
    r, s = decode_dss_signature(der)
    if s > CURVE_ORDER // 2:
        s = CURVE_ORDER - s
    return r, s


def recovery_id_for(digest: bytes, r: int, s: int, public_key: ec.EllipticCurvePublicKey) -> int:
    """Find the recovery id that yields ``public_key``."""
    expected = public_point(public_key)
    for recovery_id in (0, 1):
        try:
            if recover(digest, r, s, recovery_id) == expected:
                return recovery_id
        except ValueError:
            continue
    raise ValueError("Could not determine recovery id")


def address_of_point(point: Point) -> str:
    """EVM address: last 20 bytes of keccak256 over the uncompressed point."""
    if point.is_identity:
        raise ValueError("The point at infinity has no address")
    raw = point.x.to_bytes(32, "big") + point.y.to_bytes(32, "big")
    return "0x" + keccak256(raw)[-20:].hex()


def address_of(public_key: ec.EllipticCurvePublicKey) -> str:
    return address_of_point(public_point(public_key))
