#!/usr/bin/env python3

import collections
import hashlib
import os
from chacha20poly1305 import ChaCha

EllipticCurve = collections.namedtuple('EllipticCurve', 'name p G n h')

curve = EllipticCurve(
    'secp256k1',
    # Field characteristic.
    p=0xfffffffffffffffffffffffffffffffffffffffffffffffffffffffefffffc2f,
    # Base point.
    G=(0x79be667ef9dcbbac55a06295ce870b07029bfcdb2dce28d959f2815b16f81798,
       0x483ada7726a3c4655da4fbfc0e1108a8fd17b448a68554199c47d08ffb10d4b8),
    # Subgroup order.
    n=0xfffffffffffffffffffffffffffffffebaaedce6af48a03bbfd25e8cd0364141,
    # Subgroup cofactor.
    h=1,
)

TAG_KEYLIST = 'MuSig2/keylist'
TAG_COEFFICIENT = 'MuSig2/coefficient'
TAG_COMMITMENT = 'MuSig2/commitment'
TAG_BINDING = 'MuSig2/binding'
TAG_CHALLENGE = 'MuSig2/challenge'
TAG_SESSION = 'MuSig2/session'
TAG_AUX = 'MuSig2/aux'
TAG_NONCE = 'MuSig2/nonce'
TAG_LEDGER = 'MuSig2/ledger'

POINT_SIZE = 33
SCALAR_SIZE = 32


class ScalarOverflowError(ValueError):
    pass

def x(P):
    return P[0]

def y(P):
    return P[1]

def point_add(P1, P2):
    if (P1 is None):
        return P2
    if (P2 is None):
        return P1
    if (P1[0] == P2[0] and P1[1] != P2[1]):
        return None
    if (P1 == P2):
        lam = (3 * P1[0] * P1[0] * pow(2 * P1[1], curve.p - 2, curve.p)) % curve.p
    else:
        lam = ((P2[1] - P1[1]) * pow(P2[0] - P1[0], curve.p - 2, curve.p)) % curve.p
    x3 = (lam * lam - P1[0] - P2[0]) % curve.p
    return (x3, (lam * (P1[0] - x3) - P1[1]) % curve.p)


def point_mul(P, n):
    R = None
    for i in range(256):
        if ((n >> i) & 1):
            R = point_add(R, P)
        P = point_add(P, P)
    return R

def point_sum(points):
    """Compute P[0] + P[1] + ... + P[n-1]"""

    S = None
    for P in points:
        S = point_add(S, P)
    return S

def bytes_from_int(x):
    return x.to_bytes(32, byteorder="big")

def bytes_from_point(P):
    """Serialize a point in the 33-byte SEC1 compressed format."""

    if is_infinity(P):
        raise ValueError('The point at infinity has no encoding.')
    return (b'\x02' if has_even_y(P) else b'\x03') + bytes_from_int(x(P))

def xor_bytes(b0: bytes, b1: bytes) -> bytes:
    return bytes(x ^ y for (x, y) in zip(b0, b1))

def point_from_bytes(b):
    """Parse a 33-byte compressed point. Returns None for anything invalid."""

    if len(b) != POINT_SIZE or b[0] not in (2, 3):
        return None
    x = int_from_bytes(b[1:])
    if x >= curve.p:
        return None
    y_sq = (pow(x, 3, curve.p) + 7) % curve.p
    y = pow(y_sq, (curve.p + 1) // 4, curve.p)
    if pow(y, 2, curve.p) != y_sq:
        return None
    if (y & 1) != (b[0] & 1):
        y = curve.p - y
    return (x, y)


def int_from_bytes(b):
    return int.from_bytes(b, byteorder="big")

def hash_sha256(b):
    return hashlib.sha256(b).digest()

def tagged_hash(tag, msg):
    tag_hash = hash_sha256(tag.encode())
    return hash_sha256(tag_hash + tag_hash + msg)

def hash_to_scalar(tag, msg):
    return int_from_bytes(tagged_hash(tag, msg)) % curve.n

def is_infinity(P):
    return P is None

def has_even_y(P) -> bool:
    assert not is_infinity(P)
    return y(P) % 2 == 0

def is_secret_overflow(x):
    return not (1 <= x <= curve.n - 1)

def chacha20_prng(key, counter):
    nonce = bytes(12)
    chacha20 = ChaCha(key, nonce)
    key_stream = chacha20.key_stream(counter)
    r1 = int_from_bytes(key_stream[:32])
    r2 = int_from_bytes(key_stream[32:])
    if is_secret_overflow(r1):
        raise ScalarOverflowError('r1 outside of the group order.')
    if is_secret_overflow(r2):
        raise ScalarOverflowError('r2 outside of the group order.')
    return [r1, r2]

def seckey_gen():
    while True:
        seckey = os.urandom(32)
        if not is_secret_overflow(int_from_bytes(seckey)):
            return seckey

def pubkey_gen(seckey):
    x = int_from_bytes(seckey)
    if is_secret_overflow(x):
        raise ScalarOverflowError('Secret key outside of the group order.')
    P = point_mul(curve.G, x)
    return bytes_from_point(P)
