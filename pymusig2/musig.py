#!/usr/bin/env python3
import collections
import logging
import os
import struct

from .errors import InvalidKeyMaterial, NonceAlreadyConsumed
from .utils import *

logger = logging.getLogger(__name__)

# how many recently used nonce pairs a Signer remembers in memory
USED_NONCE_WINDOW = 4096


def sort_pubkeys(pubkeys):
    """Return the canonical (lexicographic) ordering of the encoded public keys."""

    return sorted(pubkeys)


class CombinedPubkey:
    """
    This class represents a combined public key for all participating signers.

    In order to create a combined public key all separate public keys needs provided in advance.
    Compute X = (a[0]*X[0]) + (a[1]*X[1]) + ... + (a[n]*X[n])
    !!!The order/index of the public keys needs to be the same as in the MuSig session.!!!
    """

    @staticmethod
    def hash_keys(pubkeys: list) -> bytes:
        """Computes L = H(pk[0], ..., pk[np-1])"""

        p = b''
        for pubkey in pubkeys:
            if len(pubkey) != POINT_SIZE:
                raise InvalidKeyMaterial('The pubkeys must be a 33-byte array.')
            p += pubkey
        return tagged_hash(TAG_KEYLIST, p)

    @staticmethod
    def key_agg_coefficient(ell, pk):
        """Compute a = H(L + pk) reduced into the scalar field."""

        return hash_to_scalar(TAG_COEFFICIENT, ell + pk)

    def __init__(self, pubkeys):
        pubkeys = [bytes(pk) for pk in pubkeys]
        if len(pubkeys) < 2:
            raise InvalidKeyMaterial('At least two public keys are required.')
        if len(set(pubkeys)) != len(pubkeys):
            raise InvalidKeyMaterial('The public keys must be distinct.')

        ell = CombinedPubkey.hash_keys(pubkeys)
        P = None
        coefficients = []
        for i in range(len(pubkeys)):
            P_i = point_from_bytes(pubkeys[i])
            if (P_i is None):
                raise InvalidKeyMaterial('Received an invalid public key. index: {}'.format(i))
            coefficient = CombinedPubkey.key_agg_coefficient(ell, pubkeys[i])
            coefficients.append(coefficient)
            P = point_add(P, point_mul(P_i, coefficient))
        if is_infinity(P):
            raise InvalidKeyMaterial('The aggregated public key is the point at infinity.')

        self.__pubkeys = tuple(pubkeys)
        self.__ell = ell
        self.__coefficients = tuple(coefficients)
        self.__point = P
        self.__combined_pk = bytes_from_point(P)

    def get_pubkey(self):
        """Return the combined public key."""

        return self.__combined_pk

    def get_point(self):
        return self.__point

    def get_key_hash(self):
        """Return the key list label L."""

        return self.__ell

    @property
    def pubkeys(self):
        return self.__pubkeys

    @property
    def coefficients(self):
        return self.__coefficients

    def coefficient(self, i):
        return self.__coefficients[i]

    def index_of(self, pubkey):
        try:
            return self.__pubkeys.index(bytes(pubkey))
        except ValueError:
            raise InvalidKeyMaterial('The public key is not part of the key set.') from None

    def coefficient_for(self, pubkey):
        return self.__coefficients[self.index_of(pubkey)]

    def __len__(self):
        return len(self.__pubkeys)

    def __eq__(self, other):
        if not isinstance(other, CombinedPubkey):
            return NotImplemented
        return self.__pubkeys == other.pubkeys

    def __hash__(self):
        return hash(self.__pubkeys)

    def __str__(self):
        return 'combined public key: {}'.format(self.__combined_pk.hex())


class SecretNonces:
    """
    The two secret nonce scalars of one signer for one session.

    The scalars can be taken out exactly once. After that, or after discard(),
    the object holds nothing.
    """

    def __init__(self, k1, k2):
        if is_secret_overflow(k1) or is_secret_overflow(k2):
            raise ScalarOverflowError('The nonce is outside of the group order.')
        self.__k = [k1, k2]
        self.pubnonces = (bytes_from_point(point_mul(curve.G, k1)), bytes_from_point(point_mul(curve.G, k2)))

    @property
    def consumed(self):
        return self.__k is None

    def consume(self):
        if self.__k is None:
            raise NonceAlreadyConsumed('The secret nonces have already been used.')
        k, self.__k = self.__k, None
        return k

    def discard(self):
        self.__k = None

    def __repr__(self):
        return 'SecretNonces(consumed={})'.format(self.consumed)


def nonce_gen(seckey, session_id, rand=None):
    """
    Create a fresh secret nonce pair and the public nonces R1, R2.

    Never pass a fixed rand outside of tests: the nonces must differ for every session.
    """

    if len(seckey) != 32:
        raise ValueError('The secret key must be a 32-byte array.')
    if len(session_id) != 32:
        raise ValueError('The session id must be a 32-byte array.')
    if rand is None:
        rand = os.urandom(32)
    if len(rand) != 32:
        raise ValueError('rand must be 32 bytes.')

    seed = tagged_hash(TAG_NONCE, xor_bytes(seckey, tagged_hash(TAG_AUX, rand)) + session_id)
    k1, k2 = chacha20_prng(seed, 0)
    secnonces = SecretNonces(k1, k2)
    return secnonces, secnonces.pubnonces


def nonce_commitment(session_id, participant_id, R1, R2):
    """Compute H(session_id || participant_id || R1 || R2)."""

    if len(R1) != POINT_SIZE or len(R2) != POINT_SIZE:
        raise ValueError('The public nonces must be 33-byte arrays.')
    return tagged_hash(TAG_COMMITMENT, session_id + struct.pack('>I', participant_id) + R1 + R2)


def nonce_binding(combined_pk, msg, pubnonces):
    """
    Compute b = H(X || len(m) || m || R[0][0] || ... || R[n][0] || R[0][1] || ... || R[n][1]).

    pubnonces must be ordered like the public keys of the session.
    """

    data = combined_pk + struct.pack('>Q', len(msg)) + msg
    data += b''.join(R1 for R1, _ in pubnonces)
    data += b''.join(R2 for _, R2 in pubnonces)
    return hash_to_scalar(TAG_BINDING, data)


def aggregate_nonces(combined_pk, msg, pubnonces):
    """
    Compute the effective nonces R_i = R_i,1 + b * R_i,2 and R = R_1 + ... + R_n.

    Returns (b, R, [R_i]) with all points as 33-byte encodings.
    """

    b = nonce_binding(combined_pk, msg, pubnonces)
    effective = []
    for i, (R1, R2) in enumerate(pubnonces):
        P1 = point_from_bytes(R1)
        P2 = point_from_bytes(R2)
        if P1 is None or P2 is None:
            raise ValueError('Received an invalid public nonce. index: {}'.format(i))
        effective.append(point_add(P1, point_mul(P2, b)))
    R = point_sum(effective)
    if is_infinity(R):
        raise ValueError('The aggregated nonce is the point at infinity.')
    return b, bytes_from_point(R), [bytes_from_point(R_i) if R_i is not None else None for R_i in effective]


def challenge_hash(R, combined_pk, msg):
    """Compute c = H(R || X || m)."""

    return hash_to_scalar(TAG_CHALLENGE, R + combined_pk + msg)


def partial_sign(seckey, coefficient, secnonces, b, c):
    """Compute s = k[0] + b * k[1] + c * a * x and consume the secret nonces."""

    x = int_from_bytes(seckey)
    if is_secret_overflow(x):
        raise ScalarOverflowError('The secret key is outside of the group order.')
    k = secnonces.consume()
    s = (k[0] + b * k[1] + c * coefficient * x) % curve.n
    return bytes_from_int(s)


class Signer:
    """
    Holds one secret key and produces partial signatures with it.

    Every secret nonce pair created or used through a Signer can produce one
    partial signature only. If a ledger is given, the public nonces are
    recorded there before they are handed out. Without one, only the last
    USED_NONCE_WINDOW nonce pairs are remembered.
    """

    def __init__(self, seckey, ledger=None):
        if len(seckey) != 32:
            raise ValueError('The secret key must be a 32-byte array.')
        if is_secret_overflow(int_from_bytes(seckey)):
            raise ScalarOverflowError('The secret key is outside of the group order.')
        self.__seckey = seckey
        self.pubkey = pubkey_gen(seckey)
        self.ledger = ledger
        self.__used = collections.OrderedDict()

    def create_nonces(self, session_id, rand=None):
        secnonces, pubnonces = nonce_gen(self.__seckey, session_id, rand)
        if self.ledger is not None:
            try:
                self.ledger.record(*pubnonces)
            except NonceAlreadyConsumed:
                secnonces.discard()
                raise
        return secnonces, pubnonces

    def sign(self, coefficient, secnonces, b, c):
        if secnonces.consumed or secnonces.pubnonces in self.__used:
            raise NonceAlreadyConsumed('This nonce pair has already produced a partial signature.')
        self.__used[secnonces.pubnonces] = None
        if len(self.__used) > USED_NONCE_WINDOW:
            self.__used.popitem(last=False)
        s = partial_sign(self.__seckey, coefficient, secnonces, b, c)
        logger.debug(f"Partial signature created for {self.pubkey.hex()}")
        return s

    def __repr__(self):
        return 'Signer(pubkey={})'.format(self.pubkey.hex())
