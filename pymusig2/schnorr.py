#!/usr/bin/env python3

from .utils import *

SIGNATURE_SIZE = POINT_SIZE + SCALAR_SIZE


def _challenge(R, pubkey, msg):
    return hash_to_scalar(TAG_CHALLENGE, R + pubkey + msg)


def schnorr_sign(msg, seckey0, aux_rand):
    """Sign a message with a secret key. The result has the same shape as a MuSig signature."""

    if len(aux_rand) != 32:
        raise ValueError('aux_rand must be 32 bytes.')
    seckey = int_from_bytes(seckey0)
    if is_secret_overflow(seckey):
        raise ScalarOverflowError('The secret key must be an integer in the range 1..n-1.')
    P = point_mul(curve.G, seckey)
    t = xor_bytes(bytes_from_int(seckey), tagged_hash(TAG_AUX, aux_rand))
    k = hash_to_scalar(TAG_NONCE, t + bytes_from_point(P) + msg)
    if k == 0:
        raise RuntimeError('Failure. This happens only with negligible probability.')
    R = bytes_from_point(point_mul(curve.G, k))
    e = _challenge(R, bytes_from_point(P), msg)
    return R + bytes_from_int((k + e * seckey) % curve.n)


def schnorr_verify(msg, pubkey, sig):
    """Verify s * G == R + c * X for a signature R || s."""

    if len(pubkey) != POINT_SIZE:
        raise ValueError('The public key must be a 33-byte array.')
    if len(sig) != SIGNATURE_SIZE:
        raise ValueError('The signature must be a 65-byte array.')
    P = point_from_bytes(pubkey)
    R = point_from_bytes(sig[0:POINT_SIZE])
    if (P is None or R is None):
        return False
    s = int_from_bytes(sig[POINT_SIZE:])
    if s >= curve.n:
        return False
    e = _challenge(sig[0:POINT_SIZE], pubkey, msg)
    return point_mul(curve.G, s) == point_add(R, point_mul(P, e))


def schnorr_batch_verify(msgs, pubkeys, sigs):
    """Verify an array of signatures at once with random weights."""

    sig_num = len(msgs)
    if (sig_num != len(pubkeys) or sig_num != len(sigs)):
        raise ValueError('The count of Values must be equally.')
    s_sum = 0
    RP = None
    seed = hash_sha256(b''.join(sigs) + b''.join(msgs) + b''.join(pubkeys))
    rand_coefficient = [1]

    for i in range(sig_num):
        pubkey = pubkeys[i]
        msg = msgs[i]
        sig = sigs[i]
        if (i % 2 == 1):
            rand_coefficient = chacha20_prng(seed, i // 2)

        if len(pubkey) != POINT_SIZE:
            raise ValueError('The public key must be a 33-byte array.')
        if len(sig) != SIGNATURE_SIZE:
            raise ValueError('The signature must be a 65-byte array.')

        P = point_from_bytes(pubkey)
        R = point_from_bytes(sig[0:POINT_SIZE])
        if (P is None or R is None):
            return False
        s = int_from_bytes(sig[POINT_SIZE:])
        if s >= curve.n:
            return False
        e = _challenge(sig[0:POINT_SIZE], pubkey, msg)

        a = rand_coefficient[i % 2]
        s_sum = (s_sum + (a * s)) % curve.n
        eP = point_mul(P, (a * e) % curve.n)
        aR = point_mul(R, a)
        RP = point_add(point_add(aR, eP), RP)
    return point_mul(curve.G, s_sum) == RP


def partial_sig_verify(sig, R_i, pubkey, coefficient, challenge):
    """Check s_i * G == R_i + c * a_i * X_i for one partial signature."""

    if len(sig) != SCALAR_SIZE:
        raise ValueError('The signature must be a 32-byte array.')
    s = int_from_bytes(sig)
    if s >= curve.n:
        return False
    P = point_from_bytes(pubkey)
    R = point_from_bytes(R_i)
    if (P is None or R is None):
        return False
    e = (challenge * coefficient) % curve.n
    return point_mul(curve.G, s) == point_add(R, point_mul(P, e))


def partial_sig_agg(sigs, R):
    """
    Compute the sum of all signature from an array of partial signatures.

    s_sum = s[0] + s[1] + ...  + s[n]
    """

    if len(R) != POINT_SIZE:
        raise ValueError('The aggregated nonce must be a 33-byte array.')
    s_sum = 0
    for i in range(len(sigs)):
        if len(sigs[i]) != SCALAR_SIZE:
            raise ValueError('The signature must be a 32-byte array. index: {}'.format(i))
        s = int_from_bytes(sigs[i])
        if s >= curve.n:
            raise ScalarOverflowError('The signature is outside of the group order. index: {}'.format(i))
        s_sum = (s_sum + s) % curve.n
    return R + bytes_from_int(s_sum)
