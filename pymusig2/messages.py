"""
Protocol messages exchanged between participants and the coordinator.

Every message is addressed to a session id and to one attempt of that
session. Serialization is a fixed binary layout: a one-byte type tag, the
32-byte session id, the 4-byte big-endian attempt number, the 4-byte
big-endian participant id (not present in FinalSignature) and the payload.
"""

import struct
from dataclasses import dataclass

from .errors import DeserializationError
from .utils import POINT_SIZE, SCALAR_SIZE

TYPE_COMMITMENT = 1
TYPE_NONCE_REVEAL = 2
TYPE_PARTIAL_SIG = 3
TYPE_FINAL_SIGNATURE = 4

MAX_PARTICIPANT_ID = 2**32 - 1
MAX_ATTEMPT = 2**32 - 1


def _check_size(name, value, size):
    if not isinstance(value, (bytes, bytearray)) or len(value) != size:
        raise ValueError(f"{name} must be a {size}-byte array")


def _check_participant_id(participant_id):
    if not isinstance(participant_id, int) or not 0 <= participant_id <= MAX_PARTICIPANT_ID:
        raise ValueError(f"Invalid participant id: {participant_id!r}")


def _check_attempt(attempt):
    if not isinstance(attempt, int) or not 0 <= attempt <= MAX_ATTEMPT:
        raise ValueError(f"Invalid attempt number: {attempt!r}")


@dataclass(frozen=True)
class ParticipantInfo:
    """A signer as listed in a session: its id and its 33-byte public key."""
    participant_id: int
    pubkey: bytes

    def __post_init__(self):
        _check_participant_id(self.participant_id)
        _check_size("pubkey", self.pubkey, POINT_SIZE)

    def to_dict(self):
        return {"id": self.participant_id, "public_key": self.pubkey.hex()}

    @classmethod
    def from_dict(cls, data) -> "ParticipantInfo":
        try:
            return cls(data["id"], bytes.fromhex(data["public_key"]))
        except (KeyError, TypeError, ValueError) as e:
            raise DeserializationError(f"Invalid participant record: {e}") from e

    def __str__(self):
        return str(self.participant_id)


@dataclass(frozen=True)
class Commitment:
    """Round 1: binding hash of a participant's two public nonces."""
    session_id: bytes
    participant_id: int
    commitment: bytes
    attempt: int = 0

    TYPE = TYPE_COMMITMENT
    FORMAT = struct.Struct(">B32sII32s")

    def __post_init__(self):
        _check_size("session_id", self.session_id, 32)
        _check_attempt(self.attempt)
        _check_participant_id(self.participant_id)
        _check_size("commitment", self.commitment, 32)

    def serialize(self) -> bytes:
        return self.FORMAT.pack(self.TYPE, self.session_id, self.attempt, self.participant_id,
                                self.commitment)

    @classmethod
    def deserialize(cls, data: bytes) -> "Commitment":
        _, session_id, attempt, participant_id, commitment = _unpack(cls, data)
        return cls(session_id, participant_id, commitment, attempt)


@dataclass(frozen=True)
class NonceReveal:
    """Round 2: the two public nonces a participant committed to."""
    session_id: bytes
    participant_id: int
    r1: bytes
    r2: bytes
    attempt: int = 0

    TYPE = TYPE_NONCE_REVEAL
    FORMAT = struct.Struct(">B32sII33s33s")

    def __post_init__(self):
        _check_size("session_id", self.session_id, 32)
        _check_attempt(self.attempt)
        _check_participant_id(self.participant_id)
        _check_size("r1", self.r1, POINT_SIZE)
        _check_size("r2", self.r2, POINT_SIZE)

    @property
    def pubnonces(self):
        return (self.r1, self.r2)

    def serialize(self) -> bytes:
        return self.FORMAT.pack(self.TYPE, self.session_id, self.attempt, self.participant_id,
                                self.r1, self.r2)

    @classmethod
    def deserialize(cls, data: bytes) -> "NonceReveal":
        _, session_id, attempt, participant_id, r1, r2 = _unpack(cls, data)
        return cls(session_id, participant_id, r1, r2, attempt)


@dataclass(frozen=True)
class PartialSig:
    """Round 3: one participant's partial signature scalar."""
    session_id: bytes
    participant_id: int
    s: bytes
    attempt: int = 0

    TYPE = TYPE_PARTIAL_SIG
    FORMAT = struct.Struct(">B32sII32s")

    def __post_init__(self):
        _check_size("session_id", self.session_id, 32)
        _check_attempt(self.attempt)
        _check_participant_id(self.participant_id)
        _check_size("s", self.s, SCALAR_SIZE)

    def serialize(self) -> bytes:
        return self.FORMAT.pack(self.TYPE, self.session_id, self.attempt, self.participant_id, self.s)

    @classmethod
    def deserialize(cls, data: bytes) -> "PartialSig":
        _, session_id, attempt, participant_id, s = _unpack(cls, data)
        return cls(session_id, participant_id, s, attempt)


@dataclass(frozen=True)
class FinalSignature:
    """Output: the aggregated signature (R, s)."""
    session_id: bytes
    r: bytes
    s: bytes
    attempt: int = 0

    TYPE = TYPE_FINAL_SIGNATURE
    FORMAT = struct.Struct(">B32sI33s32s")

    def __post_init__(self):
        _check_size("session_id", self.session_id, 32)
        _check_attempt(self.attempt)
        _check_size("r", self.r, POINT_SIZE)
        _check_size("s", self.s, SCALAR_SIZE)

    @property
    def signature(self) -> bytes:
        """The 65-byte R || s encoding accepted by schnorr_verify."""
        return self.r + self.s

    def serialize(self) -> bytes:
        return self.FORMAT.pack(self.TYPE, self.session_id, self.attempt, self.r, self.s)

    @classmethod
    def deserialize(cls, data: bytes) -> "FinalSignature":
        _, session_id, attempt, r, s = _unpack(cls, data)
        return cls(session_id, r, s, attempt)


MESSAGE_TYPES = {
    cls.TYPE: cls for cls in (Commitment, NonceReveal, PartialSig, FinalSignature)
}


def _unpack(cls, data):
    if len(data) != cls.FORMAT.size:
        raise DeserializationError(
            f"{cls.__name__} must be {cls.FORMAT.size} bytes, got {len(data)}"
        )
    fields = cls.FORMAT.unpack(data)
    if fields[0] != cls.TYPE:
        raise DeserializationError(f"Unexpected message type {fields[0]} for {cls.__name__}")
    return fields


def deserialize_message(data: bytes):
    """Decode any protocol message by its type tag."""
    if not data:
        raise DeserializationError("Empty message")
    cls = MESSAGE_TYPES.get(data[0])
    if cls is None:
        raise DeserializationError(f"Unknown message type {data[0]}")
    return cls.deserialize(bytes(data))
