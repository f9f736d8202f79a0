"""
Exceptions raised by the MuSig2 protocol.

Errors that can be attributed to a signer carry its participant id. No
exception ever carries secret key or secret nonce material.
"""


class MuSigError(Exception):
    """Base exception for all protocol errors."""

    def __init__(self, message, participant_id=None):
        super().__init__(message)
        self.participant_id = participant_id


class InvalidKeyMaterial(MuSigError, ValueError):
    """A public key is degenerate, duplicated, or aggregates to the identity."""
    pass


class CommitmentMismatch(MuSigError):
    """Revealed nonce points do not hash to the earlier commitment."""
    pass


class NonceAlreadyConsumed(MuSigError):
    """A secret nonce pair was offered for a second partial signature."""
    pass


class AggregationVerificationFailed(MuSigError):
    """The summed signature does not verify against the aggregated key."""

    def __init__(self, message, culprits=()):
        culprits = tuple(culprits)
        super().__init__(message, culprits[0] if culprits else None)
        self.culprits = culprits


class SessionTimeout(MuSigError):
    """A phase deadline passed before every contribution arrived."""
    pass


class OutOfOrderMessage(MuSigError):
    """A message arrived for a phase not yet reached, or already passed."""
    pass


class DuplicateSubmission(MuSigError):
    """A participant sent a second, different message for the same round."""
    pass


class InvalidContribution(MuSigError):
    """A contribution is malformed (undecodable point, scalar out of range)."""
    pass


class UnknownParticipant(MuSigError):
    pass


class UnknownSession(MuSigError, KeyError):
    pass


class SessionAborted(MuSigError):
    """The session was aborted earlier; it accepts no further messages."""

    def __init__(self, message, reason=None, participant_id=None):
        super().__init__(message, participant_id)
        self.reason = reason


class DeserializationError(MuSigError, ValueError):
    pass
