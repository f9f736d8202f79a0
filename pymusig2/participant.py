"""
The signer side of a session.

A Participant owns one secret key and the secret nonces of the sessions it is
part of. It only ever hands out the three public messages (Commitment,
NonceReveal, PartialSig) and checks what the coordinator relays before it
signs.
"""

import logging
import os

from .errors import (
    CommitmentMismatch,
    InvalidContribution,
    InvalidKeyMaterial,
    OutOfOrderMessage,
    UnknownSession,
)
from .messages import Commitment, NonceReveal, ParticipantInfo, PartialSig
from .musig import Signer, aggregate_nonces, challenge_hash, nonce_commitment


class _SignerSession:
    def __init__(self, params, secnonces, pubnonces, commitment):
        self.params = params
        self.secnonces = secnonces
        self.pubnonces = pubnonces
        self.commitment = commitment
        self.commitments = None


class Participant:
    def __init__(self, participant_id, seckey, ledger=None, rand_func=os.urandom):
        self.participant_id = participant_id
        self.signer = Signer(seckey, ledger)
        self.rand_func = rand_func
        self.logger = logging.getLogger(__name__)
        self._sessions = {}

    @property
    def pubkey(self):
        return self.signer.pubkey

    @property
    def info(self) -> ParticipantInfo:
        return ParticipantInfo(self.participant_id, self.pubkey)

    def _get(self, session_id):
        try:
            return self._sessions[session_id]
        except KeyError:
            raise UnknownSession(f"No active session {session_id.hex()}") from None

    def round1(self, params) -> Commitment:
        """Create fresh nonces for the session and commit to them."""
        session_id = params.session_id
        existing = self._sessions.get(session_id)
        if existing is not None:
            if existing.params.attempt >= params.attempt:
                raise OutOfOrderMessage(
                    f"Session {session_id.hex()} already has nonces; abort it before starting over.",
                    self.participant_id)
            self.abort(session_id)
        if params.pubkey_of(self.participant_id) != self.pubkey:
            raise InvalidKeyMaterial(
                f"Session lists a different public key for participant {self.participant_id}.",
                self.participant_id)

        secnonces, pubnonces = self.signer.create_nonces(session_id, self.rand_func(32))
        commitment = nonce_commitment(session_id, self.participant_id, *pubnonces)
        self._sessions[session_id] = _SignerSession(params, secnonces, pubnonces, commitment)
        self.logger.debug(f"Participant {self.participant_id} committed in session {session_id.hex()}")
        return Commitment(session_id, self.participant_id, commitment, params.attempt)

    def _relayed(self, session, messages):
        return [m for m in messages
                if m.session_id == session.params.session_id and m.attempt == session.params.attempt]

    def round2(self, session_id, commitments) -> NonceReveal:
        """Reveal the public nonces once the full commitment set is fixed."""
        session = self._get(session_id)
        received = {c.participant_id: c.commitment for c in self._relayed(session, commitments)}
        missing = [pid for pid in session.params.participant_ids if pid not in received]
        if missing:
            raise OutOfOrderMessage(
                f"Cannot reveal nonces before all commitments are known; missing {missing}.",
                self.participant_id)
        if received[self.participant_id] != session.commitment:
            raise CommitmentMismatch(
                "The relayed commitment set does not contain our own commitment.",
                self.participant_id)
        session.commitments = received
        return NonceReveal(session_id, self.participant_id, *session.pubnonces, session.params.attempt)

    def round3(self, session_id, reveals) -> PartialSig:
        """
        Check every reveal against its commitment and produce the partial
        signature. The session is forgotten afterwards.
        """
        session = self._get(session_id)
        if session.commitments is None:
            raise OutOfOrderMessage("Nonces must be revealed before signing.", self.participant_id)
        params = session.params
        received = {r.participant_id: r.pubnonces for r in self._relayed(session, reveals)}
        missing = [pid for pid in params.participant_ids if pid not in received]
        if missing:
            raise OutOfOrderMessage(f"Cannot sign before all nonces are revealed; missing {missing}.",
                                    self.participant_id)
        for pid in params.participant_ids:
            if nonce_commitment(session_id, pid, *received[pid]) != session.commitments[pid]:
                self.abort(session_id)
                raise CommitmentMismatch(
                    f"Revealed nonces of participant {pid} do not match the commitment.", pid)
        if received[self.participant_id] != session.pubnonces:
            self.abort(session_id)
            raise CommitmentMismatch("The relayed nonce set does not contain our own nonces.",
                                     self.participant_id)

        ordered = [received[pid] for pid in params.participant_ids]
        try:
            b, R, _ = aggregate_nonces(params.agg_pubkey, params.message, ordered)
        except ValueError as e:
            self.abort(session_id)
            raise InvalidContribution(f"Nonce aggregation failed: {e}") from e
        c = challenge_hash(R, params.agg_pubkey, params.message)
        try:
            s = self.signer.sign(params.coefficient_of(self.participant_id), session.secnonces, b, c)
        finally:
            session.secnonces.discard()
            del self._sessions[session_id]
        self.logger.debug(f"Participant {self.participant_id} signed in session {session_id.hex()}")
        return PartialSig(session_id, self.participant_id, s, params.attempt)

    def abort(self, session_id):
        """Forget the session and destroy its secret nonces. A retry needs round1 again."""
        session = self._sessions.pop(session_id, None)
        if session is not None:
            session.secnonces.discard()
            self.logger.info(f"Participant {self.participant_id} discarded session {session_id.hex()}")

    def __repr__(self):
        return f"Participant(id={self.participant_id}, pubkey={self.pubkey.hex()})"
