"""
Signing session state machine and coordinator.

A session moves through

    CREATED -> COMMITMENTS_COLLECTED -> NONCES_REVEALED
            -> PARTIAL_SIGNATURES_COLLECTED -> SIGNED

and can be ABORTED from any non-terminal phase. SessionState is an immutable
value; the apply_* functions return the next state plus an Event, or raise a
MuSigError. The SessionCoordinator keeps the current state of each session and
records an abort before a fatal error reaches the caller. Restarting a
session keeps its id and opens the next attempt; messages addressed to an
earlier attempt are rejected.

Nothing in this module ever sees a secret key or a secret nonce.
"""

import logging
import struct
import threading
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, NamedTuple, Optional, Tuple

from .config import SessionConfig
from .errors import (
    AggregationVerificationFailed,
    CommitmentMismatch,
    DuplicateSubmission,
    InvalidContribution,
    InvalidKeyMaterial,
    MuSigError,
    OutOfOrderMessage,
    SessionAborted,
    SessionTimeout,
    UnknownParticipant,
    UnknownSession,
)
from .messages import (
    Commitment,
    FinalSignature,
    NonceReveal,
    PartialSig,
    ParticipantInfo,
    _check_attempt,
    _check_participant_id,
    _check_size,
)
from .musig import CombinedPubkey, aggregate_nonces, challenge_hash, nonce_commitment
from .schnorr import partial_sig_agg, partial_sig_verify, schnorr_verify
from .utils import (
    POINT_SIZE,
    SCALAR_SIZE,
    TAG_SESSION,
    curve,
    int_from_bytes,
    point_from_bytes,
    tagged_hash,
)

logger = logging.getLogger(__name__)


class Phase(Enum):
    CREATED = "created"
    COMMITMENTS_COLLECTED = "commitments_collected"
    NONCES_REVEALED = "nonces_revealed"
    PARTIAL_SIGNATURES_COLLECTED = "partial_signatures_collected"
    SIGNED = "signed"
    ABORTED = "aborted"

    @property
    def is_terminal(self):
        return self in (Phase.SIGNED, Phase.ABORTED)


class Event(Enum):
    RECORDED = "recorded"
    DUPLICATE_IGNORED = "duplicate_ignored"
    PHASE_ADVANCED = "phase_advanced"
    SIGNED = "signed"


# Errors that end the session. Everything else only rejects the message.
FATAL_ERRORS = (
    AggregationVerificationFailed,
    CommitmentMismatch,
    DuplicateSubmission,
    InvalidContribution,
    SessionTimeout,
)


def compute_session_id(pubkeys, msg):
    """Compute H(n || X_1 || ... || X_n || m)."""

    return tagged_hash(TAG_SESSION, struct.pack(">I", len(pubkeys)) + b"".join(pubkeys) + msg)


class SessionParams:
    """
    The public inputs every party of a session agrees on: the ordered
    participant ids, their public keys (same order), the message and the
    attempt number. A retry of an aborted session keeps the session id and
    gets the next attempt number.
    """

    def __init__(self, participant_ids, pubkeys, message, attempt=0):
        participant_ids = tuple(participant_ids)
        pubkeys = tuple(bytes(pk) for pk in pubkeys)
        if len(participant_ids) != len(pubkeys):
            raise ValueError("Every participant needs exactly one public key.")
        for pid in participant_ids:
            _check_participant_id(pid)
        if len(set(participant_ids)) != len(participant_ids):
            raise ValueError("Participant ids must be unique.")
        if not isinstance(message, (bytes, bytearray)):
            raise TypeError("The message must be bytes.")
        _check_attempt(attempt)

        self.participant_ids = participant_ids
        self.pubkeys = pubkeys
        self.message = bytes(message)
        self.attempt = attempt
        self.key_agg = CombinedPubkey(pubkeys)
        self.session_id = compute_session_id(pubkeys, self.message)
        self._index = {pid: i for i, pid in enumerate(participant_ids)}

    @classmethod
    def from_participants(cls, participants, message, attempt=0):
        """Build from an ordered sequence of ParticipantInfo or (participant_id, pubkey) pairs."""
        pairs = [(p.participant_id, p.pubkey) if isinstance(p, ParticipantInfo) else tuple(p)
                 for p in participants]
        return cls([pid for pid, _ in pairs], [pk for _, pk in pairs], message, attempt)

    @property
    def agg_pubkey(self):
        return self.key_agg.get_pubkey()

    @property
    def handle(self):
        return SessionHandle(self.session_id, self.attempt)

    @property
    def participants(self):
        return tuple(ParticipantInfo(pid, pk) for pid, pk in zip(self.participant_ids, self.pubkeys))

    def __len__(self):
        return len(self.participant_ids)

    def __contains__(self, participant_id):
        return participant_id in self._index

    def index_of(self, participant_id):
        try:
            return self._index[participant_id]
        except KeyError:
            raise UnknownParticipant(
                f"Participant {participant_id} is not part of the session.", participant_id
            ) from None

    def pubkey_of(self, participant_id):
        return self.pubkeys[self.index_of(participant_id)]

    def coefficient_of(self, participant_id):
        return self.key_agg.coefficient(self.index_of(participant_id))

    def __eq__(self, other):
        if not isinstance(other, SessionParams):
            return NotImplemented
        return (self.participant_ids, self.pubkeys, self.message, self.attempt) == (
            other.participant_ids, other.pubkeys, other.message, other.attempt)

    def __hash__(self):
        return hash((self.session_id, self.attempt))

    def __repr__(self):
        return (f"SessionParams(session_id={self.session_id.hex()}, attempt={self.attempt}, "
                f"participants={len(self)})")


@dataclass(frozen=True)
class SessionState:
    """Public state of one signing session. Never mutated; see the apply_* functions."""
    params: SessionParams
    phase: Phase
    deadline: float
    commitments: Dict[int, bytes] = field(default_factory=dict)
    reveals: Dict[int, Tuple[bytes, bytes]] = field(default_factory=dict)
    partial_sigs: Dict[int, bytes] = field(default_factory=dict)
    binding: Optional[int] = None
    final_nonce: Optional[bytes] = None
    effective_nonces: Tuple[bytes, ...] = ()
    challenge: Optional[int] = None
    signature: Optional[FinalSignature] = None
    abort_reason: Optional[str] = None
    culprit: Optional[int] = None

    @property
    def session_id(self):
        return self.params.session_id

    @property
    def handle(self):
        return self.params.handle

    @property
    def missing(self):
        """Participant ids whose contribution for the current phase is outstanding."""
        collected = {
            Phase.CREATED: self.commitments,
            Phase.COMMITMENTS_COLLECTED: self.reveals,
            Phase.NONCES_REVEALED: self.partial_sigs,
        }.get(self.phase)
        if collected is None:
            return ()
        return tuple(pid for pid in self.params.participant_ids if pid not in collected)


def new_session(params, now, config):
    return SessionState(params=params, phase=Phase.CREATED, deadline=now + config.phase_timeout)


def _check_accepting(state, participant_id, now):
    if state.phase is Phase.ABORTED:
        raise SessionAborted(
            f"Session {state.session_id.hex()} was aborted: {state.abort_reason}",
            reason=state.abort_reason, participant_id=state.culprit)
    state.params.index_of(participant_id)
    if not state.phase.is_terminal and now > state.deadline:
        # the sender of a late message is blamed only if nobody else is missing
        others = [pid for pid in state.missing if pid != participant_id]
        culprit = others[0] if others else participant_id
        raise SessionTimeout(
            f"Phase {state.phase.value} timed out; missing {list(state.missing)}", culprit)


def _check_round(state, round_phase, collected, participant_id, value, round_name):
    """
    True if value is a re-delivery of what was already recorded.

    A message for a round that is not open is rejected without ending the
    session; a different second message inside the open round ends it.
    """
    existing = collected.get(participant_id)
    if existing is not None and existing == value:
        return True
    if state.phase is not round_phase:
        raise OutOfOrderMessage(
            f"A {round_name} is not accepted in phase {state.phase.value}.", participant_id)
    if existing is not None:
        raise DuplicateSubmission(
            f"Participant {participant_id} sent a conflicting {round_name} message.", participant_id)
    return False


def _payload(participant_id, name, value, size):
    try:
        _check_size(name, value, size)
    except ValueError as e:
        raise InvalidContribution(f"Participant {participant_id} sent a malformed {name}: {e}",
                                  participant_id) from None
    return bytes(value)


def apply_commitment(state, participant_id, commitment, now, config):
    """Record a Round 1 nonce commitment."""
    _check_accepting(state, participant_id, now)
    if _check_round(state, Phase.CREATED, state.commitments, participant_id, commitment,
                    "commitment"):
        return state, Event.DUPLICATE_IGNORED
    commitment = _payload(participant_id, "commitment", commitment, 32)

    commitments = {**state.commitments, participant_id: commitment}
    if len(commitments) < len(state.params):
        return replace(state, commitments=commitments), Event.RECORDED
    return replace(state, commitments=commitments, phase=Phase.COMMITMENTS_COLLECTED,
                   deadline=now + config.phase_timeout), Event.PHASE_ADVANCED


def apply_nonce_reveal(state, participant_id, r1, r2, now, config):
    """Record a Round 2 nonce reveal after checking it against the stored commitment."""
    _check_accepting(state, participant_id, now)
    if _check_round(state, Phase.COMMITMENTS_COLLECTED, state.reveals, participant_id, (r1, r2),
                    "nonce reveal"):
        return state, Event.DUPLICATE_IGNORED
    pubnonces = (_payload(participant_id, "R1", r1, POINT_SIZE),
                 _payload(participant_id, "R2", r2, POINT_SIZE))

    expected = state.commitments[participant_id]
    if nonce_commitment(state.session_id, participant_id, *pubnonces) != expected:
        raise CommitmentMismatch(
            f"Revealed nonces of participant {participant_id} do not match the commitment.",
            participant_id)
    if point_from_bytes(pubnonces[0]) is None or point_from_bytes(pubnonces[1]) is None:
        raise InvalidContribution(
            f"Participant {participant_id} revealed an invalid nonce point.", participant_id)

    reveals = {**state.reveals, participant_id: pubnonces}
    if len(reveals) < len(state.params):
        return replace(state, reveals=reveals), Event.RECORDED

    params = state.params
    ordered = [reveals[pid] for pid in params.participant_ids]
    try:
        b, R, effective = aggregate_nonces(params.agg_pubkey, params.message, ordered)
    except ValueError as e:
        raise InvalidContribution(f"Nonce aggregation failed: {e}") from e
    c = challenge_hash(R, params.agg_pubkey, params.message)
    return replace(state, reveals=reveals, phase=Phase.NONCES_REVEALED, binding=b, final_nonce=R,
                   effective_nonces=tuple(effective), challenge=c,
                   deadline=now + config.phase_timeout), Event.PHASE_ADVANCED


def apply_partial_sig(state, participant_id, s, now, config):
    """Record a Round 3 partial signature. It is only checked as part of the aggregate."""
    _check_accepting(state, participant_id, now)
    if _check_round(state, Phase.NONCES_REVEALED, state.partial_sigs, participant_id, s,
                    "partial signature"):
        return state, Event.DUPLICATE_IGNORED
    s = _payload(participant_id, "partial signature", s, SCALAR_SIZE)
    if int_from_bytes(s) >= curve.n:
        raise InvalidContribution(
            f"Partial signature of participant {participant_id} is outside of the group order.",
            participant_id)

    partial_sigs = {**state.partial_sigs, participant_id: s}
    if len(partial_sigs) < len(state.params):
        return replace(state, partial_sigs=partial_sigs), Event.RECORDED
    return replace(state, partial_sigs=partial_sigs,
                   phase=Phase.PARTIAL_SIGNATURES_COLLECTED), Event.PHASE_ADVANCED



def identify_culprits(state):
    """Return the participant ids whose partial signature fails s_i * G == R_i + c * a_i * X_i."""
    params = state.params
    culprits = []
    for i, pid in enumerate(params.participant_ids):
        ok = partial_sig_verify(state.partial_sigs[pid], state.effective_nonces[i],
                                params.pubkeys[i], params.key_agg.coefficient(i), state.challenge)
        if not ok:
            culprits.append(pid)
    return culprits


def finalize(state, config):
    """Sum the partial signatures and verify the result before exposing it."""
    if state.phase is not Phase.PARTIAL_SIGNATURES_COLLECTED:
        raise OutOfOrderMessage(f"Cannot aggregate in phase {state.phase.value}.")
    params = state.params
    sigs = [state.partial_sigs[pid] for pid in params.participant_ids]
    sig = partial_sig_agg(sigs, state.final_nonce)
    if not schnorr_verify(params.message, params.agg_pubkey, sig):
        culprits = identify_culprits(state) if config.identify_culprits else []
        raise AggregationVerificationFailed(
            f"Aggregated signature does not verify; faulty participants: {culprits or 'unknown'}",
            culprits)
    final = FinalSignature(state.session_id, sig[:33], sig[33:], params.attempt)
    return replace(state, phase=Phase.SIGNED, signature=final), Event.SIGNED


def abort(state, reason, culprit=None):
    if state.phase.is_terminal:
        return state
    return replace(state, phase=Phase.ABORTED, abort_reason=reason, culprit=culprit)


def expire(state, now):
    """Abort the session if the deadline of its current phase has passed."""
    if state.phase.is_terminal or now <= state.deadline:
        return state
    missing = state.missing
    return abort(state, f"SessionTimeout: phase {state.phase.value} timed out; missing {list(missing)}",
                 missing[0] if missing else None)


class SessionHandle(NamedTuple):
    session_id: bytes
    attempt: int = 0


class Pending:
    def __repr__(self):
        return "PENDING"


PENDING = Pending()


class Aborted(NamedTuple):
    reason: str
    culprit: Optional[int] = None


class SessionCoordinator:
    """
    Collects the public messages of every participant and drives each session
    through its phases. Holds no secrets.
    """

    def __init__(self, config: Optional[SessionConfig] = None):
        self.config = config or SessionConfig()
        self.logger = logging.getLogger(__name__)
        self._sessions: Dict[bytes, SessionState] = {}
        self._lock = threading.RLock()

    def create_session(self, participants, message) -> SessionHandle:
        """
        Start a session for an ordered list of ParticipantInfo or
        (participant_id, pubkey) pairs. Restarting a finished or aborted
        session opens its next attempt.
        """
        participants = list(participants)
        if len(participants) > self.config.max_participants:
            raise InvalidKeyMaterial(
                f"Too many participants: {len(participants)} > {self.config.max_participants}")
        params = SessionParams.from_participants(participants, message)
        with self._lock:
            existing = self._sessions.get(params.session_id)
            if existing is not None:
                if not existing.phase.is_terminal:
                    raise OutOfOrderMessage(
                        f"Session {params.session_id.hex()} is still in progress ({existing.phase.value}).")
                params = SessionParams.from_participants(participants, message,
                                                         existing.params.attempt + 1)
            self._sessions[params.session_id] = new_session(params, self.config.clock(), self.config)
        self.logger.info(
            f"Created session {params.session_id.hex()} (attempt {params.attempt}) "
            f"with {len(params)} participants")
        return params.handle

    def state(self, handle) -> SessionState:
        with self._lock:
            return self._get(handle)

    def params(self, handle) -> SessionParams:
        return self.state(handle).params

    def _get(self, handle):
        try:
            state = self._sessions[handle.session_id]
        except KeyError:
            raise UnknownSession(f"Unknown session {handle.session_id.hex()}") from None
        if state.params.attempt != handle.attempt:
            raise UnknownSession(
                f"Attempt {handle.attempt} of session {handle.session_id.hex()} is not current; "
                f"current attempt is {state.params.attempt}")
        return state

    def _transition(self, handle, apply, participant_id, *args):
        with self._lock:
            try:
                state = self._get(handle)
            except UnknownSession as e:
                if handle.session_id not in self._sessions:
                    raise
                self.logger.warning(f"Rejected stale message from participant {participant_id}: {e}")
                raise OutOfOrderMessage(str(e), participant_id) from None
            current = state
            try:
                current, event = apply(state, participant_id, *args, self.config.clock(), self.config)
                if current.phase is Phase.PARTIAL_SIGNATURES_COLLECTED:
                    current, event = finalize(current, self.config)
            except FATAL_ERRORS as e:
                self._sessions[handle.session_id] = abort(
                    current, f"{type(e).__name__}: {e}", e.participant_id)
                self.logger.warning(f"Session {handle.session_id.hex()} aborted: {e}")
                raise
            except MuSigError as e:
                self.logger.warning(f"Rejected message for session {handle.session_id.hex()}: {e}")
                raise
            self._sessions[handle.session_id] = current

        if current.phase is not state.phase:
            self.logger.info(
                f"Session {handle.session_id.hex()}: {state.phase.value} -> {current.phase.value}")
        else:
            self.logger.debug(f"Session {handle.session_id.hex()}: {event.value}")
        return event

    def submit_round1(self, handle, participant_id, commitment) -> Event:
        return self._transition(handle, apply_commitment, participant_id, commitment)

    def submit_round2(self, handle, participant_id, r1, r2) -> Event:
        return self._transition(handle, apply_nonce_reveal, participant_id, r1, r2)

    def submit_round3(self, handle, participant_id, s) -> Event:
        return self._transition(handle, apply_partial_sig, participant_id, s)

    def submit(self, message) -> Event:
        """Route a protocol message to its session by session id and attempt."""
        handle = SessionHandle(message.session_id, message.attempt)
        if isinstance(message, Commitment):
            return self.submit_round1(handle, message.participant_id, message.commitment)
        if isinstance(message, NonceReveal):
            return self.submit_round2(handle, message.participant_id, message.r1, message.r2)
        if isinstance(message, PartialSig):
            return self.submit_round3(handle, message.participant_id, message.s)
        raise TypeError(f"Cannot submit {type(message).__name__} to a coordinator")

    def get_signature(self, handle):
        """Return the FinalSignature, PENDING, or Aborted(reason, culprit)."""
        state = self.state(handle)
        if state.phase is Phase.SIGNED:
            return state.signature
        if state.phase is Phase.ABORTED:
            return Aborted(state.abort_reason, state.culprit)
        return PENDING

    def commitments(self, handle):
        """The Round 1 broadcast set, available once every commitment is in."""
        state = self.state(handle)
        if state.phase in (Phase.CREATED, Phase.ABORTED):
            raise OutOfOrderMessage(f"Commitments are not available in phase {state.phase.value}.")
        return [Commitment(state.session_id, pid, state.commitments[pid], state.params.attempt)
                for pid in state.params.participant_ids]

    def reveals(self, handle):
        """The Round 2 broadcast set, available once every nonce is revealed and checked."""
        state = self.state(handle)
        if state.phase in (Phase.CREATED, Phase.COMMITMENTS_COLLECTED, Phase.ABORTED):
            raise OutOfOrderMessage(f"Nonce reveals are not available in phase {state.phase.value}.")
        return [NonceReveal(state.session_id, pid, *state.reveals[pid], state.params.attempt)
                for pid in state.params.participant_ids]

    def cancel(self, handle, reason="cancelled", culprit=None):
        with self._lock:
            state = self._get(handle)
            self._sessions[handle.session_id] = abort(state, reason, culprit)
        if not state.phase.is_terminal:
            self.logger.warning(f"Session {handle.session_id.hex()} cancelled: {reason}")

    def check_timeouts(self, now=None):
        """Abort every session whose phase deadline has passed. Returns their handles."""
        now = self.config.clock() if now is None else now
        expired = []
        with self._lock:
            for session_id, state in list(self._sessions.items()):
                new_state = expire(state, now)
                if new_state is not state:
                    self._sessions[session_id] = new_state
                    expired.append(state.handle)
                    self.logger.warning(f"Session {session_id.hex()} aborted: {new_state.abort_reason}")
        return expired

    def discard(self, handle):
        with self._lock:
            state = self._sessions.get(handle.session_id)
            if state is not None and state.params.attempt == handle.attempt:
                del self._sessions[handle.session_id]

    def __len__(self):
        return len(self._sessions)
