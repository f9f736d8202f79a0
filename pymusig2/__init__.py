"""
MuSig2 N-of-N Schnorr multi-signatures for python

Every participant holds its own key pair; together they produce one Schnorr
signature that verifies against the aggregated public key. Signing runs as a
session with three message rounds: nonce commitments, nonce reveals and
partial signatures.

Paper: https://eprint.iacr.org/2020/1261
"""
from .version import __version__

from .config import SessionConfig
from .errors import (MuSigError, InvalidKeyMaterial, CommitmentMismatch, NonceAlreadyConsumed,
                     AggregationVerificationFailed, SessionTimeout, OutOfOrderMessage,
                     DuplicateSubmission, InvalidContribution, UnknownParticipant, UnknownSession,
                     SessionAborted, DeserializationError)
from .ledger import MemoryNonceLedger, FileNonceLedger
from .messages import (Commitment, NonceReveal, PartialSig, FinalSignature, ParticipantInfo,
                       deserialize_message)
from .musig import CombinedPubkey, Signer, SecretNonces, sort_pubkeys, nonce_gen, partial_sign
from .participant import Participant
from .schnorr import schnorr_sign, schnorr_verify, schnorr_batch_verify, partial_sig_verify, partial_sig_agg
from .session import SessionCoordinator, SessionHandle, SessionParams, Phase, Event, PENDING, Aborted
from .ceremony import simulate_signing
