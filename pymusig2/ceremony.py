"""
Run a complete signing ceremony over in-process channels.

The coordinator coroutine collects one message per participant and round,
broadcasts the completed Round 1 and Round 2 sets, and finally the signature.
Participants run as independent coroutines that only see serialized messages.
"""

import asyncio
import logging

from .config import SessionConfig
from .errors import MuSigError, SessionTimeout
from .messages import deserialize_message
from .network import connect
from .participant import Participant
from .session import SessionCoordinator

logger = logging.getLogger(__name__)

ABORT = None


async def _collect(chans, coord, handle, round_no):
    """Receive one message per participant before the current phase's deadline."""
    state = coord.state(handle)
    clock = coord.config.clock
    for pid in state.params.participant_ids:
        try:
            data = await asyncio.wait_for(chans.receive_from(pid), max(state.deadline - clock(), 0))
        except asyncio.TimeoutError:
            raise SessionTimeout(f"no round {round_no} message from participant {pid}", pid) from None
        coord.submit(deserialize_message(data))


async def coordinator(chans, coord, handle):
    """Drive one session; returns the FinalSignature."""
    try:
        await _collect(chans, coord, handle, 1)
        chans.broadcast([c.serialize() for c in coord.commitments(handle)])
        await _collect(chans, coord, handle, 2)
        chans.broadcast([r.serialize() for r in coord.reveals(handle)])
        await _collect(chans, coord, handle, 3)
    except MuSigError as e:
        coord.cancel(handle, f"{type(e).__name__}: {e}", e.participant_id)
        chans.broadcast(ABORT)
        raise
    final = coord.get_signature(handle)
    chans.broadcast(final.serialize())
    return final


async def participant(chan, signer, params):
    """Play one participant's side; returns the FinalSignature or None on abort."""
    session_id = params.session_id
    chan.send(signer.round1(params).serialize())

    msgs = await chan.receive()
    if msgs is ABORT:
        signer.abort(session_id)
        return None
    chan.send(signer.round2(session_id, [deserialize_message(m) for m in msgs]).serialize())

    msgs = await chan.receive()
    if msgs is ABORT:
        signer.abort(session_id)
        return None
    chan.send(signer.round3(session_id, [deserialize_message(m) for m in msgs]).serialize())

    final = await chan.receive()
    if final is ABORT:
        return None
    return deserialize_message(final)


def simulate_signing(seckeys, message, participant_ids=None, config=None, ledgers=None):
    """
    Sign message with every key in seckeys (in that order) and return the
    outputs of the coordinator followed by those of each participant.
    """
    n = len(seckeys)
    participant_ids = list(participant_ids) if participant_ids is not None else list(range(1, n + 1))
    ledgers = ledgers or [None] * n
    config = config or SessionConfig()
    signers = [Participant(participant_ids[i], seckeys[i], ledgers[i]) for i in range(n)]
    coord = SessionCoordinator(config)
    handle = coord.create_session([s.info for s in signers], message)
    params = coord.params(handle)
    logger.info(f"Starting ceremony {params.session_id.hex()} with {n} participants")

    async def session():
        coord_chans, participant_chans = connect(participant_ids)
        coroutines = [coordinator(coord_chans, coord, handle)] + [
            participant(participant_chans[s.participant_id], s, params) for s in signers
        ]
        return await asyncio.gather(*coroutines)

    return asyncio.run(session())
