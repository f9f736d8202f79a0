"""
Full ceremonies with every participant running as its own asyncio task.
"""
import asyncio
from dataclasses import replace

import pytest

from pymusig2 import (AggregationVerificationFailed, MemoryNonceLedger, Participant, Phase,
                      SessionConfig, SessionCoordinator, SessionTimeout, schnorr_verify)
from pymusig2.ceremony import coordinator, participant, simulate_signing
from pymusig2.messages import deserialize_message
from pymusig2.network import connect
from pymusig2.utils import bytes_from_int, curve, int_from_bytes

from conftest import MSG, fixed_seckeys


def test_simulate_signing():
    seckeys = fixed_seckeys(3)
    ledgers = [MemoryNonceLedger() for _ in seckeys]
    outputs = simulate_signing(seckeys, MSG, ledgers=ledgers)
    final = outputs[0]
    assert all(out == final for out in outputs[1:])

    signers = [Participant(i + 1, sk) for i, sk in enumerate(seckeys)]
    coord = SessionCoordinator()
    handle = coord.create_session([(s.participant_id, s.pubkey) for s in signers], MSG)
    assert final.session_id == handle.session_id
    assert schnorr_verify(MSG, coord.params(handle).agg_pubkey, final.signature)
    assert all(len(ledger) == 1 for ledger in ledgers)


async def cheating_participant(chan, signer, params):
    """Plays honestly but adds one to its partial signature."""
    chan.send(signer.round1(params).serialize())
    commitments = [deserialize_message(m) for m in await chan.receive()]
    chan.send(signer.round2(params.session_id, commitments).serialize())
    reveals = [deserialize_message(m) for m in await chan.receive()]
    sig = signer.round3(params.session_id, reveals)
    s = (int_from_bytes(sig.s) + 1) % curve.n
    chan.send(replace(sig, s=bytes_from_int(s)).serialize())
    return await chan.receive()


def run(coord, signers, make_participant):
    handle = coord.create_session([s.info for s in signers], MSG)
    params = coord.params(handle)

    async def session():
        coord_chans, participant_chans = connect(params.participant_ids)
        coord_task = asyncio.ensure_future(coordinator(coord_chans, coord, handle))
        participant_tasks = [
            asyncio.ensure_future(make_participant(i)(participant_chans[s.participant_id], s, params))
            for i, s in enumerate(signers)
        ]
        results = await asyncio.gather(*participant_tasks)
        await coord_task
        return results

    return handle, session


def test_faulty_partial_signature_is_identified():
    signers = [Participant(i + 1, sk) for i, sk in enumerate(fixed_seckeys(3))]
    coord = SessionCoordinator()
    handle, session = run(coord, signers, lambda i: cheating_participant if i == 1 else participant)

    with pytest.raises(AggregationVerificationFailed) as excinfo:
        asyncio.run(session())
    assert excinfo.value.culprits == (2,)
    assert coord.state(handle).phase is Phase.ABORTED


def test_silent_participant_times_out():
    async def silent(chan, signer, params):
        return await chan.receive()

    signers = [Participant(i + 1, sk) for i, sk in enumerate(fixed_seckeys(2))]
    coord = SessionCoordinator(SessionConfig(phase_timeout=0.5))
    handle, session = run(coord, signers, lambda i: silent if i == 1 else participant)

    with pytest.raises(SessionTimeout) as excinfo:
        asyncio.run(session())
    assert excinfo.value.participant_id == 2
    assert coord.state(handle).phase is Phase.ABORTED
    assert coord.state(handle).culprit == 2
