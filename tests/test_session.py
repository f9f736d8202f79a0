"""
Session state machine and coordinator.
"""
from dataclasses import replace

import pytest

from pymusig2 import (PENDING, Aborted, AggregationVerificationFailed, CommitmentMismatch,
                      DuplicateSubmission, Event, InvalidContribution, OutOfOrderMessage, Participant,
                      ParticipantInfo, Phase, SessionAborted, SessionConfig, SessionCoordinator,
                      SessionParams, SessionTimeout, UnknownParticipant, UnknownSession,
                      schnorr_verify)
from pymusig2.musig import nonce_commitment, nonce_gen
from pymusig2.session import SessionHandle, apply_commitment, compute_session_id, new_session
from pymusig2.utils import bytes_from_int, curve, int_from_bytes

from conftest import fixed_seckeys


def start(coord, participants, msg):
    handle = coord.create_session([(p.participant_id, p.pubkey) for p in participants], msg)
    return handle, coord.params(handle)


def add_one(sig):
    s = (int_from_bytes(sig.s) + 1) % curve.n
    return replace(sig, s=bytes_from_int(s))


def test_two_party_signature_verifies(coordinator, alice_bob, msg, run_session):
    handle, final = run_session(coordinator, alice_bob, msg)
    params = coordinator.params(handle)
    assert coordinator.state(handle).phase is Phase.SIGNED
    assert final.session_id == handle.session_id
    assert schnorr_verify(msg, params.agg_pubkey, final.signature)


def test_fresh_nonces_give_new_signature(clock, alice_bob, msg, run_session):
    first_coord = SessionCoordinator(SessionConfig(clock=clock))
    second_coord = SessionCoordinator(SessionConfig(clock=clock))
    handle1, sig1 = run_session(first_coord, alice_bob, msg)
    handle2, sig2 = run_session(second_coord, alice_bob, msg)
    params1, params2 = first_coord.params(handle1), second_coord.params(handle2)
    assert params1.key_agg.coefficients == params2.key_agg.coefficients
    assert params1.agg_pubkey == params2.agg_pubkey
    assert sig1.signature != sig2.signature
    assert schnorr_verify(msg, params2.agg_pubkey, sig1.signature)
    assert schnorr_verify(msg, params2.agg_pubkey, sig2.signature)


def test_five_party_signature(coordinator, msg, run_session):
    participants = [Participant(10 + i, sk) for i, sk in enumerate(fixed_seckeys(5))]
    handle, final = run_session(coordinator, participants, msg)
    assert schnorr_verify(msg, coordinator.params(handle).agg_pubkey, final.signature)


def test_phases_advance_only_when_complete(coordinator, alice_bob, msg):
    alice, bob = alice_bob
    handle, params = start(coordinator, alice_bob, msg)
    assert coordinator.submit(alice.round1(params)) is Event.RECORDED
    assert coordinator.state(handle).phase is Phase.CREATED
    assert coordinator.state(handle).missing == (2,)
    assert coordinator.get_signature(handle) is PENDING
    with pytest.raises(OutOfOrderMessage):
        coordinator.commitments(handle)
    assert coordinator.submit(bob.round1(params)) is Event.PHASE_ADVANCED
    assert coordinator.state(handle).phase is Phase.COMMITMENTS_COLLECTED

    commitments = coordinator.commitments(handle)
    assert coordinator.submit(alice.round2(handle.session_id, commitments)) is Event.RECORDED
    with pytest.raises(OutOfOrderMessage):
        coordinator.reveals(handle)
    assert coordinator.submit(bob.round2(handle.session_id, commitments)) is Event.PHASE_ADVANCED
    state = coordinator.state(handle)
    assert state.phase is Phase.NONCES_REVEALED
    assert state.final_nonce is not None and state.challenge is not None

    reveals = coordinator.reveals(handle)
    assert coordinator.submit(alice.round3(handle.session_id, reveals)) is Event.RECORDED
    assert coordinator.submit(bob.round3(handle.session_id, reveals)) is Event.SIGNED
    assert coordinator.state(handle).phase is Phase.SIGNED


def test_transitions_do_not_mutate(alice_bob, msg):
    params = SessionParams.from_participants([(p.participant_id, p.pubkey) for p in alice_bob], msg)
    config = SessionConfig()
    state = new_session(params, 0.0, config)
    commitment = alice_bob[0].round1(params)
    new_state, event = apply_commitment(state, 1, commitment.commitment, 1.0, config)
    assert event is Event.RECORDED
    assert state.commitments == {}
    assert new_state.commitments == {1: commitment.commitment}


def test_reveal_before_own_commitment_is_rejected(coordinator, alice_bob, msg):
    alice, bob = alice_bob
    handle, params = start(coordinator, alice_bob, msg)
    coordinator.submit(alice.round1(params))
    _, (R1, R2) = nonce_gen(fixed_seckeys(2)[1], handle.session_id)
    with pytest.raises(OutOfOrderMessage):
        coordinator.submit_round2(handle, bob.participant_id, R1, R2)
    # a rejected early message does not abort the session
    assert coordinator.state(handle).phase is Phase.CREATED


def test_reveal_before_all_commitments_is_rejected(coordinator, alice_bob, msg):
    alice, bob = alice_bob
    handle, params = start(coordinator, alice_bob, msg)
    _, pubnonces = nonce_gen(fixed_seckeys(1)[0], handle.session_id)
    coordinator.submit_round1(handle, alice.participant_id,
                              nonce_commitment(handle.session_id, alice.participant_id, *pubnonces))
    with pytest.raises(OutOfOrderMessage):
        coordinator.submit_round2(handle, alice.participant_id, *pubnonces)


def test_late_commitment_is_rejected(coordinator, alice_bob, msg):
    alice, bob = alice_bob
    handle, params = start(coordinator, alice_bob, msg)
    for p in alice_bob:
        coordinator.submit(p.round1(params))
    with pytest.raises(OutOfOrderMessage):
        coordinator.submit_round1(handle, alice.participant_id, bytes(32))
    assert coordinator.state(handle).phase is Phase.COMMITMENTS_COLLECTED


def test_early_partial_signature_is_rejected(coordinator, alice_bob, msg):
    handle, params = start(coordinator, alice_bob, msg)
    with pytest.raises(OutOfOrderMessage):
        coordinator.submit_round3(handle, 1, bytes(32))


def test_commitment_mismatch_aborts(coordinator, alice_bob, msg):
    alice, bob = alice_bob
    handle, params = start(coordinator, alice_bob, msg)
    coordinator.submit(alice.round1(params))
    _, committed = nonce_gen(fixed_seckeys(2)[1], handle.session_id)
    _, revealed = nonce_gen(fixed_seckeys(2)[1], handle.session_id)
    coordinator.submit_round1(handle, bob.participant_id,
                              nonce_commitment(handle.session_id, bob.participant_id, *committed))
    coordinator.submit(alice.round2(handle.session_id, coordinator.commitments(handle)))
    with pytest.raises(CommitmentMismatch) as excinfo:
        coordinator.submit_round2(handle, bob.participant_id, *revealed)
    assert excinfo.value.participant_id == bob.participant_id

    result = coordinator.get_signature(handle)
    assert isinstance(result, Aborted)
    assert result.culprit == bob.participant_id
    assert result.reason.startswith('CommitmentMismatch')
    with pytest.raises(SessionAborted):
        coordinator.submit_round2(handle, bob.participant_id, *committed)


def test_tampered_partial_signature_fails(coordinator, alice_bob, msg, run_session):
    def tamper(sigs):
        return [sigs[0], add_one(sigs[1])]

    with pytest.raises(AggregationVerificationFailed) as excinfo:
        run_session(coordinator, alice_bob, msg, tamper)
    assert excinfo.value.culprits == (2,)
    handle = SessionHandle(compute_session_id([p.pubkey for p in alice_bob], msg))
    state = coordinator.state(handle)
    assert state.phase is Phase.ABORTED
    assert state.culprit == 2
    assert state.signature is None


def test_tampered_signature_without_identification(clock, alice_bob, msg, run_session):
    coord = SessionCoordinator(SessionConfig(clock=clock, identify_culprits=False))

    def tamper(sigs):
        return [add_one(sigs[0]), sigs[1]]

    with pytest.raises(AggregationVerificationFailed) as excinfo:
        run_session(coord, alice_bob, msg, tamper)
    assert excinfo.value.culprits == ()
    assert excinfo.value.participant_id is None


def test_identical_duplicate_is_ignored(coordinator, alice_bob, msg):
    alice, bob = alice_bob
    handle, params = start(coordinator, alice_bob, msg)
    commitment = alice.round1(params)
    assert coordinator.submit(commitment) is Event.RECORDED
    assert coordinator.submit(commitment) is Event.DUPLICATE_IGNORED
    coordinator.submit(bob.round1(params))
    # re-delivery after the round closed is still harmless
    assert coordinator.submit(commitment) is Event.DUPLICATE_IGNORED


def test_conflicting_duplicate_aborts(coordinator, alice_bob, msg):
    alice, _ = alice_bob
    handle, params = start(coordinator, alice_bob, msg)
    commitment = alice.round1(params)
    coordinator.submit(commitment)
    with pytest.raises(DuplicateSubmission):
        coordinator.submit_round1(handle, alice.participant_id, bytes(32))
    state = coordinator.state(handle)
    assert state.phase is Phase.ABORTED
    assert state.commitments[alice.participant_id] == commitment.commitment


def test_unknown_participant_and_session(coordinator, alice_bob, msg):
    handle, _ = start(coordinator, alice_bob, msg)
    with pytest.raises(UnknownParticipant):
        coordinator.submit_round1(handle, 99, bytes(32))
    with pytest.raises(UnknownSession):
        coordinator.submit_round1(SessionHandle(bytes(32)), 1, bytes(32))
    assert coordinator.state(handle).phase is Phase.CREATED


def test_phase_timeout(coordinator, clock, alice_bob, msg):
    alice, bob = alice_bob
    handle, params = start(coordinator, alice_bob, msg)
    coordinator.submit(alice.round1(params))
    clock.advance(31)
    with pytest.raises(SessionTimeout) as excinfo:
        coordinator.submit(bob.round1(params))
    assert excinfo.value.participant_id == bob.participant_id
    assert isinstance(coordinator.get_signature(handle), Aborted)


def test_check_timeouts(coordinator, clock, alice_bob, msg):
    handle, params = start(coordinator, alice_bob, msg)
    clock.advance(10)
    assert coordinator.check_timeouts() == []
    coordinator.submit(alice_bob[0].round1(params))
    assert coordinator.check_timeouts(clock() + 25) == [handle]
    result = coordinator.get_signature(handle)
    assert result.reason.startswith('SessionTimeout')
    assert result.culprit == 2


def test_deadline_renews_per_phase(coordinator, clock, alice_bob, msg):
    handle, params = start(coordinator, alice_bob, msg)
    for p in alice_bob:
        clock.advance(10)
        coordinator.submit(p.round1(params))
    clock.advance(20)
    assert coordinator.check_timeouts() == []
    assert coordinator.state(handle).phase is Phase.COMMITMENTS_COLLECTED


def test_retry_after_abort_uses_fresh_nonces(coordinator, alice_bob, msg, run_session):
    alice, bob = alice_bob
    handle, params = start(coordinator, alice_bob, msg)
    first = alice.round1(params)
    coordinator.submit(first)
    coordinator.cancel(handle, 'operator cancelled')
    assert coordinator.get_signature(handle) == Aborted('operator cancelled', None)

    for p in alice_bob:
        p.abort(handle.session_id)
    retry, final = run_session(coordinator, alice_bob, msg)
    assert retry.session_id == handle.session_id
    assert retry.attempt == handle.attempt + 1
    assert coordinator.state(retry).commitments[alice.participant_id] != first.commitment
    assert schnorr_verify(msg, params.agg_pubkey, final.signature)


def test_cannot_restart_live_session(coordinator, alice_bob, msg):
    start(coordinator, alice_bob, msg)
    with pytest.raises(OutOfOrderMessage):
        start(coordinator, alice_bob, msg)


def test_session_id_binds_keys_and_message(alice_bob, msg):
    pubkeys = [p.pubkey for p in alice_bob]
    sid = compute_session_id(pubkeys, msg)
    assert sid == SessionParams([1, 2], pubkeys, msg).session_id
    assert sid != compute_session_id(pubkeys[::-1], msg)
    assert sid != compute_session_id(pubkeys, msg + b'.')


def test_session_params_validation(alice_bob, msg):
    pubkeys = [p.pubkey for p in alice_bob]
    with pytest.raises(ValueError):
        SessionParams([1, 1], pubkeys, msg)
    with pytest.raises(ValueError):
        SessionParams([1], pubkeys, msg)
    with pytest.raises(ValueError):
        SessionParams([-1, 2], pubkeys, msg)


def test_too_many_participants(clock, alice_bob, msg):
    coord = SessionCoordinator(SessionConfig(clock=clock, max_participants=2))
    extra = Participant(3, fixed_seckeys(3)[2])
    with pytest.raises(ValueError):
        start(coord, alice_bob + [extra], msg)


def test_config_validation():
    with pytest.raises(ValueError):
        SessionConfig(phase_timeout=0)
    with pytest.raises(ValueError):
        SessionConfig(max_participants=1)


def test_late_reveal_keeps_session_running(coordinator, alice_bob, msg):
    alice, bob = alice_bob
    handle, params = start(coordinator, alice_bob, msg)
    for p in alice_bob:
        coordinator.submit(p.round1(params))
    reveals = [p.round2(handle.session_id, coordinator.commitments(handle)) for p in alice_bob]
    for reveal in reveals:
        coordinator.submit(reveal)
    _, other = nonce_gen(fixed_seckeys(1)[0], handle.session_id)
    with pytest.raises(OutOfOrderMessage):
        coordinator.submit_round2(handle, alice.participant_id, *other)
    assert coordinator.submit(reveals[0]) is Event.DUPLICATE_IGNORED
    assert coordinator.state(handle).phase is Phase.NONCES_REVEALED


def test_stale_commitment_cannot_enter_retry(coordinator, alice_bob, msg):
    alice, bob = alice_bob
    handle, params = start(coordinator, alice_bob, msg)
    stale = alice.round1(params)
    coordinator.submit(stale)
    coordinator.cancel(handle, 'network partition')
    alice.abort(handle.session_id)

    retry, retry_params = start(coordinator, alice_bob, msg)
    with pytest.raises(OutOfOrderMessage) as excinfo:
        coordinator.submit(stale)
    assert excinfo.value.participant_id == alice.participant_id
    with pytest.raises(OutOfOrderMessage):
        coordinator.submit_round1(handle, alice.participant_id, stale.commitment)
    assert coordinator.state(retry).commitments == {}

    assert coordinator.submit(alice.round1(retry_params)) is Event.RECORDED
    state = coordinator.state(retry)
    assert state.phase is Phase.CREATED
    assert state.culprit is None


def test_earlier_attempt_is_not_readable(coordinator, alice_bob, msg):
    handle, _ = start(coordinator, alice_bob, msg)
    coordinator.cancel(handle)
    retry, _ = start(coordinator, alice_bob, msg)
    with pytest.raises(UnknownSession):
        coordinator.state(handle)
    coordinator.discard(handle)
    assert coordinator.state(retry).phase is Phase.CREATED


def test_malformed_partial_signature_aborts(coordinator, alice_bob, msg):
    alice, bob = alice_bob
    handle, params = start(coordinator, alice_bob, msg)
    for p in alice_bob:
        coordinator.submit(p.round1(params))
    for p in alice_bob:
        coordinator.submit(p.round2(handle.session_id, coordinator.commitments(handle)))
    reveals = coordinator.reveals(handle)
    sig = alice.round3(handle.session_id, reveals)

    with pytest.raises(InvalidContribution) as excinfo:
        coordinator.submit_round3(handle, alice.participant_id, b'\x00' + sig.s)
    assert excinfo.value.participant_id == alice.participant_id
    result = coordinator.get_signature(handle)
    assert isinstance(result, Aborted)
    assert result.culprit == alice.participant_id
    with pytest.raises(SessionAborted):
        coordinator.submit(bob.round3(handle.session_id, reveals))


def test_malformed_commitment_and_nonces_abort(clock, alice_bob, msg):
    alice, bob = alice_bob
    coord = SessionCoordinator(SessionConfig(clock=clock))
    handle, params = start(coord, alice_bob, msg)
    with pytest.raises(InvalidContribution):
        coord.submit_round1(handle, bob.participant_id, bytes(31))
    assert coord.state(handle).culprit == bob.participant_id
    assert coord.state(handle).commitments == {}

    coord.discard(handle)
    for p in alice_bob:
        p.abort(handle.session_id)
    handle, params = start(coord, alice_bob, msg)
    for p in alice_bob:
        coord.submit(p.round1(params))
    reveal = bob.round2(handle.session_id, coord.commitments(handle))
    with pytest.raises(InvalidContribution):
        coord.submit_round2(handle, bob.participant_id, reveal.r1[1:], reveal.r2)
    assert coord.state(handle).phase is Phase.ABORTED


def test_timeout_blames_the_silent_participant(coordinator, clock, alice_bob, msg):
    alice, bob = alice_bob
    handle, params = start(coordinator, alice_bob, msg)
    clock.advance(31)
    with pytest.raises(SessionTimeout) as excinfo:
        coordinator.submit(alice.round1(params))
    assert excinfo.value.participant_id == bob.participant_id
    assert coordinator.state(handle).culprit == bob.participant_id


def test_create_session_from_participant_info(coordinator, alice_bob, msg):
    handle = coordinator.create_session([p.info for p in alice_bob], msg)
    params = coordinator.params(handle)
    assert params.participants == (ParticipantInfo(1, alice_bob[0].pubkey),
                                   ParticipantInfo(2, alice_bob[1].pubkey))
    assert params.handle == handle
