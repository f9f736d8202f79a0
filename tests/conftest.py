"""
Shared fixtures: fixed secret keys, participants and a coordinator with a
clock the tests can move forward.
"""

import pytest

from pymusig2 import Participant, SessionConfig, SessionCoordinator
from pymusig2.utils import hash_sha256

MSG = hash_sha256(b'Test')


def fixed_seckeys(n):
    return [hash_sha256(b'participant %d' % i) for i in range(1, n + 1)]


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def msg():
    return MSG


@pytest.fixture
def seckeys():
    return fixed_seckeys(3)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def coordinator(clock):
    return SessionCoordinator(SessionConfig(phase_timeout=30.0, clock=clock))


@pytest.fixture
def alice_bob(seckeys):
    return [Participant(1, seckeys[0]), Participant(2, seckeys[1])]


@pytest.fixture
def run_session():
    """Return a function that runs rounds 1-3 for the given participants and returns the result."""

    def run(coord, participants, message, tamper=None):
        handle = coord.create_session([(p.participant_id, p.pubkey) for p in participants], message)
        params = coord.params(handle)
        try:
            for p in participants:
                coord.submit(p.round1(params))
            for p in participants:
                coord.submit(p.round2(handle.session_id, coord.commitments(handle)))
            sigs = [p.round3(handle.session_id, coord.reveals(handle)) for p in participants]
            if tamper is not None:
                sigs = tamper(sigs)
            for sig in sigs:
                coord.submit(sig)
        finally:
            for p in participants:
                p.abort(handle.session_id)
        return handle, coord.get_signature(handle)

    return run
