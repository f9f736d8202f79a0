"""
Append-only records of every public nonce pair a signer has handed out.

A signer consults the ledger before publishing fresh nonces so that an
accidental repeat (a broken RNG, a restored snapshot, a restart) is caught
before the nonces can reach a second partial signature.
"""

import logging
import os
import threading

from .errors import NonceAlreadyConsumed
from .utils import TAG_LEDGER, tagged_hash


def nonce_fingerprint(R1, R2):
    return tagged_hash(TAG_LEDGER, R1 + R2)


class NonceLedger:
    """Base class. Subclasses store fingerprints in _seen and persist them in _append."""

    def __init__(self):
        self.logger = logging.getLogger(__name__)
        self._seen = set()
        self._lock = threading.Lock()

    def __contains__(self, pubnonces):
        R1, R2 = pubnonces
        return nonce_fingerprint(R1, R2) in self._seen

    def __len__(self):
        return len(self._seen)

    def record(self, R1, R2):
        fingerprint = nonce_fingerprint(R1, R2)
        with self._lock:
            if fingerprint in self._seen:
                self.logger.error(f"Nonce reuse detected: {fingerprint.hex()}")
                raise NonceAlreadyConsumed("This nonce pair was already handed out.")
            self._append(fingerprint)
            self._seen.add(fingerprint)

    def _append(self, fingerprint):
        raise NotImplementedError


class MemoryNonceLedger(NonceLedger):
    """Ledger that lives as long as the process."""

    def _append(self, fingerprint):
        pass


class FileNonceLedger(NonceLedger):
    """Ledger backed by a text file with one hex fingerprint per line."""

    def __init__(self, path):
        super().__init__()
        self.path = path
        if os.path.exists(path):
            with open(path, "r") as f:
                for line in f:
                    line = line.strip()
                    if line:
                        self._seen.add(bytes.fromhex(line))
            self.logger.info(f"Loaded {len(self._seen)} nonce fingerprints from {path}")

    def _append(self, fingerprint):
        with open(self.path, "a") as f:
            f.write(fingerprint.hex() + "\n")
            f.flush()
            os.fsync(f.fileno())
