# app/x402/replay.py
"""
In-memory replay protection for x402 payments.

Each settled payment claims its ``reference`` and its fee payer signature.
A second submission reusing either is rejected before it reaches the
broadcast step. Claims expire after a retention window, comfortably longer
than a Solana blockhash stays valid, after which the network itself rejects
the stale transaction.

The ledger lives in process memory only: it is lost on restart and not shared
between workers.
"""
import logging
import threading
import time
from typing import Dict, Iterable, Optional

from app.core.config import settings

logger = logging.getLogger(__name__)


class ReferenceLedger:
    """
    Thread-safe set of recently claimed payment keys with expiry.
    """

    def __init__(self, retention_seconds: Optional[int] = None):
        """
        Args:
            retention_seconds: How long a claim is kept. If None, uses config.
        """
        self._retention_seconds = retention_seconds
        self._claims: Dict[str, float] = {}
        self._lock = threading.Lock()

    @property
    def retention_seconds(self) -> int:
        if self._retention_seconds is not None:
            return self._retention_seconds
        return settings.X402_REPLAY_RETENTION_SECONDS

    def _expire(self, now: float) -> None:
        cutoff = now - self.retention_seconds
        expired = [key for key, claimed_at in self._claims.items() if claimed_at <= cutoff]
        for key in expired:
            del self._claims[key]
        if expired:
            logger.debug(f"Expired {len(expired)} payment reference claims")

    def claim(self, keys: Iterable[str]) -> bool:
        """
        Atomically claim all ``keys``.

        Returns:
            True if none of the keys was claimed before (all are now claimed),
            False if any key is already claimed (nothing is claimed)
        """
        keys = [key for key in keys if key]
        now = time.time()
        with self._lock:
            self._expire(now)
            if any(key in self._claims for key in keys):
                return False
            for key in keys:
                self._claims[key] = now
            return True

    def release(self, keys: Iterable[str]) -> None:
        """Drop claims, e.g. after a broadcast that never reached the network."""
        with self._lock:
            for key in keys:
                self._claims.pop(key, None)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            self._expire(time.time())
            return key in self._claims

    def __len__(self) -> int:
        with self._lock:
            return len(self._claims)

    def clear(self) -> None:
        """Remove every claim (useful for testing)."""
        with self._lock:
            self._claims.clear()
