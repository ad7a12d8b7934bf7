# tests/test_x402_replay.py
"""
Unit tests for the in-memory payment reference ledger.
"""
import threading
from unittest.mock import patch

from app.x402.replay import ReferenceLedger


class TestReferenceLedger:
    """Test claim / release semantics."""

    def test_first_claim_succeeds(self):
        ledger = ReferenceLedger(retention_seconds=60)
        assert ledger.claim(["ref:a", "sig:a"]) is True
        assert "ref:a" in ledger
        assert "sig:a" in ledger

    def test_second_claim_fails(self):
        ledger = ReferenceLedger(retention_seconds=60)
        ledger.claim(["ref:a", "sig:a"])
        assert ledger.claim(["ref:a", "sig:b"]) is False

    def test_partial_conflict_claims_nothing(self):
        """A rejected claim does not leave its other keys behind."""
        ledger = ReferenceLedger(retention_seconds=60)
        ledger.claim(["sig:a"])

        assert ledger.claim(["ref:b", "sig:a"]) is False
        assert "ref:b" not in ledger

    def test_release(self):
        ledger = ReferenceLedger(retention_seconds=60)
        ledger.claim(["ref:a"])
        ledger.release(["ref:a"])
        assert ledger.claim(["ref:a"]) is True

    def test_release_unknown_key(self):
        ledger = ReferenceLedger(retention_seconds=60)
        ledger.release(["ref:missing"])
        assert len(ledger) == 0

    def test_empty_keys_ignored(self):
        ledger = ReferenceLedger(retention_seconds=60)
        assert ledger.claim(["", None]) is True
        assert len(ledger) == 0

    def test_claims_expire(self):
        ledger = ReferenceLedger(retention_seconds=60)
        with patch("app.x402.replay.time.time", return_value=1000.0):
            ledger.claim(["ref:a"])
        with patch("app.x402.replay.time.time", return_value=1030.0):
            assert "ref:a" in ledger
        with patch("app.x402.replay.time.time", return_value=1061.0):
            assert ledger.claim(["ref:a"]) is True

    def test_clear(self):
        ledger = ReferenceLedger(retention_seconds=60)
        ledger.claim(["ref:a", "ref:b"])
        ledger.clear()
        assert len(ledger) == 0

    @patch("app.x402.replay.settings")
    def test_retention_from_settings(self, mock_settings):
        mock_settings.X402_REPLAY_RETENTION_SECONDS = 42
        assert ReferenceLedger().retention_seconds == 42

    def test_concurrent_claims_single_winner(self):
        """Only one of many threads claiming the same reference wins."""
        ledger = ReferenceLedger(retention_seconds=60)
        results = []
        barrier = threading.Barrier(20)

        def worker():
            barrier.wait()
            results.append(ledger.claim(["ref:same"]))

        threads = [threading.Thread(target=worker) for _ in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 1
        assert results.count(False) == 19
