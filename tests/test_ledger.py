"""Tests for the idempotency ledger."""

from __future__ import annotations

from mailrelay.db.models import ProcessedRepository
from mailrelay.relay.ledger import IdempotencyLedger


class TestIdempotencyLedger:
    def test_mark_then_processed(self, db):
        ledger = IdempotencyLedger(ProcessedRepository(db))
        assert not ledger.is_processed("msg-1")
        ledger.mark_processed("msg-1")
        assert ledger.is_processed("msg-1")

    def test_double_mark_keeps_single_row(self, db):
        processed = ProcessedRepository(db)
        ledger = IdempotencyLedger(processed)
        ledger.mark_processed("msg-1")
        ledger.mark_processed("msg-1")
        assert processed.count("msg-1") == 1

    def test_survives_new_instance(self, db):
        IdempotencyLedger(ProcessedRepository(db)).mark_processed("msg-1")
        assert IdempotencyLedger(ProcessedRepository(db)).is_processed("msg-1")

    def test_claim_is_exclusive_until_released(self, db):
        ledger = IdempotencyLedger(ProcessedRepository(db))
        assert ledger.claim("msg-1")
        assert not ledger.claim("msg-1")
        assert ledger.claimed() == 1

        ledger.release("msg-1")
        assert ledger.claim("msg-1")

    def test_release_unclaimed_is_noop(self, db):
        ledger = IdempotencyLedger(ProcessedRepository(db))
        ledger.release("never-claimed")
        assert ledger.claimed() == 0
