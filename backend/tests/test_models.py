"""
Test Suite: Points Wallet Models

- Wallet balance identity
- Ledger entry consistency and immutability
- Typed metadata parsed back from stored documents
- Commit unit version checks
"""

import pytest
from datetime import datetime, timezone
from pydantic import ValidationError
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from points_wallet.models import (
    LedgerCommit,
    LedgerEntry,
    LedgerEntryKind,
    ParticipantPurchaseMetadata,
    RedemptionMetadata,
    RefundMetadata,
    SlotPurchaseResult,
    Wallet,
    current_period,
)


def make_entry(**overrides) -> LedgerEntry:
    fields = {
        "business_id": "biz-1",
        "kind": LedgerEntryKind.EARNED_FROM_REDEMPTION,
        "amount": 100,
        "balance_before": 0,
        "balance_after": 100,
        "description": "Customer reward redemption: Free Coffee",
        "metadata": RedemptionMetadata(customer_id="cust-1", reward_title="Free Coffee"),
        "sequence": 1,
    }
    fields.update(overrides)
    return LedgerEntry(**fields)


class TestWallet:

    def test_new_wallet_is_zeroed(self):
        wallet = Wallet(business_id="biz-1")

        assert wallet.balance == 0
        assert wallet.total_earned == 0
        assert wallet.total_spent == 0
        assert wallet.version == 0

    def test_balance_must_equal_earned_minus_spent(self):
        with pytest.raises(ValidationError):
            Wallet(business_id="biz-1", balance=60, total_earned=100, total_spent=30)

    def test_negative_balance_rejected(self):
        with pytest.raises(ValidationError):
            Wallet(business_id="biz-1", balance=-10, total_earned=0, total_spent=10)


class TestLedgerEntry:

    def test_valid_credit_entry(self):
        entry = make_entry()

        assert entry.entry_id
        assert entry.metadata.customer_id == "cust-1"

    def test_balance_after_must_follow_amount(self):
        with pytest.raises(ValidationError):
            make_entry(balance_after=90)

    def test_spend_entry_must_be_negative(self):
        metadata = ParticipantPurchaseMetadata(slots_count=1, cost_per_slot=50, period="2026-03")

        with pytest.raises(ValidationError):
            make_entry(
                kind=LedgerEntryKind.SPENT_ON_PARTICIPANTS,
                amount=50,
                balance_before=0,
                balance_after=50,
                metadata=metadata
            )

    def test_metadata_kind_must_match_entry_kind(self):
        metadata = RefundMetadata(
            original_entry_id="e-1",
            original_kind=LedgerEntryKind.SPENT_ON_VISIBILITY,
            reason="duplicate"
        )

        with pytest.raises(ValidationError):
            make_entry(metadata=metadata)

    def test_entries_are_immutable(self):
        entry = make_entry()

        with pytest.raises(ValidationError):
            entry.amount = 1000

    def test_metadata_parsed_from_stored_document(self):
        doc = make_entry(
            kind=LedgerEntryKind.SPENT_ON_PARTICIPANTS,
            amount=-250,
            balance_before=300,
            balance_after=50,
            metadata=ParticipantPurchaseMetadata(slots_count=5, cost_per_slot=50, period="2026-03"),
            sequence=2
        ).model_dump()
        doc["kind"] = "SPENT_ON_PARTICIPANTS"

        entry = LedgerEntry(**doc)

        assert isinstance(entry.metadata, ParticipantPurchaseMetadata)
        assert entry.metadata.slots_count == 5


class TestLedgerCommit:

    def _commit(self, **overrides):
        wallet = Wallet(business_id="biz-1", balance=100, total_earned=100, version=1)
        fields = {"wallet": wallet, "expected_wallet_version": 0, "entry": make_entry()}
        fields.update(overrides)
        return LedgerCommit(**fields)

    def test_valid_commit(self):
        commit = self._commit()

        assert commit.entry.sequence == commit.wallet.version

    def test_version_must_advance_by_one(self):
        with pytest.raises(ValidationError):
            self._commit(expected_wallet_version=1)

    def test_entry_must_match_wallet_balance(self):
        wallet = Wallet(business_id="biz-1", balance=90, total_earned=90, version=1)

        with pytest.raises(ValidationError):
            self._commit(wallet=wallet)


class TestResultsAndPeriods:

    def test_rejected_uses_default_message(self):
        result = SlotPurchaseResult.rejected("ALLOCATION_POOL_NOT_FOUND")

        assert result.success is False
        assert result.error == "ALLOCATION_POOL_NOT_FOUND"
        assert "pool" in result.error_message

    def test_rejected_with_custom_message(self):
        result = SlotPurchaseResult.rejected("INSUFFICIENT_BALANCE", "Need 250, have 100", new_balance=100)

        assert result.error_message == "Need 250, have 100"
        assert result.new_balance == 100

    def test_current_period_is_utc_month(self):
        assert current_period(datetime(2026, 1, 31, 23, 30, tzinfo=timezone.utc)) == "2026-01"
