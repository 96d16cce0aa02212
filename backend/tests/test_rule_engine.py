"""
Test Suite: Points Rule Engine

Tests the purchase rules:
- Participant slots only after the organic quota is exhausted
- Paid slots capped at 40% of the monthly pool
- Visibility boosts and premium features expire on schedule
- Idempotency keys charge a retried request once
- Refunds
- A failed commit changes nothing
"""

import pytest
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from points_wallet.allocation import AllocationService
from points_wallet.memory_store import InMemoryLedgerStore
from points_wallet.models import LedgerEntryKind, Wallet, current_period
from points_wallet.pricing import PricingCatalog
from points_wallet.protocols import LedgerUnavailableError
from points_wallet.rule_engine import RuleEngine
from points_wallet.wallet_service import WalletService


class OfflineCommitStore(InMemoryLedgerStore):
    async def commit(self, commit):
        raise LedgerUnavailableError("primary unreachable")


async def fund(store, business_id, points):
    await WalletService(store).on_customer_redemption("cust-1", business_id, points, "Free Coffee")


async def provision(store, clock, organic_usage=60, paid_usage=0, monthly_limit=100):
    return await AllocationService(store).provision_pool(
        "biz-1",
        monthly_limit,
        organic_usage=organic_usage,
        paid_usage=paid_usage,
        period=current_period(clock())
    )


class TestParticipantSlots:

    @pytest.fixture
    def engine(self, store, clock):
        return RuleEngine(store, clock=clock)

    @pytest.mark.asyncio
    async def test_purchase_after_organic_exhausted(self, engine, store, clock):
        await fund(store, "biz-1", 300)
        await provision(store, clock, organic_usage=60, paid_usage=35)

        result = await engine.purchase_participant_slots("biz-1", 5)
        wallet = await store.get_wallet("biz-1")
        pool = await store.get_pool("biz-1", "2026-03")
        history = await store.list_entries("biz-1", 10)

        assert result.success is True
        assert result.slots_purchased == 5
        assert result.points_spent == 250
        assert result.new_balance == 50
        assert wallet.balance == 50
        assert wallet.total_spent == 250
        assert pool.paid_purchased == 5
        assert pool.remaining == 10
        assert history[0].kind == LedgerEntryKind.SPENT_ON_PARTICIPANTS
        assert history[0].amount == -250
        assert history[0].metadata.slots_count == 5
        assert history[0].metadata.cost_per_slot == 50
        assert history[0].entry_id == result.entry_id

    @pytest.mark.asyncio
    async def test_organic_not_exhausted_rejected(self, engine, store, clock):
        await fund(store, "biz-1", 1000)
        await provision(store, clock, organic_usage=50)

        result = await engine.purchase_participant_slots("biz-1", 5)
        wallet = await store.get_wallet("biz-1")
        pool = await store.get_pool("biz-1", "2026-03")

        assert result.success is False
        assert result.error == "ORGANIC_QUOTA_NOT_EXHAUSTED"
        assert "10 organic slots remaining" in result.error_message
        assert wallet.balance == 1000
        assert pool.paid_purchased == 0
        assert len(store.ledger_entries["biz-1"]) == 1

    @pytest.mark.asyncio
    async def test_missing_pool_rejected(self, engine, store):
        await fund(store, "biz-1", 1000)

        result = await engine.purchase_participant_slots("biz-1", 1)

        assert result.success is False
        assert result.error == "ALLOCATION_POOL_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_limit_exceeded_rejected(self, engine, store, clock):
        await fund(store, "biz-1", 5000)
        await provision(store, clock)

        result = await engine.purchase_participant_slots("biz-1", 41)

        assert result.success is False
        assert result.error == "PURCHASE_LIMIT_EXCEEDED"
        assert "Maximum allowed: 40" in result.error_message

    @pytest.mark.asyncio
    async def test_tranche_cannot_be_bought_twice(self, engine, store, clock):
        await fund(store, "biz-1", 5000)
        await provision(store, clock)

        first = await engine.purchase_participant_slots("biz-1", 40)
        second = await engine.purchase_participant_slots("biz-1", 1)

        assert first.success is True
        assert second.success is False
        assert second.error == "PURCHASE_LIMIT_EXCEEDED"
        assert "Maximum allowed: 0" in second.error_message
        assert "already purchased count against it" in second.error_message

    @pytest.mark.asyncio
    async def test_insufficient_balance_rejected(self, engine, store, clock):
        await fund(store, "biz-1", 100)
        await provision(store, clock)

        result = await engine.purchase_participant_slots("biz-1", 3)
        pool = await store.get_pool("biz-1", "2026-03")

        assert result.success is False
        assert result.error == "INSUFFICIENT_BALANCE"
        assert result.new_balance == 100
        assert pool.paid_purchased == 0

    @pytest.mark.asyncio
    async def test_zero_slots_rejected(self, engine):
        result = await engine.purchase_participant_slots("biz-1", 0)

        assert result.error == "INVALID_AMOUNT"

    @pytest.mark.asyncio
    async def test_price_override_applies(self, store, clock):
        engine = RuleEngine(store, catalog=PricingCatalog({"EXTRA_PARTICIPANT_SLOT": 10}), clock=clock)
        await fund(store, "biz-1", 100)
        await provision(store, clock)

        result = await engine.purchase_participant_slots("biz-1", 5)

        assert result.points_spent == 50
        assert result.new_balance == 50

    @pytest.mark.asyncio
    async def test_eligibility_and_limits(self, engine, store, clock):
        await provision(store, clock, organic_usage=60, paid_usage=10)

        limits = await engine.get_participant_limits("biz-1")
        eligibility = await engine.can_purchase_more_slots("biz-1")

        assert limits.paid_remaining == 30
        assert eligibility.can_purchase is True
        assert eligibility.max_available == 30


class TestTimedFeatures:

    @pytest.fixture
    def engine(self, store, clock):
        return RuleEngine(store, clock=clock)

    @pytest.mark.asyncio
    async def test_visibility_boost_24h(self, engine, store, clock):
        await fund(store, "biz-1", 300)
        start = clock()

        result = await engine.purchase_visibility_boost("biz-1", "24H")

        assert result.success is True
        assert result.points_spent == 200
        assert result.new_balance == 100
        assert (result.expires_at - start).total_seconds() == 24 * 3600

        clock.advance(hours=23)
        assert len(await engine.get_active_features("biz-1")) == 1

        clock.advance(hours=2)
        assert await engine.get_active_features("biz-1") == []

    @pytest.mark.asyncio
    async def test_visibility_boost_7d_cost(self, engine, store):
        await fund(store, "biz-1", 1200)

        result = await engine.purchase_visibility_boost("biz-1", "7D")

        assert result.points_spent == 1000
        assert result.new_balance == 200

    @pytest.mark.asyncio
    async def test_invalid_duration(self, engine, store):
        await fund(store, "biz-1", 1000)

        result = await engine.purchase_visibility_boost("biz-1", "3D")
        wallet = await store.get_wallet("biz-1")

        assert result.error == "INVALID_DURATION"
        assert wallet.balance == 1000

    @pytest.mark.asyncio
    async def test_boost_insufficient_balance(self, engine, store):
        await fund(store, "biz-1", 150)

        result = await engine.purchase_visibility_boost("biz-1", "24H")

        assert result.success is False
        assert result.error == "INSUFFICIENT_BALANCE"
        assert await engine.get_active_features("biz-1") == []

    @pytest.mark.asyncio
    async def test_premium_feature(self, engine, store, clock):
        await fund(store, "biz-1", 600)

        result = await engine.purchase_premium_feature("biz-1", "PREMIUM_ANALYTICS_30D")
        features = await engine.get_active_features("biz-1")
        history = await store.list_entries("biz-1", 10)

        assert result.success is True
        assert result.points_spent == 500
        assert features[0].feature == "premium_analytics"
        assert history[0].kind == LedgerEntryKind.SPENT_ON_PREMIUM

        clock.advance(days=31)
        assert await engine.get_active_features("biz-1") == []

    @pytest.mark.asyncio
    async def test_unknown_premium_feature(self, engine, store):
        await fund(store, "biz-1", 1000)

        assert (await engine.purchase_premium_feature("biz-1", "GOLD_BADGE")).error == "UNKNOWN_FEATURE"
        assert (await engine.purchase_premium_feature("biz-1", "EXTRA_PARTICIPANT_SLOT")).error == "UNKNOWN_FEATURE"

    @pytest.mark.asyncio
    async def test_wallet_summary(self, engine, store):
        await fund(store, "biz-1", 120)

        summary = await engine.get_wallet_summary("biz-1")

        assert summary.balance == 120
        assert summary.can_purchase_slots is True
        assert summary.can_purchase_boost is False


class TestIdempotency:

    @pytest.fixture
    def engine(self, store, clock):
        return RuleEngine(store, clock=clock)

    @pytest.mark.asyncio
    async def test_repeated_key_charges_once(self, engine, store):
        await fund(store, "biz-1", 500)

        first = await engine.purchase_visibility_boost("biz-1", "24H", idempotency_key="req-1")
        second = await engine.purchase_visibility_boost("biz-1", "24H", idempotency_key="req-1")
        wallet = await store.get_wallet("biz-1")

        assert first.replayed is False
        assert second.success is True
        assert second.replayed is True
        assert second.entry_id == first.entry_id
        assert wallet.balance == 300
        assert len(store.ledger_entries["biz-1"]) == 2

    @pytest.mark.asyncio
    async def test_key_reused_for_different_purchase(self, engine, store, clock):
        await fund(store, "biz-1", 1000)
        await provision(store, clock)

        await engine.purchase_visibility_boost("biz-1", "24H", idempotency_key="req-1")
        result = await engine.purchase_participant_slots("biz-1", 1, idempotency_key="req-1")

        assert result.success is False
        assert result.error == "IDEMPOTENCY_KEY_REUSED"

    @pytest.mark.asyncio
    async def test_key_reused_for_different_premium_feature(self, engine, store):
        await fund(store, "biz-1", 2000)

        first = await engine.purchase_premium_feature("biz-1", "PREMIUM_ANALYTICS_30D", idempotency_key="req-1")
        second = await engine.purchase_premium_feature("biz-1", "PRIORITY_SUPPORT_30D", idempotency_key="req-1")
        active = [a.feature for a in await engine.get_active_features("biz-1")]
        wallet = await store.get_wallet("biz-1")

        assert first.success is True
        assert second.success is False
        assert second.error == "IDEMPOTENCY_KEY_REUSED"
        assert active == ["premium_analytics"]
        assert wallet.balance == 1500

    @pytest.mark.asyncio
    async def test_key_reused_for_different_boost_duration(self, engine, store):
        await fund(store, "biz-1", 2000)

        await engine.purchase_visibility_boost("biz-1", "24H", idempotency_key="req-1")
        result = await engine.purchase_visibility_boost("biz-1", "7D", idempotency_key="req-1")
        wallet = await store.get_wallet("biz-1")

        assert result.success is False
        assert result.error == "IDEMPOTENCY_KEY_REUSED"
        assert wallet.balance == 1800

    @pytest.mark.asyncio
    async def test_key_reused_for_different_slot_count(self, engine, store, clock):
        await fund(store, "biz-1", 1000)
        await provision(store, clock)

        first = await engine.purchase_participant_slots("biz-1", 2, idempotency_key="req-1")
        second = await engine.purchase_participant_slots("biz-1", 5, idempotency_key="req-1")
        again = await engine.purchase_participant_slots("biz-1", 2, idempotency_key="req-1")
        pool = await store.get_pool("biz-1", current_period(clock()))

        assert first.success is True
        assert second.error == "IDEMPOTENCY_KEY_REUSED"
        assert again.replayed is True
        assert again.slots_purchased == 2
        assert pool.paid_purchased == 2

    @pytest.mark.asyncio
    async def test_keys_are_scoped_per_business(self, engine, store):
        await fund(store, "biz-1", 500)
        await fund(store, "biz-2", 500)

        await engine.purchase_visibility_boost("biz-1", "24H", idempotency_key="req-1")
        other = await engine.purchase_visibility_boost("biz-2", "24H", idempotency_key="req-1")

        assert other.replayed is False
        assert other.new_balance == 300


class TestRefunds:

    @pytest.fixture
    def engine(self, store, clock):
        return RuleEngine(store, clock=clock)

    @pytest.mark.asyncio
    async def test_refund_slot_purchase(self, engine, store, clock):
        await fund(store, "biz-1", 300)
        await provision(store, clock)
        purchase = await engine.purchase_participant_slots("biz-1", 5)

        result = await engine.refund_entry("biz-1", purchase.entry_id, "Customer support goodwill")
        wallet = await store.get_wallet("biz-1")
        pool = await store.get_pool("biz-1", "2026-03")
        history = await store.list_entries("biz-1", 10)

        assert result.success is True
        assert result.points_refunded == 250
        assert result.slots_returned == 5
        assert wallet.balance == 300
        assert wallet.total_earned == 550
        assert wallet.total_spent == 250
        assert pool.paid_purchased == 0
        assert pool.remaining == 40
        assert history[0].kind == LedgerEntryKind.REFUND
        assert history[0].metadata.original_entry_id == purchase.entry_id
        assert len(history) == 3

    @pytest.mark.asyncio
    async def test_refund_twice_rejected(self, engine, store):
        await fund(store, "biz-1", 300)
        purchase = await engine.purchase_visibility_boost("biz-1", "24H")

        await engine.refund_entry("biz-1", purchase.entry_id, "duplicate charge")
        again = await engine.refund_entry("biz-1", purchase.entry_id, "duplicate charge")

        assert again.success is False
        assert again.error == "ALREADY_REFUNDED"
        assert (await store.get_wallet("biz-1")).balance == 300

    @pytest.mark.asyncio
    async def test_refund_revokes_feature(self, engine, store):
        await fund(store, "biz-1", 300)
        purchase = await engine.purchase_visibility_boost("biz-1", "24H")

        await engine.refund_entry("biz-1", purchase.entry_id, "boost not shown")

        assert await engine.get_active_features("biz-1") == []
        activation = await store.get_activation("biz-1", "visibility_boost")
        assert activation.active is False
        assert activation.revoked_at is not None

    @pytest.mark.asyncio
    async def test_refund_leaves_newer_activation(self, engine, store):
        await fund(store, "biz-1", 1500)
        old = await engine.purchase_visibility_boost("biz-1", "24H")
        await engine.purchase_visibility_boost("biz-1", "7D")

        await engine.refund_entry("biz-1", old.entry_id, "replaced by 7D")
        features = await engine.get_active_features("biz-1")

        assert len(features) == 1
        assert features[0].sku == "VISIBILITY_BOOST_7D"

    @pytest.mark.asyncio
    async def test_refund_used_slots_rejected(self, engine, store, clock):
        await fund(store, "biz-1", 300)
        await provision(store, clock)
        purchase = await engine.purchase_participant_slots("biz-1", 5)
        await provision(store, clock, organic_usage=60, paid_usage=3)

        result = await engine.refund_entry("biz-1", purchase.entry_id, "too late")

        assert result.success is False
        assert result.error == "REFUND_NOT_ALLOWED"

    @pytest.mark.asyncio
    async def test_refund_in_closed_period_rejected(self, engine, store, clock):
        await fund(store, "biz-1", 300)
        await provision(store, clock)
        purchase = await engine.purchase_participant_slots("biz-1", 5)
        clock.advance(days=30)

        result = await engine.refund_entry("biz-1", purchase.entry_id, "next month")

        assert result.error == "REFUND_NOT_ALLOWED"

    @pytest.mark.asyncio
    async def test_refund_of_credit_rejected(self, engine, store):
        await fund(store, "biz-1", 300)
        credit = (await store.list_entries("biz-1", 1))[0]

        result = await engine.refund_entry("biz-1", credit.entry_id, "wrong")

        assert result.error == "REFUND_NOT_ALLOWED"

    @pytest.mark.asyncio
    async def test_refund_unknown_entry(self, engine):
        result = await engine.refund_entry("biz-1", "missing", "wrong")

        assert result.error == "ENTRY_NOT_FOUND"


class TestFailedCommit:

    @pytest.mark.asyncio
    async def test_outage_changes_nothing(self, clock):
        store = OfflineCommitStore()
        store.wallets["biz-1"] = Wallet(business_id="biz-1", balance=300, total_earned=300)
        engine = RuleEngine(store, clock=clock)
        await provision(store, clock)

        with pytest.raises(LedgerUnavailableError):
            await engine.purchase_participant_slots("biz-1", 5)

        wallet = await store.get_wallet("biz-1")
        pool = await store.get_pool("biz-1", "2026-03")
        assert wallet.balance == 300
        assert wallet.version == 0
        assert pool.paid_purchased == 0
        assert store.ledger_entries == {}
