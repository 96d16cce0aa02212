"""
Points Rule Engine - Feature purchases paid with points

Enforces:
- 60/40 rule: paid participant slots unlock only after the organic share
  of the monthly pool is used up
- Paid slot purchases never exceed the paid share of the pool
- Prices come from the static pricing catalog
- Debit, ledger entry, pool update and feature activation commit as ONE
  unit, so a rejected or failed purchase changes nothing
- Idempotency keys: a retried purchase request is charged once

IMPORTANT: This engine is the ONLY writer of paid_purchased on allocation
pools and the only place points are spent.
"""

import logging
from datetime import datetime
from typing import Callable, List, Optional

from .allocation import AllocationService, calculate_participant_limits, slot_eligibility
from .models import (
    ActivationRevocation,
    BoostPurchaseResult,
    FeatureActivation,
    FeaturePurchaseResult,
    LedgerCommit,
    LedgerEntryKind,
    LedgerResult,
    ParticipantLimits,
    ParticipantPurchaseMetadata,
    PremiumPurchaseMetadata,
    PurchaseRecord,
    RefundMetadata,
    RefundResult,
    SlotEligibility,
    SlotPurchaseResult,
    SPEND_KINDS,
    VisibilityPurchaseMetadata,
    Wallet,
    WalletSummary,
    current_period,
    utc_now,
)
from .pricing import FEATURE_KEYS, PREMIUM_SKUS, FeatureSku, PricingCatalog
from .protocols import LedgerStore
from .wallet_service import WalletService, apply_credit, apply_debit

logger = logging.getLogger(__name__)


class RuleEngine:
    """
    Purchase orchestration over wallet, ledger and allocation pool.

    Usage:
        engine = RuleEngine(store)
        result = await engine.purchase_participant_slots(business_id, 5)
        if not result.success:
            show_inline_message(result.error_message)
    """

    def __init__(
        self,
        store: LedgerStore,
        catalog: Optional[PricingCatalog] = None,
        wallet_service: Optional[WalletService] = None,
        allocation_service: Optional[AllocationService] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.store = store
        self.catalog = catalog or PricingCatalog()
        self.wallet_service = wallet_service or WalletService(store)
        self.allocation = allocation_service or AllocationService(store)
        self._clock = clock or utc_now

    # ==================== PARTICIPANT SLOTS ====================

    async def purchase_participant_slots(
        self,
        business_id: str,
        count: int,
        idempotency_key: Optional[str] = None
    ) -> SlotPurchaseResult:
        """
        Purchase extra participant slots with points.

        ENFORCES: 60% organic, 40% paid rule
        """
        if count <= 0:
            return SlotPurchaseResult.rejected("INVALID_AMOUNT")

        cost_per_slot = self.catalog.cost(FeatureSku.EXTRA_PARTICIPANT_SLOT)
        total_cost = count * cost_per_slot
        period = current_period(self._clock())
        request = {"sku": FeatureSku.EXTRA_PARTICIPANT_SLOT.value, "count": count}

        async def build(wallet: Wallet):
            replay = await self._replay(
                business_id, idempotency_key, LedgerEntryKind.SPENT_ON_PARTICIPANTS, request, SlotPurchaseResult
            )
            if replay is not None:
                return None, replay

            pool = await self.store.get_pool(business_id, period)
            if pool is None:
                return None, SlotPurchaseResult.rejected("ALLOCATION_POOL_NOT_FOUND")

            limits = calculate_participant_limits(pool, self.allocation.split)

            # RULE ENFORCEMENT: Can only purchase if organic pool is depleted
            if not limits.paid_unlocked:
                return None, SlotPurchaseResult.rejected(
                    "ORGANIC_QUOTA_NOT_EXHAUSTED",
                    f"You must use all {limits.organic_limit} organic slots before purchasing "
                    f"extra slots. You have {limits.organic_remaining} organic slots remaining.",
                    new_balance=wallet.balance
                )

            if count > limits.purchasable_slots:
                return None, SlotPurchaseResult.rejected(
                    "PURCHASE_LIMIT_EXCEEDED",
                    f"Cannot purchase {count} slots. Maximum allowed: {limits.purchasable_slots}. "
                    f"Your paid share is {limits.paid_limit} slots this month (40% of your monthly pool) "
                    f"and slots already purchased count against it.",
                    new_balance=wallet.balance
                )

            if wallet.balance < total_cost:
                return None, SlotPurchaseResult.rejected(
                    "INSUFFICIENT_BALANCE",
                    f"Insufficient balance. Need {total_cost}, have {wallet.balance}",
                    new_balance=wallet.balance
                )

            now = self._clock()
            metadata = ParticipantPurchaseMetadata(
                slots_count=count,
                cost_per_slot=cost_per_slot,
                period=period,
                idempotency_key=idempotency_key
            )
            updated, entry = apply_debit(
                wallet, total_cost, f"Purchased {count} extra participant slots", metadata, now
            )
            new_pool = pool.model_copy(update={
                "paid_purchased": pool.paid_purchased + count,
                "remaining": pool.remaining + count,
                "version": pool.version + 1,
                "updated_at": now,
            })
            result = SlotPurchaseResult(
                success=True,
                slots_purchased=count,
                points_spent=total_cost,
                new_balance=updated.balance,
                entry_id=entry.entry_id
            )
            commit = LedgerCommit(
                wallet=updated,
                expected_wallet_version=wallet.version,
                entry=entry,
                pool=new_pool,
                expected_pool_version=pool.version,
                purchase=self._purchase_record(business_id, idempotency_key, request, entry, result)
            )
            return commit, result

        result = await self.wallet_service.run_atomic(business_id, build)
        self._log_outcome(business_id, f"{count} participant slots", result)
        return result

    async def get_participant_limits(self, business_id: str) -> Optional[ParticipantLimits]:
        return await self.allocation.get_limits(business_id, current_period(self._clock()))

    async def can_purchase_more_slots(self, business_id: str) -> SlotEligibility:
        return slot_eligibility(await self.get_participant_limits(business_id))

    # ==================== VISIBILITY / PREMIUM ====================

    async def purchase_visibility_boost(
        self,
        business_id: str,
        duration: str,
        idempotency_key: Optional[str] = None
    ) -> BoostPurchaseResult:
        """Purchase a 24H or 7D visibility boost. No quota interaction."""
        sku = self.catalog.visibility_sku(duration)
        if sku is None:
            return BoostPurchaseResult.rejected("INVALID_DURATION")

        def make_metadata(expires_at: datetime):
            return VisibilityPurchaseMetadata(
                duration=duration,
                expires_at=expires_at,
                idempotency_key=idempotency_key
            )

        def make_result(entry, expires_at, cost, new_balance):
            return BoostPurchaseResult(
                success=True,
                duration=duration,
                expires_at=expires_at,
                points_spent=cost,
                new_balance=new_balance,
                entry_id=entry.entry_id
            )

        result = await self._purchase_timed_feature(
            business_id,
            sku,
            LedgerEntryKind.SPENT_ON_VISIBILITY,
            f"Purchased visibility boost ({duration})",
            make_metadata,
            make_result,
            BoostPurchaseResult,
            idempotency_key
        )
        self._log_outcome(business_id, f"{duration} visibility boost", result)
        return result

    async def purchase_premium_feature(
        self,
        business_id: str,
        sku: str,
        idempotency_key: Optional[str] = None
    ) -> FeaturePurchaseResult:
        """Purchase premium analytics, featured placement or priority support."""
        try:
            feature_sku = FeatureSku(sku)
        except ValueError:
            return FeaturePurchaseResult.rejected("UNKNOWN_FEATURE")
        if feature_sku not in PREMIUM_SKUS:
            return FeaturePurchaseResult.rejected("UNKNOWN_FEATURE")

        def make_metadata(expires_at: datetime):
            return PremiumPurchaseMetadata(
                feature=feature_sku.value,
                expires_at=expires_at,
                idempotency_key=idempotency_key
            )

        def make_result(entry, expires_at, cost, new_balance):
            return FeaturePurchaseResult(
                success=True,
                sku=feature_sku.value,
                expires_at=expires_at,
                points_spent=cost,
                new_balance=new_balance,
                entry_id=entry.entry_id
            )

        result = await self._purchase_timed_feature(
            business_id,
            feature_sku,
            LedgerEntryKind.SPENT_ON_PREMIUM,
            f"Purchased premium feature ({feature_sku.value})",
            make_metadata,
            make_result,
            FeaturePurchaseResult,
            idempotency_key
        )
        self._log_outcome(business_id, feature_sku.value, result)
        return result

    async def _purchase_timed_feature(
        self,
        business_id: str,
        sku: FeatureSku,
        kind: LedgerEntryKind,
        description: str,
        make_metadata,
        make_result,
        result_cls,
        idempotency_key: Optional[str]
    ):
        cost = self.catalog.cost(sku)
        duration = self.catalog.duration(sku)
        request = {"sku": sku.value}

        async def build(wallet: Wallet):
            replay = await self._replay(business_id, idempotency_key, kind, request, result_cls)
            if replay is not None:
                return None, replay

            if wallet.balance < cost:
                return None, result_cls.rejected(
                    "INSUFFICIENT_BALANCE",
                    f"Insufficient balance. Need {cost}, have {wallet.balance}",
                    new_balance=wallet.balance
                )

            now = self._clock()
            expires_at = now + duration
            updated, entry = apply_debit(wallet, cost, description, make_metadata(expires_at), now)
            activation = FeatureActivation(
                business_id=business_id,
                feature=FEATURE_KEYS[sku],
                sku=sku.value,
                active=True,
                expires_at=expires_at,
                purchased_at=now,
                entry_id=entry.entry_id
            )
            result = make_result(entry, expires_at, cost, updated.balance)
            commit = LedgerCommit(
                wallet=updated,
                expected_wallet_version=wallet.version,
                entry=entry,
                activation=activation,
                purchase=self._purchase_record(business_id, idempotency_key, request, entry, result)
            )
            return commit, result

        return await self.wallet_service.run_atomic(business_id, build)

    async def get_active_features(self, business_id: str) -> List[FeatureActivation]:
        """Feature activations that are active and not yet expired."""
        now = self._clock()
        activations = await self.store.list_activations(business_id)
        return [a for a in activations if a.is_live(now)]

    # ==================== REFUNDS ====================

    async def refund_entry(self, business_id: str, entry_id: str, reason: str) -> RefundResult:
        """
        Refund a spending entry by issuing a new REFUND entry.

        Participant refunds also hand the slots back to the pool and are only
        allowed while those slots are unused in the purchase's own period.
        Feature refunds switch off the activation the entry paid for.
        """
        async def build(wallet: Wallet):
            original = await self.store.get_entry(business_id, entry_id)
            if original is None:
                return None, RefundResult.rejected("ENTRY_NOT_FOUND")

            if original.kind not in SPEND_KINDS:
                return None, RefundResult.rejected(
                    "REFUND_NOT_ALLOWED", "Only spending entries can be refunded."
                )

            if await self.store.find_refund(business_id, entry_id) is not None:
                return None, RefundResult.rejected("ALREADY_REFUNDED")

            now = self._clock()
            points = -original.amount
            slots = 0
            pool = None
            new_pool = None
            revocation = None

            if original.kind == LedgerEntryKind.SPENT_ON_PARTICIPANTS:
                slots = original.metadata.slots_count
                period = original.metadata.period
                if period == current_period(now):
                    pool = await self.store.get_pool(business_id, period)
                unused = (pool.paid_purchased - pool.paid_usage) if pool else 0
                if pool is None or unused < slots or pool.remaining < slots:
                    return None, RefundResult.rejected(
                        "REFUND_NOT_ALLOWED",
                        "Purchased slots were already used or their period has closed."
                    )
                new_pool = pool.model_copy(update={
                    "paid_purchased": pool.paid_purchased - slots,
                    "remaining": pool.remaining - slots,
                    "version": pool.version + 1,
                    "updated_at": now,
                })
            else:
                if original.kind == LedgerEntryKind.SPENT_ON_VISIBILITY:
                    feature = FEATURE_KEYS[FeatureSku.VISIBILITY_BOOST_24H]
                else:
                    feature = FEATURE_KEYS[FeatureSku(original.metadata.feature)]
                revocation = ActivationRevocation(
                    business_id=business_id,
                    feature=feature,
                    entry_id=original.entry_id,
                    revoked_at=now
                )

            metadata = RefundMetadata(
                original_entry_id=original.entry_id,
                original_kind=original.kind,
                reason=reason,
                slots_returned=slots
            )
            updated, entry = apply_credit(wallet, points, f"Refund: {original.description}", metadata, now)
            commit = LedgerCommit(
                wallet=updated,
                expected_wallet_version=wallet.version,
                entry=entry,
                pool=new_pool,
                expected_pool_version=pool.version if new_pool is not None else None,
                revocation=revocation
            )
            return commit, RefundResult(
                success=True,
                points_refunded=points,
                slots_returned=slots,
                new_balance=updated.balance,
                entry_id=entry.entry_id
            )

        result = await self.wallet_service.run_atomic(business_id, build)
        self._log_outcome(business_id, f"refund of entry {entry_id}", result)
        return result

    # ==================== SUMMARY ====================

    async def get_wallet_summary(self, business_id: str) -> WalletSummary:
        wallet = await self.wallet_service.get_or_create_wallet(business_id)
        return WalletSummary(
            business_id=business_id,
            balance=wallet.balance,
            total_earned=wallet.total_earned,
            total_spent=wallet.total_spent,
            can_purchase_slots=wallet.balance >= self.catalog.cost(FeatureSku.EXTRA_PARTICIPANT_SLOT),
            can_purchase_boost=wallet.balance >= self.catalog.cost(FeatureSku.VISIBILITY_BOOST_24H)
        )

    # ==================== HELPERS ====================

    async def _replay(
        self,
        business_id: str,
        idempotency_key: Optional[str],
        kind: LedgerEntryKind,
        request: dict,
        result_cls
    ):
        """
        Stored result for a purchase already made with this key, if any.

        The key only replays the identical purchase. Reusing it for another
        kind, sku or slot count is rejected with IDEMPOTENCY_KEY_REUSED.
        """
        if not idempotency_key:
            return None

        record = await self.store.find_purchase(business_id, idempotency_key)
        if record is None:
            return None

        if record.kind != kind or record.request != request:
            logger.warning(
                f"Idempotency key {idempotency_key} for {business_id} reused: "
                f"stored {record.request}, got {request}"
            )
            return result_cls.rejected("IDEMPOTENCY_KEY_REUSED")

        logger.info(f"Replaying purchase {idempotency_key} for {business_id}")
        return result_cls(**{**record.result, "replayed": True})

    @staticmethod
    def _purchase_record(
        business_id: str,
        idempotency_key: Optional[str],
        request: dict,
        entry,
        result
    ) -> Optional[PurchaseRecord]:
        if not idempotency_key:
            return None
        return PurchaseRecord(
            business_id=business_id,
            idempotency_key=idempotency_key,
            kind=entry.kind,
            request=request,
            entry_id=entry.entry_id,
            result=result.model_dump(),
            created_at=entry.timestamp
        )

    @staticmethod
    def _log_outcome(business_id: str, what: str, result: LedgerResult):
        if result.success:
            logger.info(f"Business {business_id}: {what} completed")
        else:
            logger.warning(f"Business {business_id}: {what} rejected ({result.error})")
