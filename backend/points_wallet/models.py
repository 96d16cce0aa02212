"""
Points Wallet Data Models

Pydantic models for wallet, ledger and allocation pool documents, plus the
structured results returned by wallet and purchase operations.
These define the structure of documents stored in MongoDB collections.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .config import ERROR_CODES


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def current_period(now: Optional[datetime] = None) -> str:
    """Accounting period identifier (calendar month, UTC)."""
    now = now or utc_now()
    return now.astimezone(timezone.utc).strftime("%Y-%m")


# ==================== WALLET MODELS ====================

class Wallet(BaseModel):
    """Business points wallet"""
    business_id: str
    balance: int = Field(default=0, ge=0)
    total_earned: int = Field(default=0, ge=0)
    total_spent: int = Field(default=0, ge=0)
    version: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @model_validator(mode="after")
    def _balance_matches_totals(self):
        if self.balance != self.total_earned - self.total_spent:
            raise ValueError(
                f"balance {self.balance} != total_earned {self.total_earned} "
                f"- total_spent {self.total_spent}"
            )
        return self


class WalletResponse(BaseModel):
    """Response model for wallet endpoint"""
    business_id: str
    balance: int
    total_earned: int
    total_spent: int


class WalletSummary(WalletResponse):
    can_purchase_slots: bool
    can_purchase_boost: bool


# ==================== LEDGER MODELS ====================

class LedgerEntryKind(str, Enum):
    EARNED_FROM_REDEMPTION = "EARNED_FROM_REDEMPTION"
    SPENT_ON_PARTICIPANTS = "SPENT_ON_PARTICIPANTS"
    SPENT_ON_VISIBILITY = "SPENT_ON_VISIBILITY"
    SPENT_ON_PREMIUM = "SPENT_ON_PREMIUM"
    REFUND = "REFUND"


CREDIT_KINDS = frozenset({LedgerEntryKind.EARNED_FROM_REDEMPTION, LedgerEntryKind.REFUND})
SPEND_KINDS = frozenset({
    LedgerEntryKind.SPENT_ON_PARTICIPANTS,
    LedgerEntryKind.SPENT_ON_VISIBILITY,
    LedgerEntryKind.SPENT_ON_PREMIUM,
})


class RedemptionMetadata(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["EARNED_FROM_REDEMPTION"] = "EARNED_FROM_REDEMPTION"
    customer_id: str = Field(..., min_length=1)
    reward_title: str


class ParticipantPurchaseMetadata(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["SPENT_ON_PARTICIPANTS"] = "SPENT_ON_PARTICIPANTS"
    slots_count: int = Field(..., gt=0)
    cost_per_slot: int = Field(..., gt=0)
    period: str
    idempotency_key: Optional[str] = None


class VisibilityPurchaseMetadata(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["SPENT_ON_VISIBILITY"] = "SPENT_ON_VISIBILITY"
    duration: Literal["24H", "7D"]
    expires_at: datetime
    idempotency_key: Optional[str] = None


class PremiumPurchaseMetadata(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["SPENT_ON_PREMIUM"] = "SPENT_ON_PREMIUM"
    feature: str
    expires_at: datetime
    idempotency_key: Optional[str] = None


class RefundMetadata(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["REFUND"] = "REFUND"
    original_entry_id: str
    original_kind: LedgerEntryKind
    reason: str
    slots_returned: int = Field(default=0, ge=0)


LedgerMetadata = Annotated[
    Union[
        RedemptionMetadata,
        ParticipantPurchaseMetadata,
        VisibilityPurchaseMetadata,
        PremiumPurchaseMetadata,
        RefundMetadata,
    ],
    Field(discriminator="kind"),
]


class LedgerEntry(BaseModel):
    """Immutable ledger entry for a points balance change"""
    model_config = ConfigDict(frozen=True)

    entry_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    business_id: str
    kind: LedgerEntryKind
    amount: int
    balance_before: int = Field(..., ge=0)
    balance_after: int = Field(..., ge=0)
    description: str
    metadata: LedgerMetadata
    sequence: int = Field(..., ge=1)
    timestamp: datetime = Field(default_factory=utc_now)

    @model_validator(mode="after")
    def _check_consistency(self):
        if self.balance_after != self.balance_before + self.amount:
            raise ValueError("balance_after must equal balance_before + amount")
        if self.kind in CREDIT_KINDS and self.amount <= 0:
            raise ValueError(f"{self.kind.value} entries must have a positive amount")
        if self.kind in SPEND_KINDS and self.amount >= 0:
            raise ValueError(f"{self.kind.value} entries must have a negative amount")
        if self.metadata.kind != self.kind.value:
            raise ValueError(f"metadata kind {self.metadata.kind} does not match entry kind {self.kind.value}")
        return self


# ==================== ALLOCATION POOL MODELS ====================

class AllocationPool(BaseModel):
    """Participant quota for one business in one accounting period"""
    business_id: str
    period: str
    monthly_limit: int = Field(..., ge=0)
    organic_usage: int = Field(default=0, ge=0)
    paid_purchased: int = Field(default=0, ge=0)
    paid_usage: int = Field(default=0, ge=0)
    remaining: int = Field(default=0, ge=0)
    version: int = Field(default=0, ge=0)
    updated_at: datetime = Field(default_factory=utc_now)


class ParticipantLimits(BaseModel):
    """60/40 split derived from an allocation pool"""
    organic_limit: int
    paid_limit: int
    organic_used: int
    paid_used: int
    organic_remaining: int
    paid_remaining: int
    paid_unlocked: bool
    purchasable_slots: int
    total_available: int


class SlotEligibility(BaseModel):
    can_purchase: bool
    reason: Optional[str] = None
    max_available: int = 0


# ==================== FEATURE / PURCHASE RECORDS ====================

class FeatureActivation(BaseModel):
    """Time-boxed feature flag bought with points (visibility boost, premium)"""
    business_id: str
    feature: str
    sku: str
    active: bool = True
    expires_at: datetime
    purchased_at: datetime
    entry_id: str
    revoked_at: Optional[datetime] = None

    def is_live(self, now: Optional[datetime] = None) -> bool:
        return self.active and self.expires_at > (now or utc_now())


class ActivationRevocation(BaseModel):
    """Deactivate a feature only if it is still the one `entry_id` paid for"""
    business_id: str
    feature: str
    entry_id: str
    revoked_at: datetime


class PurchaseRecord(BaseModel):
    """Idempotency record keyed by (business_id, idempotency_key)"""
    business_id: str
    idempotency_key: str
    kind: LedgerEntryKind
    # What was bought (sku, slot count); a key only replays the same purchase
    request: dict = Field(default_factory=dict)
    entry_id: str
    result: dict
    created_at: datetime = Field(default_factory=utc_now)


# ==================== COMMIT UNIT ====================

class LedgerCommit(BaseModel):
    """
    Everything one mutation writes. A store applies all of it or none of it.

    `wallet` carries the new state; the write only succeeds if the stored
    wallet is still at `expected_wallet_version`. The same compare-and-swap
    applies to `pool` when present.
    """
    wallet: Wallet
    expected_wallet_version: int
    entry: LedgerEntry
    pool: Optional[AllocationPool] = None
    expected_pool_version: Optional[int] = None
    activation: Optional[FeatureActivation] = None
    revocation: Optional[ActivationRevocation] = None
    purchase: Optional[PurchaseRecord] = None

    @model_validator(mode="after")
    def _check_versions(self):
        if self.wallet.version != self.expected_wallet_version + 1:
            raise ValueError("wallet version must advance by exactly one")
        if self.entry.sequence != self.wallet.version:
            raise ValueError("entry sequence must match the new wallet version")
        if self.entry.balance_after != self.wallet.balance:
            raise ValueError("entry balance_after must match the new wallet balance")
        if self.pool is not None and (
            self.expected_pool_version is None or self.pool.version != self.expected_pool_version + 1
        ):
            raise ValueError("pool version must advance by exactly one")
        return self


# ==================== RESULT MODELS ====================

class LedgerResult(BaseModel):
    success: bool
    error: Optional[str] = None
    error_message: Optional[str] = None

    @classmethod
    def rejected(cls, error: str, message: Optional[str] = None, **fields):
        return cls(
            success=False,
            error=error,
            error_message=message or ERROR_CODES[error],
            **fields
        )


class DebitResult(LedgerResult):
    wallet: Optional[Wallet] = None
    entry: Optional[LedgerEntry] = None
    new_balance: int = 0


class SlotPurchaseResult(LedgerResult):
    slots_purchased: int = 0
    points_spent: int = 0
    new_balance: int = 0
    entry_id: Optional[str] = None
    replayed: bool = False


class BoostPurchaseResult(LedgerResult):
    duration: Optional[str] = None
    expires_at: Optional[datetime] = None
    points_spent: int = 0
    new_balance: int = 0
    entry_id: Optional[str] = None
    replayed: bool = False


class FeaturePurchaseResult(LedgerResult):
    sku: Optional[str] = None
    expires_at: Optional[datetime] = None
    points_spent: int = 0
    new_balance: int = 0
    entry_id: Optional[str] = None
    replayed: bool = False


class RefundResult(LedgerResult):
    points_refunded: int = 0
    slots_returned: int = 0
    new_balance: int = 0
    entry_id: Optional[str] = None


# ==================== REQUEST MODELS ====================

class SlotPurchaseRequest(BaseModel):
    count: int = Field(..., description="Number of extra participant slots")
    idempotency_key: Optional[str] = None


class VisibilityBoostRequest(BaseModel):
    duration: str = Field(..., description="Boost duration: 24H or 7D")
    idempotency_key: Optional[str] = None


class PremiumFeatureRequest(BaseModel):
    sku: str = Field(..., description="PREMIUM_ANALYTICS_30D, FEATURED_PLACEMENT_24H or PRIORITY_SUPPORT_30D")
    idempotency_key: Optional[str] = None


class RedemptionRequest(BaseModel):
    customer_id: str = Field(..., min_length=1)
    business_id: str = Field(..., min_length=1)
    points: int
    reward_title: str


class RefundRequest(BaseModel):
    business_id: str
    entry_id: str
    reason: str = Field(..., min_length=1)


class LedgerHistoryResponse(BaseModel):
    business_id: str
    entries: List[LedgerEntry]
    count: int
