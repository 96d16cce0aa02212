"""
MongoDB Ledger Store

Persists wallets, ledger entries, allocation pools, feature activations and
purchase records with motor.

CRITICAL: Every commit runs inside one multi-document transaction and the
wallet/pool writes are conditional on the version that was read. A wallet
update can never land without its ledger entry, and two writers can never
both apply a change computed from the same stale balance.
Transactions require a replica set (a single-node replica set is enough).
"""

import logging
from functools import wraps
from typing import List, Optional

from pymongo.errors import DuplicateKeyError, PyMongoError

from .config import COLLECTIONS, TRANSACTION_SETTINGS
from .models import (
    AllocationPool,
    FeatureActivation,
    LedgerCommit,
    LedgerEntry,
    LedgerEntryKind,
    PurchaseRecord,
    Wallet,
    utc_now,
)
from .protocols import LedgerUnavailableError, TransactionConflict

logger = logging.getLogger(__name__)


def _store_errors(func):
    """Turn driver failures into LedgerUnavailableError."""
    @wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except (TransactionConflict, LedgerUnavailableError):
            raise
        except PyMongoError as e:
            logger.error(f"Ledger store operation {func.__name__} failed: {e}")
            raise LedgerUnavailableError(str(e)) from e
    return wrapper


class MongoLedgerStore:
    """LedgerStore backed by a motor database handle."""

    def __init__(self, db, max_commit_time_ms: Optional[int] = None):
        self.db = db
        self.max_commit_time_ms = max_commit_time_ms or int(TRANSACTION_SETTINGS["timeout_seconds"] * 1000)
        self.client = db.client
        self.wallets = db[COLLECTIONS["wallets"]]
        self.ledger = db[COLLECTIONS["ledger"]]
        self.pools = db[COLLECTIONS["pools"]]
        self.features = db[COLLECTIONS["features"]]
        self.purchases = db[COLLECTIONS["purchases"]]

    # ==================== WALLETS ====================

    @_store_errors
    async def ensure_wallet(self, business_id: str) -> Wallet:
        """
        Get existing wallet or create one lazily.

        Uses upsert + $setOnInsert so concurrent first accesses create
        exactly one document.
        """
        wallet = await self.wallets.find_one({"business_id": business_id}, {"_id": 0})
        if wallet:
            return Wallet(**wallet)

        new_wallet = Wallet(business_id=business_id)
        try:
            await self.wallets.update_one(
                {"business_id": business_id},
                {"$setOnInsert": new_wallet.model_dump()},
                upsert=True
            )
        except DuplicateKeyError:
            # Lost the creation race - the other writer's document is fine
            pass

        wallet = await self.wallets.find_one({"business_id": business_id}, {"_id": 0})
        return Wallet(**wallet)

    @_store_errors
    async def get_wallet(self, business_id: str) -> Optional[Wallet]:
        wallet = await self.wallets.find_one({"business_id": business_id}, {"_id": 0})
        return Wallet(**wallet) if wallet else None

    # ==================== COMMIT ====================

    async def commit(self, commit: LedgerCommit) -> None:
        try:
            async with await self.client.start_session() as session:
                async with session.start_transaction(max_commit_time_ms=self.max_commit_time_ms):
                    await self._apply(commit, session)
        except TransactionConflict:
            raise
        except DuplicateKeyError as e:
            raise TransactionConflict(f"Duplicate key while committing {commit.entry.entry_id}: {e}") from e
        except PyMongoError as e:
            if e.has_error_label("UnknownTransactionCommitResult"):
                # The commit may have landed; the ledger entry tells us
                if await self.has_entry(commit.entry.business_id, commit.entry.entry_id):
                    logger.warning(f"Commit for entry {commit.entry.entry_id} confirmed after unknown result")
                    return
                raise TransactionConflict(f"Commit result unknown for {commit.entry.entry_id}") from e
            if e.has_error_label("TransientTransactionError"):
                raise TransactionConflict(f"Transient transaction error: {e}") from e
            logger.error(f"Ledger commit failed for business {commit.wallet.business_id}: {e}")
            raise LedgerUnavailableError(str(e)) from e

    async def _apply(self, commit: LedgerCommit, session) -> None:
        wallet = commit.wallet
        result = await self.wallets.update_one(
            {"business_id": wallet.business_id, "version": commit.expected_wallet_version},
            {
                "$set": {
                    "balance": wallet.balance,
                    "total_earned": wallet.total_earned,
                    "total_spent": wallet.total_spent,
                    "version": wallet.version,
                    "updated_at": wallet.updated_at
                }
            },
            session=session
        )
        if result.matched_count == 0:
            raise TransactionConflict(
                f"Wallet {wallet.business_id} moved past version {commit.expected_wallet_version}"
            )

        await self.ledger.insert_one(commit.entry.model_dump(), session=session)

        if commit.pool is not None:
            pool = commit.pool
            result = await self.pools.update_one(
                {
                    "business_id": pool.business_id,
                    "period": pool.period,
                    "version": commit.expected_pool_version
                },
                {
                    "$set": {
                        "paid_purchased": pool.paid_purchased,
                        "remaining": pool.remaining,
                        "version": pool.version,
                        "updated_at": pool.updated_at
                    }
                },
                session=session
            )
            if result.matched_count == 0:
                raise TransactionConflict(
                    f"Allocation pool {pool.business_id}/{pool.period} changed concurrently"
                )

        if commit.activation is not None:
            activation = commit.activation
            await self.features.replace_one(
                {"business_id": activation.business_id, "feature": activation.feature},
                activation.model_dump(),
                upsert=True,
                session=session
            )

        if commit.revocation is not None:
            rev = commit.revocation
            # Only revoke if nothing newer replaced the activation
            await self.features.update_one(
                {"business_id": rev.business_id, "feature": rev.feature, "entry_id": rev.entry_id},
                {"$set": {"active": False, "revoked_at": rev.revoked_at}},
                session=session
            )

        if commit.purchase is not None:
            await self.purchases.insert_one(commit.purchase.model_dump(), session=session)

    # ==================== LEDGER ====================

    @_store_errors
    async def has_entry(self, business_id: str, entry_id: str) -> bool:
        found = await self.ledger.find_one(
            {"business_id": business_id, "entry_id": entry_id},
            {"_id": 0, "entry_id": 1}
        )
        return found is not None

    @_store_errors
    async def list_entries(self, business_id: str, limit: int) -> List[LedgerEntry]:
        cursor = self.ledger.find(
            {"business_id": business_id},
            {"_id": 0}
        ).sort("sequence", -1).limit(limit)

        docs = await cursor.to_list(length=limit)
        return [LedgerEntry(**doc) for doc in docs]

    @_store_errors
    async def get_entry(self, business_id: str, entry_id: str) -> Optional[LedgerEntry]:
        doc = await self.ledger.find_one(
            {"business_id": business_id, "entry_id": entry_id},
            {"_id": 0}
        )
        return LedgerEntry(**doc) if doc else None

    @_store_errors
    async def find_refund(self, business_id: str, original_entry_id: str) -> Optional[LedgerEntry]:
        doc = await self.ledger.find_one(
            {
                "business_id": business_id,
                "kind": LedgerEntryKind.REFUND.value,
                "metadata.original_entry_id": original_entry_id
            },
            {"_id": 0}
        )
        return LedgerEntry(**doc) if doc else None

    # ==================== ALLOCATION POOLS ====================

    @_store_errors
    async def get_pool(self, business_id: str, period: str) -> Optional[AllocationPool]:
        doc = await self.pools.find_one({"business_id": business_id, "period": period}, {"_id": 0})
        return AllocationPool(**doc) if doc else None

    @_store_errors
    async def save_pool(self, pool: AllocationPool) -> AllocationPool:
        """
        Provisioning write path. paid_purchased is owned by purchases and
        only set when the pool document is first created.
        """
        await self.pools.update_one(
            {"business_id": pool.business_id, "period": pool.period},
            {
                "$set": {
                    "monthly_limit": pool.monthly_limit,
                    "organic_usage": pool.organic_usage,
                    "paid_usage": pool.paid_usage,
                    "remaining": pool.remaining,
                    "updated_at": utc_now()
                },
                "$setOnInsert": {"paid_purchased": pool.paid_purchased},
                "$inc": {"version": 1}
            },
            upsert=True
        )
        doc = await self.pools.find_one({"business_id": pool.business_id, "period": pool.period}, {"_id": 0})
        return AllocationPool(**doc)

    # ==================== FEATURES / PURCHASES ====================

    @_store_errors
    async def get_activation(self, business_id: str, feature: str) -> Optional[FeatureActivation]:
        doc = await self.features.find_one({"business_id": business_id, "feature": feature}, {"_id": 0})
        return FeatureActivation(**doc) if doc else None

    @_store_errors
    async def list_activations(self, business_id: str) -> List[FeatureActivation]:
        docs = await self.features.find({"business_id": business_id}, {"_id": 0}).to_list(length=None)
        return [FeatureActivation(**doc) for doc in docs]

    @_store_errors
    async def find_purchase(self, business_id: str, idempotency_key: str) -> Optional[PurchaseRecord]:
        doc = await self.purchases.find_one(
            {"business_id": business_id, "idempotency_key": idempotency_key},
            {"_id": 0}
        )
        return PurchaseRecord(**doc) if doc else None
