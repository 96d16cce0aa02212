"""
In-process ledger store.

Backs local development and the test suite. A commit validates every
precondition before touching any record, and runs without awaiting in
between, so it is atomic with respect to other coroutines on the loop.
"""

import asyncio
from typing import Dict, List, Optional, Tuple

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


class InMemoryLedgerStore:
    def __init__(self):
        self.wallets: Dict[str, Wallet] = {}
        self.ledger_entries: Dict[str, List[LedgerEntry]] = {}
        self.pools: Dict[Tuple[str, str], AllocationPool] = {}
        self.activations: Dict[Tuple[str, str], FeatureActivation] = {}
        self.purchases: Dict[Tuple[str, str], PurchaseRecord] = {}
        self.refunded_entries: Dict[Tuple[str, str], str] = {}
        self.available = True

    def _check_available(self):
        if not self.available:
            raise LedgerUnavailableError("In-memory ledger store is offline")

    async def ensure_wallet(self, business_id: str) -> Wallet:
        await asyncio.sleep(0)
        self._check_available()
        wallet = self.wallets.get(business_id)
        if wallet is None:
            wallet = Wallet(business_id=business_id)
            self.wallets[business_id] = wallet
        return wallet.model_copy()

    async def get_wallet(self, business_id: str) -> Optional[Wallet]:
        await asyncio.sleep(0)
        self._check_available()
        wallet = self.wallets.get(business_id)
        return wallet.model_copy() if wallet else None

    async def commit(self, commit: LedgerCommit) -> None:
        # Yield first so concurrent callers interleave like a real round trip
        await asyncio.sleep(0)
        self._check_available()

        business_id = commit.wallet.business_id
        current = self.wallets.get(business_id)
        current_version = current.version if current else 0
        if current_version != commit.expected_wallet_version:
            raise TransactionConflict(
                f"Wallet {business_id} at version {current_version}, "
                f"expected {commit.expected_wallet_version}"
            )

        if commit.pool is not None:
            key = (commit.pool.business_id, commit.pool.period)
            stored_pool = self.pools.get(key)
            if stored_pool is None or stored_pool.version != commit.expected_pool_version:
                raise TransactionConflict(f"Allocation pool {key} changed concurrently")

        if commit.purchase is not None:
            purchase_key = (commit.purchase.business_id, commit.purchase.idempotency_key)
            if purchase_key in self.purchases:
                raise TransactionConflict(f"Purchase {purchase_key} already recorded")

        refund_key = None
        if commit.entry.kind == LedgerEntryKind.REFUND:
            refund_key = (business_id, commit.entry.metadata.original_entry_id)
            if refund_key in self.refunded_entries:
                raise TransactionConflict(f"Entry {refund_key[1]} already refunded")

        # All checks passed - apply everything
        self.wallets[business_id] = commit.wallet.model_copy()
        self.ledger_entries.setdefault(business_id, []).append(commit.entry)

        if commit.pool is not None:
            self.pools[(commit.pool.business_id, commit.pool.period)] = commit.pool.model_copy()

        if commit.activation is not None:
            self.activations[(commit.activation.business_id, commit.activation.feature)] = (
                commit.activation.model_copy()
            )

        if commit.revocation is not None:
            rev = commit.revocation
            activation = self.activations.get((rev.business_id, rev.feature))
            if activation is not None and activation.entry_id == rev.entry_id:
                self.activations[(rev.business_id, rev.feature)] = activation.model_copy(
                    update={"active": False, "revoked_at": rev.revoked_at}
                )

        if commit.purchase is not None:
            self.purchases[(commit.purchase.business_id, commit.purchase.idempotency_key)] = commit.purchase

        if refund_key is not None:
            self.refunded_entries[refund_key] = commit.entry.entry_id

    async def list_entries(self, business_id: str, limit: int) -> List[LedgerEntry]:
        await asyncio.sleep(0)
        self._check_available()
        entries = sorted(
            self.ledger_entries.get(business_id, []),
            key=lambda e: e.sequence,
            reverse=True
        )
        return entries[:limit]

    async def get_entry(self, business_id: str, entry_id: str) -> Optional[LedgerEntry]:
        await asyncio.sleep(0)
        self._check_available()
        for entry in self.ledger_entries.get(business_id, []):
            if entry.entry_id == entry_id:
                return entry
        return None

    async def has_entry(self, business_id: str, entry_id: str) -> bool:
        return await self.get_entry(business_id, entry_id) is not None

    async def find_refund(self, business_id: str, original_entry_id: str) -> Optional[LedgerEntry]:
        refund_id = self.refunded_entries.get((business_id, original_entry_id))
        if refund_id is None:
            return None
        return await self.get_entry(business_id, refund_id)

    async def get_pool(self, business_id: str, period: str) -> Optional[AllocationPool]:
        await asyncio.sleep(0)
        self._check_available()
        pool = self.pools.get((business_id, period))
        return pool.model_copy() if pool else None

    async def save_pool(self, pool: AllocationPool) -> AllocationPool:
        await asyncio.sleep(0)
        self._check_available()
        key = (pool.business_id, pool.period)
        existing = self.pools.get(key)
        saved = pool.model_copy(update={
            "paid_purchased": existing.paid_purchased if existing else pool.paid_purchased,
            "version": (existing.version if existing else 0) + 1,
            "updated_at": utc_now(),
        })
        self.pools[key] = saved
        return saved.model_copy()

    async def get_activation(self, business_id: str, feature: str) -> Optional[FeatureActivation]:
        await asyncio.sleep(0)
        self._check_available()
        activation = self.activations.get((business_id, feature))
        return activation.model_copy() if activation else None

    async def list_activations(self, business_id: str) -> List[FeatureActivation]:
        await asyncio.sleep(0)
        self._check_available()
        return [
            activation.model_copy()
            for (owner, _), activation in self.activations.items()
            if owner == business_id
        ]

    async def find_purchase(self, business_id: str, idempotency_key: str) -> Optional[PurchaseRecord]:
        await asyncio.sleep(0)
        self._check_available()
        return self.purchases.get((business_id, idempotency_key))
