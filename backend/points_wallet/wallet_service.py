"""
Points Wallet Service

Core wallet operations including:
- Lazy wallet creation
- Balance queries
- Credits and debits (atomic, concurrency-safe)
- Ledger entries and transaction history
- Customer redemption hook

CRITICAL: Every balance change is committed together with its ledger entry
as one unit, conditional on the wallet version that was read. Conflicting
writers are retried here and never surface to callers.
"""

import asyncio
import logging
import random
from datetime import datetime
from typing import Awaitable, Callable, List, Optional, Tuple

from .config import HISTORY_LIMITS, TRANSACTION_SETTINGS
from .models import (
    DebitResult,
    LedgerCommit,
    LedgerEntry,
    LedgerEntryKind,
    LedgerMetadata,
    RedemptionMetadata,
    Wallet,
    WalletResponse,
    utc_now,
)
from .protocols import LedgerStore, LedgerUnavailableError, TransactionConflict

logger = logging.getLogger(__name__)

# A build step gets a fresh wallet snapshot and returns the commit to apply
# (None when the operation is rejected) plus the value to hand back.
BuildStep = Callable[[Wallet], Awaitable[Tuple[Optional[LedgerCommit], object]]]


def apply_credit(
    wallet: Wallet,
    amount: int,
    description: str,
    metadata: LedgerMetadata,
    now: Optional[datetime] = None
) -> Tuple[Wallet, LedgerEntry]:
    """Next wallet state and ledger entry for a credit of `amount`."""
    if amount <= 0:
        raise ValueError(f"Credit amount must be positive, got {amount}")

    now = now or utc_now()
    updated = wallet.model_copy(update={
        "balance": wallet.balance + amount,
        "total_earned": wallet.total_earned + amount,
        "version": wallet.version + 1,
        "updated_at": now,
    })
    entry = LedgerEntry(
        business_id=wallet.business_id,
        kind=LedgerEntryKind(metadata.kind),
        amount=amount,
        balance_before=wallet.balance,
        balance_after=updated.balance,
        description=description,
        metadata=metadata,
        sequence=updated.version,
        timestamp=now
    )
    return updated, entry


def apply_debit(
    wallet: Wallet,
    amount: int,
    description: str,
    metadata: LedgerMetadata,
    now: Optional[datetime] = None
) -> Tuple[Wallet, LedgerEntry]:
    """Next wallet state and ledger entry for a debit. Caller checks the balance."""
    if amount <= 0:
        raise ValueError(f"Debit amount must be positive, got {amount}")
    if wallet.balance < amount:
        raise ValueError(f"Debit of {amount} exceeds balance {wallet.balance}")

    now = now or utc_now()
    updated = wallet.model_copy(update={
        "balance": wallet.balance - amount,
        "total_spent": wallet.total_spent + amount,
        "version": wallet.version + 1,
        "updated_at": now,
    })
    entry = LedgerEntry(
        business_id=wallet.business_id,
        kind=LedgerEntryKind(metadata.kind),
        amount=-amount,
        balance_before=wallet.balance,
        balance_after=updated.balance,
        description=description,
        metadata=metadata,
        sequence=updated.version,
        timestamp=now
    )
    return updated, entry


class WalletService:
    """Service for managing business points wallets."""

    def __init__(self, store: LedgerStore, settings: Optional[dict] = None):
        self.store = store
        self.settings = {**TRANSACTION_SETTINGS, **(settings or {})}

    async def run_atomic(self, business_id: str, build: BuildStep):
        """
        Read-decide-commit loop for one business.

        Each attempt reads a fresh wallet, lets `build` decide what to write
        and commits it. On a conflict the whole cycle runs again, so every
        decision is re-checked against current state. Retries are bounded;
        exhaustion raises LedgerUnavailableError, as does a timed-out commit
        whose ledger entry never landed.
        """
        max_retries = self.settings["max_retries"]
        timeout = self.settings["timeout_seconds"]

        for attempt in range(1, max_retries + 1):
            wallet = await self.store.ensure_wallet(business_id)
            commit, outcome = await build(wallet)
            if commit is None:
                return outcome

            pending = asyncio.ensure_future(self.store.commit(commit))
            try:
                await asyncio.wait_for(asyncio.shield(pending), timeout=timeout)
                return outcome
            except TransactionConflict as e:
                logger.warning(
                    f"Write conflict on wallet {business_id} "
                    f"(attempt {attempt}/{max_retries}): {e}"
                )
                await asyncio.sleep(self._backoff(attempt))
            except asyncio.TimeoutError:
                logger.warning(
                    f"Ledger commit for business {business_id} still running after {timeout}s"
                )
                await self._settle_overdue_commit(business_id, commit, pending)
                return outcome

        raise LedgerUnavailableError(
            f"Could not commit wallet change for business {business_id} after {max_retries} attempts"
        )

    async def _settle_overdue_commit(self, business_id: str, commit: LedgerCommit, pending) -> None:
        """
        Decide whether a commit that overran the timeout actually landed.

        The commit gets settle_seconds more to report back. After that the
        ledger entry is the source of truth: present means the change is
        durable, absent raises LedgerUnavailableError.
        """
        entry_id = commit.entry.entry_id
        try:
            await asyncio.wait_for(pending, timeout=self.settings["settle_seconds"])
            return
        except asyncio.TimeoutError:
            logger.error(f"Ledger commit for entry {entry_id} did not settle")
        except (TransactionConflict, LedgerUnavailableError) as e:
            logger.error(f"Overdue ledger commit for entry {entry_id} failed: {e}")

        if await self.store.has_entry(business_id, entry_id):
            logger.warning(f"Overdue ledger commit for entry {entry_id} confirmed by lookup")
            return
        raise LedgerUnavailableError(f"Ledger commit timed out for business {business_id}")

    def _backoff(self, attempt: int) -> float:
        ceiling = min(
            self.settings["max_backoff_seconds"],
            self.settings["base_backoff_seconds"] * (2 ** (attempt - 1))
        )
        return random.uniform(0, ceiling)

    # ==================== READS ====================

    async def get_or_create_wallet(self, business_id: str) -> Wallet:
        """
        Get existing wallet or create one lazily.

        Wallets are never missing from a caller's point of view.
        """
        return await self.store.ensure_wallet(business_id)

    async def get_wallet(self, business_id: str) -> WalletResponse:
        """Get wallet data formatted for API response."""
        wallet = await self.get_or_create_wallet(business_id)
        return WalletResponse(
            business_id=business_id,
            balance=wallet.balance,
            total_earned=wallet.total_earned,
            total_spent=wallet.total_spent
        )

    async def get_transaction_history(
        self,
        business_id: str,
        limit: int = HISTORY_LIMITS["default"]
    ) -> List[LedgerEntry]:
        """Get recent ledger entries for a business, most recent first."""
        limit = max(1, min(limit, HISTORY_LIMITS["max"]))
        return await self.store.list_entries(business_id, limit)

    # ==================== MUTATIONS ====================

    async def credit(
        self,
        business_id: str,
        amount: int,
        description: str,
        metadata: LedgerMetadata
    ) -> Wallet:
        """
        Credit points to a wallet.

        Credits are unconditional: the only failure is the store itself,
        raised as LedgerUnavailableError once retries are exhausted.
        """
        if amount <= 0:
            raise ValueError(f"Credit amount must be positive, got {amount}")

        async def build(wallet: Wallet):
            updated, entry = apply_credit(wallet, amount, description, metadata)
            commit = LedgerCommit(
                wallet=updated,
                expected_wallet_version=wallet.version,
                entry=entry
            )
            return commit, updated

        updated = await self.run_atomic(business_id, build)
        logger.info(f"Credited {amount} points to {business_id}. New balance: {updated.balance}")
        return updated

    async def debit(
        self,
        business_id: str,
        amount: int,
        description: str,
        metadata: LedgerMetadata
    ) -> DebitResult:
        """
        Debit points from a wallet iff the balance covers `amount`.

        Returns:
            DebitResult; on INSUFFICIENT_BALANCE nothing was written
        """
        if amount <= 0:
            return DebitResult.rejected("INVALID_AMOUNT")

        async def build(wallet: Wallet):
            if wallet.balance < amount:
                return None, DebitResult.rejected(
                    "INSUFFICIENT_BALANCE",
                    f"Insufficient balance. Need {amount}, have {wallet.balance}",
                    new_balance=wallet.balance
                )

            updated, entry = apply_debit(wallet, amount, description, metadata)
            commit = LedgerCommit(
                wallet=updated,
                expected_wallet_version=wallet.version,
                entry=entry
            )
            return commit, DebitResult(
                success=True,
                wallet=updated,
                entry=entry,
                new_balance=updated.balance
            )

        result = await self.run_atomic(business_id, build)
        if result.success:
            logger.info(f"Debited {amount} points from {business_id}. New balance: {result.new_balance}")
        else:
            logger.warning(f"Debit of {amount} points rejected for {business_id}: {result.error}")
        return result

    # ==================== REDEMPTION HOOK ====================

    async def on_customer_redemption(
        self,
        customer_id: str,
        business_id: str,
        points_redeemed: int,
        reward_title: str
    ) -> bool:
        """
        Credit the business when a customer redeems a reward there.

        The redemption flow must not call this twice for the same redemption.

        Returns:
            True if the credit was durably recorded
        """
        if points_redeemed <= 0:
            logger.warning(
                f"Ignoring redemption of {points_redeemed} points by {customer_id} at {business_id}"
            )
            return False

        try:
            metadata = RedemptionMetadata(customer_id=customer_id, reward_title=reward_title)
            await self.credit(
                business_id,
                points_redeemed,
                f"Customer reward redemption: {reward_title}",
                metadata
            )
        except (LedgerUnavailableError, ValueError) as e:
            logger.error(f"Failed to process customer redemption for {business_id}: {e}")
            return False

        logger.info(f"Customer {customer_id} redeemed {points_redeemed} points at business {business_id}")
        return True
