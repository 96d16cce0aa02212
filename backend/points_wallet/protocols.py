"""
Points Wallet Store Protocol (Interface)

Every store handle the services receive implements this contract.
NO import-time I/O dependencies - safe to import anywhere.
"""

from typing import List, Optional, Protocol, runtime_checkable

from .models import (
    AllocationPool,
    FeatureActivation,
    LedgerCommit,
    LedgerEntry,
    PurchaseRecord,
    Wallet,
)


# ============================================================================
# Exceptions
# ============================================================================

class TransactionConflict(Exception):
    """
    A concurrent writer got there first (stale version, transient transaction
    error or duplicate key). Internal to the service layer: retried, never
    returned to callers.
    """
    pass


class LedgerUnavailableError(Exception):
    """The store could not complete the operation. Callers should retry later."""
    pass


# ============================================================================
# Store Protocol
# ============================================================================

@runtime_checkable
class LedgerStore(Protocol):
    """
    Persistence for wallets, ledger entries, allocation pools, feature
    activations and purchase records, scoped per business.
    """

    async def ensure_wallet(self, business_id: str) -> Wallet:
        """Return the wallet, creating an all-zero one if missing"""
        ...

    async def get_wallet(self, business_id: str) -> Optional[Wallet]:
        ...

    async def commit(self, commit: LedgerCommit) -> None:
        """
        Apply the whole commit atomically.

        Raises TransactionConflict if the wallet or pool moved past the
        expected version, or an idempotency/refund key already exists.
        """
        ...

    async def list_entries(self, business_id: str, limit: int) -> List[LedgerEntry]:
        """Most recent first"""
        ...

    async def get_entry(self, business_id: str, entry_id: str) -> Optional[LedgerEntry]:
        ...

    async def has_entry(self, business_id: str, entry_id: str) -> bool:
        """Whether a ledger entry was durably written"""
        ...

    async def find_refund(self, business_id: str, original_entry_id: str) -> Optional[LedgerEntry]:
        ...

    async def get_pool(self, business_id: str, period: str) -> Optional[AllocationPool]:
        ...

    async def save_pool(self, pool: AllocationPool) -> AllocationPool:
        """Provisioning write path (quota service only)"""
        ...

    async def get_activation(self, business_id: str, feature: str) -> Optional[FeatureActivation]:
        ...

    async def list_activations(self, business_id: str) -> List[FeatureActivation]:
        ...

    async def find_purchase(self, business_id: str, idempotency_key: str) -> Optional[PurchaseRecord]:
        ...
