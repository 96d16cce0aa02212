"""
Points Wallet Module
Business points wallet and tiered participant allocation ledger

This module provides:
- Per-business points wallets (lazy creation, balance + lifetime totals)
- Immutable, per-business ordered ledger of every balance change
- Redemption credit hook for the customer rewards flow
- Feature purchases priced from a static catalog
- 60/40 organic/paid participant quota enforcement
- Atomic commits with internal retry on write conflicts

Collections used:
- points_wallets: One balance record per business
- points_ledger: Immutable transaction log
- allocation_pools: Participant quota per business per period
- feature_activations: Visibility boost and premium feature flags
- points_purchases: Purchase idempotency store
- points_wallet_meta: Init version stamp
"""

__version__ = "1.0.0"
