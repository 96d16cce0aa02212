"""
Points Wallet Configuration and Constants

Quota split, transaction retry settings, collection names and error codes
are defined here. Point prices live in pricing.py.
"""

import os

# ==================== PARTICIPANT QUOTA SPLIT ====================
# First 60% of the monthly pool must be used organically.
# Points can only unlock the remaining 40%.
QUOTA_SPLIT = {
    "organic_share": 0.6,
    "paid_share": 0.4,
}

# ==================== TRANSACTION SETTINGS ====================
TRANSACTION_SETTINGS = {
    "max_retries": int(os.environ.get("POINTS_TX_MAX_RETRIES", "8")),
    "base_backoff_seconds": 0.005,
    "max_backoff_seconds": 0.25,
    "timeout_seconds": float(os.environ.get("POINTS_TX_TIMEOUT_SECONDS", "5")),
    # Extra wait for a commit that overran timeout_seconds to report its outcome
    "settle_seconds": float(os.environ.get("POINTS_TX_SETTLE_SECONDS", "5")),
}

# ==================== LEDGER HISTORY ====================
HISTORY_LIMITS = {
    "default": 50,
    "max": 200,
}

# ==================== COLLECTIONS ====================
COLLECTIONS = {
    "wallets": "points_wallets",
    "ledger": "points_ledger",
    "pools": "allocation_pools",
    "features": "feature_activations",
    "purchases": "points_purchases",
    "meta": "points_wallet_meta",
}

# ==================== ERROR CODES ====================
ERROR_CODES = {
    "INSUFFICIENT_BALANCE": "Not enough points for this purchase.",
    "ALLOCATION_POOL_NOT_FOUND": "No participant pool has been provisioned for this business yet.",
    "ORGANIC_QUOTA_NOT_EXHAUSTED": "All organic participant slots must be used before buying extra slots.",
    "PURCHASE_LIMIT_EXCEEDED": "Requested slots exceed the paid share of the monthly pool, including slots already purchased.",
    "INVALID_AMOUNT": "Amount must be a positive whole number.",
    "INVALID_DURATION": "Visibility boost duration must be 24H or 7D.",
    "UNKNOWN_FEATURE": "This feature cannot be purchased with points.",
    "ENTRY_NOT_FOUND": "Ledger entry not found.",
    "REFUND_NOT_ALLOWED": "This ledger entry cannot be refunded.",
    "ALREADY_REFUNDED": "This ledger entry has already been refunded.",
    "IDEMPOTENCY_KEY_REUSED": "This idempotency key was already used for a different purchase.",
}
