"""
Points Wallet Database Initialization Script

Rules:
1. Environment Guard - production runs require POINTS_WALLET_INIT_CONFIRM=YES
2. Idempotent - running multiple times must not duplicate anything
3. No destructive operations - no dropping, deleting, truncation
4. Lazy wallet creation - wallets created on first use, not here
5. Safe index creation - handles "index already exists" gracefully
6. Dry-run mode - --dry-run prints what it would do
7. Version stamp - tracks init version

The unique indexes are part of the ledger's correctness: the
(business_id, sequence) index rejects a second entry for the same wallet
version and the partial refund index rejects a second refund of one entry.

Usage:
    CLI one-off: python -m points_wallet.db_init
    With dry-run: python -m points_wallet.db_init --dry-run
    In production: ENVIRONMENT=production POINTS_WALLET_INIT_CONFIRM=YES python -m points_wallet.db_init
"""

import os
import sys
import asyncio
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Tuple

# Add parent to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import CollectionInvalid, OperationFailure

from points_wallet.config import COLLECTIONS
from utils.environment import get_environment, is_production

logger = logging.getLogger(__name__)

# Version tracking
INIT_VERSION = "v1.0.0"

WALLETS = COLLECTIONS["wallets"]
LEDGER = COLLECTIONS["ledger"]
POOLS = COLLECTIONS["pools"]
FEATURES = COLLECTIONS["features"]
PURCHASES = COLLECTIONS["purchases"]
META = COLLECTIONS["meta"]

# Collections to create (if not exist)
REQUIRED_COLLECTIONS = [WALLETS, LEDGER, POOLS, FEATURES, PURCHASES, META]

# Index definitions: (collection, index_spec, options)
REQUIRED_INDEXES = [
    # points_wallets indexes
    (WALLETS, [("business_id", 1)], {"unique": True, "name": "idx_business_id_unique"}),

    # points_ledger indexes
    (LEDGER, [("business_id", 1), ("sequence", 1)], {"unique": True, "name": "idx_business_sequence_unique"}),
    (LEDGER, [("business_id", 1), ("timestamp", -1)], {"name": "idx_business_timestamp"}),
    (LEDGER, [("entry_id", 1)], {"unique": True, "name": "idx_entry_id_unique"}),
    (
        LEDGER,
        [("business_id", 1), ("metadata.original_entry_id", 1)],
        {
            "unique": True,
            "partialFilterExpression": {"kind": "REFUND"},
            "name": "idx_refund_original_unique"
        }
    ),

    # allocation_pools indexes
    (POOLS, [("business_id", 1), ("period", 1)], {"unique": True, "name": "idx_business_period_unique"}),

    # feature_activations indexes
    (FEATURES, [("business_id", 1), ("feature", 1)], {"unique": True, "name": "idx_business_feature_unique"}),

    # points_purchases indexes
    (
        PURCHASES,
        [("business_id", 1), ("idempotency_key", 1)],
        {"unique": True, "name": "idx_business_idempotency_unique"}
    ),
]


def check_environment() -> Tuple[bool, str]:
    """
    Check environment and confirm if production execution is allowed.

    Returns:
        Tuple of (allowed, message)
    """
    env = get_environment()

    if is_production():
        confirm = os.environ.get("POINTS_WALLET_INIT_CONFIRM", "")
        if confirm != "YES":
            return False, (
                "PRODUCTION ENVIRONMENT DETECTED!\n"
                "To run init in production, set: POINTS_WALLET_INIT_CONFIRM=YES\n"
                f"Current value: POINTS_WALLET_INIT_CONFIRM='{confirm}'"
            )

    return True, f"Environment: {env}"


async def create_collection_if_not_exists(db, collection_name: str, dry_run: bool = False) -> str:
    """Create a collection if it doesn't exist."""
    existing = await db.list_collection_names()

    if collection_name in existing:
        return f"  [SKIP] Collection '{collection_name}' already exists"

    if dry_run:
        return f"  [DRY-RUN] Would create collection '{collection_name}'"

    try:
        await db.create_collection(collection_name)
        return f"  [CREATE] Created collection '{collection_name}'"
    except CollectionInvalid:
        return f"  [SKIP] Collection '{collection_name}' already exists (race)"


async def create_index_if_not_exists(
    db,
    collection_name: str,
    index_spec: List[Tuple],
    options: dict,
    dry_run: bool = False
) -> str:
    """Create an index if it doesn't exist."""
    collection = db[collection_name]
    index_name = options.get("name", str(index_spec))

    existing_indexes = await collection.index_information()

    if index_name in existing_indexes:
        return f"  [SKIP] Index '{index_name}' on '{collection_name}' already exists"

    if dry_run:
        return f"  [DRY-RUN] Would create index '{index_name}' on '{collection_name}'"

    try:
        await collection.create_index(index_spec, **options)
        return f"  [CREATE] Created index '{index_name}' on '{collection_name}'"
    except OperationFailure as e:
        if "already exists" in str(e).lower():
            return f"  [SKIP] Index '{index_name}' on '{collection_name}' already exists (race)"
        raise


async def update_version_stamp(db, dry_run: bool = False) -> str:
    """Update or create version stamp document."""
    if dry_run:
        return f"  [DRY-RUN] Would update version stamp to {INIT_VERSION}"

    await db[META].update_one(
        {"_id": "points_wallet_init"},
        {
            "$set": {
                "version": INIT_VERSION,
                "applied_at": datetime.now(timezone.utc).isoformat()
            }
        },
        upsert=True
    )
    return f"  [UPDATE] Version stamp updated to {INIT_VERSION}"


async def ensure_schema(db, dry_run: bool = False) -> List[str]:
    """Create every collection and index the ledger relies on. Safe to repeat."""
    results = []
    for collection_name in REQUIRED_COLLECTIONS:
        results.append(await create_collection_if_not_exists(db, collection_name, dry_run))

    for collection_name, index_spec, options in REQUIRED_INDEXES:
        results.append(await create_index_if_not_exists(db, collection_name, index_spec, options, dry_run))

    results.append(await update_version_stamp(db, dry_run))
    return results


async def run_init(dry_run: bool = False):
    """Run the database initialization."""
    from dotenv import load_dotenv

    # Load environment
    env_path = Path(__file__).parent.parent / '.env'
    load_dotenv(env_path)

    allowed, env_message = check_environment()
    logger.info(env_message)

    if not allowed:
        logger.error("Init blocked due to environment guard")
        sys.exit(1)

    mongo_url = os.environ.get('MONGO_URL')
    db_name = os.environ.get('DB_NAME')

    if not mongo_url or not db_name:
        logger.error("Missing MONGO_URL or DB_NAME environment variables")
        sys.exit(1)

    logger.info(f"Database: {db_name}")
    logger.info(f"Dry Run: {dry_run}")
    logger.info("-" * 50)

    client = AsyncIOMotorClient(mongo_url, tz_aware=True)
    db = client[db_name]

    try:
        await client.admin.command('ping')
        logger.info("MongoDB connection: OK")
    except Exception as e:
        logger.error(f"MongoDB connection failed: {e}")
        sys.exit(1)

    logger.info("\n=== Collections / Indexes ===")
    for line in await ensure_schema(db, dry_run):
        logger.info(line)

    client.close()

    logger.info("\n" + "=" * 50)
    logger.info("SUCCESS: Points Wallet DB init completed")
    logger.info("=" * 50)


def main():
    """Main entry point."""
    import argparse

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s'
    )

    parser = argparse.ArgumentParser(
        description="Points Wallet Database Initialization",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Development (default)
    python -m points_wallet.db_init

    # Dry run (no changes)
    python -m points_wallet.db_init --dry-run

    # Production
    ENVIRONMENT=production POINTS_WALLET_INIT_CONFIRM=YES python -m points_wallet.db_init
        """
    )
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Print what would be done without making changes'
    )

    args = parser.parse_args()

    asyncio.run(run_init(dry_run=args.dry_run))


if __name__ == "__main__":
    main()
