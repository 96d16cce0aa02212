from points_wallet.routes import install_pricing_catalog, points_wallet_router, register_exception_handlers
from utils.environment import ENVIRONMENT
from fastapi import FastAPI, APIRouter
from dotenv import load_dotenv
from starlette.middleware.cors import CORSMiddleware
import os
import logging
from pathlib import Path

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# Create the main app
app = FastAPI(title="Business Points Ledger")

api_router = APIRouter(prefix="/api")


@api_router.get("/health")
async def health():
    from database import check_db_connection
    db_ok, db_error = await check_db_connection()
    return {
        "status": "ok" if db_ok else "degraded",
        "database": "connected" if db_ok else db_error,
        "environment": ENVIRONMENT
    }


# Points Wallet: business points balance, ledger and purchases
api_router.include_router(points_wallet_router)

app.include_router(api_router)
register_exception_handlers(app)
install_pricing_catalog(app)

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=[origin.strip() for origin in os.environ.get(
        'CORS_ORIGINS', 'http://localhost:3000').split(',')],
    allow_methods=["*"],
    allow_headers=["*"],
)

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@app.on_event("startup")
async def startup():
    # Check database connection first - fail fast if database is unavailable
    from database import check_db_connection, db
    db_ok, db_error = await check_db_connection()
    if not db_ok:
        logger.critical(f"Database connection failed on startup: {db_error}")
        raise RuntimeError(
            f"Cannot start application - database connection failed: {db_error}")

    # Collections and unique indexes the ledger depends on
    from points_wallet.db_init import ensure_schema
    for line in await ensure_schema(db):
        logger.info(line)

    logger.info(f"Points ledger started ({ENVIRONMENT})")


@app.on_event("shutdown")
async def shutdown_db_client():
    from database import client
    client.close()
