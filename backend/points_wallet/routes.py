"""
Points Wallet API Routes

Endpoints:
- GET /api/points-wallet - Get wallet balance and totals
- GET /api/points-wallet/summary - Balance plus what it can buy
- GET /api/points-wallet/ledger - Get transaction history
- GET /api/points-wallet/pricing - Feature prices in points
- GET /api/points-wallet/limits - 60/40 participant limits
- GET /api/points-wallet/features - Active purchased features
- POST /api/points-wallet/purchase/slots - Buy extra participant slots
- POST /api/points-wallet/purchase/visibility - Buy a visibility boost
- POST /api/points-wallet/purchase/premium - Buy a premium feature
- POST /api/points-wallet/redemptions - Redemption hook (internal)
- POST /api/points-wallet/admin/refund - Refund a spending entry (admin)

Business-rule rejections come back as 200 with success=false so the UI can
show them inline. A store outage is a 503.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from utils.auth import get_admin_user, get_current_business, verify_internal_service
from points_wallet.config import HISTORY_LIMITS
from points_wallet.models import (
    BoostPurchaseResult,
    FeaturePurchaseResult,
    LedgerHistoryResponse,
    PremiumFeatureRequest,
    RedemptionRequest,
    RefundRequest,
    RefundResult,
    SlotPurchaseRequest,
    SlotPurchaseResult,
    VisibilityBoostRequest,
    WalletResponse,
    WalletSummary,
)
from points_wallet.pricing import PricingCatalog
from points_wallet.protocols import LedgerStore, LedgerUnavailableError
from points_wallet.rule_engine import RuleEngine
from points_wallet.wallet_service import WalletService

logger = logging.getLogger(__name__)

points_wallet_router = APIRouter(prefix="/points-wallet", tags=["Points Wallet"])


# ==================== DEPENDENCIES ====================

def get_ledger_store() -> LedgerStore:
    """MongoDB-backed store on the shared database handle."""
    from database import db
    from points_wallet.mongo_store import MongoLedgerStore

    return MongoLedgerStore(db)


def get_wallet_service(store: LedgerStore = Depends(get_ledger_store)) -> WalletService:
    return WalletService(store)


def get_pricing_catalog(request: Request) -> PricingCatalog:
    """Catalog built once when the app is set up (see install_pricing_catalog)."""
    return request.app.state.pricing_catalog


def get_rule_engine(
    store: LedgerStore = Depends(get_ledger_store),
    wallet_service: WalletService = Depends(get_wallet_service),
    catalog: PricingCatalog = Depends(get_pricing_catalog)
) -> RuleEngine:
    return RuleEngine(store, catalog=catalog, wallet_service=wallet_service)


async def ledger_unavailable_handler(request: Request, exc: LedgerUnavailableError):
    logger.error(f"Ledger unavailable for {request.url.path}: {exc}")
    return JSONResponse(
        status_code=503,
        content={"detail": "Points ledger is temporarily unavailable. Please try again."}
    )


def register_exception_handlers(app: FastAPI):
    app.add_exception_handler(LedgerUnavailableError, ledger_unavailable_handler)


def install_pricing_catalog(app: FastAPI, catalog: Optional[PricingCatalog] = None) -> PricingCatalog:
    """Attach the pricing catalog to the app. Defaults to POINTS_PRICING_OVERRIDES from env."""
    app.state.pricing_catalog = catalog or PricingCatalog.from_env()
    return app.state.pricing_catalog


# ==================== WALLET ENDPOINTS ====================

@points_wallet_router.get("", response_model=WalletResponse)
async def get_wallet(
    business_id: str = Depends(get_current_business),
    wallet_service: WalletService = Depends(get_wallet_service)
):
    """
    Get the business's points wallet.

    The wallet is created with a zero balance on first access.
    """
    return await wallet_service.get_wallet(business_id)


@points_wallet_router.get("/summary", response_model=WalletSummary)
async def get_summary(
    business_id: str = Depends(get_current_business),
    engine: RuleEngine = Depends(get_rule_engine)
):
    """Wallet balance with quick purchase eligibility flags."""
    return await engine.get_wallet_summary(business_id)


@points_wallet_router.get("/ledger", response_model=LedgerHistoryResponse)
async def get_ledger(
    limit: int = Query(HISTORY_LIMITS["default"], ge=1, le=HISTORY_LIMITS["max"]),
    business_id: str = Depends(get_current_business),
    wallet_service: WalletService = Depends(get_wallet_service)
):
    """
    Get points transaction history (ledger entries), most recent first.

    Shows every balance change: redemptions, purchases and refunds.
    """
    entries = await wallet_service.get_transaction_history(business_id, limit)
    return LedgerHistoryResponse(business_id=business_id, entries=entries, count=len(entries))


# ==================== CATALOG / LIMITS ====================

@points_wallet_router.get("/pricing")
async def get_pricing(catalog: PricingCatalog = Depends(get_pricing_catalog)):
    """Get point costs for every purchasable feature."""
    return {
        "items": catalog.items(),
        "currency": "points"
    }


@points_wallet_router.get("/limits")
async def get_limits(
    business_id: str = Depends(get_current_business),
    engine: RuleEngine = Depends(get_rule_engine)
):
    """
    Participant limits for the current period.

    `limits` is null when no pool has been provisioned yet.
    """
    limits = await engine.get_participant_limits(business_id)
    eligibility = await engine.can_purchase_more_slots(business_id)
    return {
        "limits": limits,
        "eligibility": eligibility
    }


@points_wallet_router.get("/features")
async def get_features(
    business_id: str = Depends(get_current_business),
    engine: RuleEngine = Depends(get_rule_engine)
):
    features = await engine.get_active_features(business_id)
    return {
        "features": features,
        "count": len(features)
    }


# ==================== PURCHASE ENDPOINTS ====================

@points_wallet_router.post("/purchase/slots", response_model=SlotPurchaseResult)
async def purchase_slots(
    body: SlotPurchaseRequest,
    business_id: str = Depends(get_current_business),
    engine: RuleEngine = Depends(get_rule_engine)
):
    """
    Buy extra participant slots with points.

    Only possible once every organic slot of the month is used, and never
    beyond 40% of the monthly pool.
    """
    return await engine.purchase_participant_slots(business_id, body.count, body.idempotency_key)


@points_wallet_router.post("/purchase/visibility", response_model=BoostPurchaseResult)
async def purchase_visibility(
    body: VisibilityBoostRequest,
    business_id: str = Depends(get_current_business),
    engine: RuleEngine = Depends(get_rule_engine)
):
    """Buy a 24H or 7D visibility boost."""
    return await engine.purchase_visibility_boost(business_id, body.duration, body.idempotency_key)


@points_wallet_router.post("/purchase/premium", response_model=FeaturePurchaseResult)
async def purchase_premium(
    body: PremiumFeatureRequest,
    business_id: str = Depends(get_current_business),
    engine: RuleEngine = Depends(get_rule_engine)
):
    return await engine.purchase_premium_feature(business_id, body.sku, body.idempotency_key)


# ==================== INTERNAL / ADMIN ====================

@points_wallet_router.post("/redemptions")
async def record_redemption(
    body: RedemptionRequest,
    _: bool = Depends(verify_internal_service),
    wallet_service: WalletService = Depends(get_wallet_service)
):
    """
    Redemption hook called by the customer rewards service.

    Credits the business with the points the customer redeemed. The caller
    retries on 503 and must not resend a redemption that returned success.
    """
    if body.points <= 0:
        raise HTTPException(status_code=400, detail="Redeemed points must be positive")

    recorded = await wallet_service.on_customer_redemption(
        body.customer_id,
        body.business_id,
        body.points,
        body.reward_title
    )
    if not recorded:
        raise HTTPException(status_code=503, detail="Redemption credit could not be recorded")

    return {"success": True}


@points_wallet_router.post("/admin/refund", response_model=RefundResult)
async def refund_entry(
    body: RefundRequest,
    admin: dict = Depends(get_admin_user),
    engine: RuleEngine = Depends(get_rule_engine)
):
    """Refund a spending entry. The original entry stays; a REFUND entry is appended."""
    logger.info(f"Admin {admin.get('id')} refunding entry {body.entry_id} for {body.business_id}")
    return await engine.refund_entry(body.business_id, body.entry_id, body.reason)
