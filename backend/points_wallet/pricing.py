"""
Points Pricing Catalog

Static table mapping purchasable features to point costs. Prices are a
deployment-time setting: the defaults below can be overridden once at
startup through the POINTS_PRICING_OVERRIDES environment variable
(JSON object of SKU -> points), never at runtime.
"""

import json
import os
from datetime import timedelta
from enum import Enum
from types import MappingProxyType
from typing import Dict, Mapping, Optional


class FeatureSku(str, Enum):
    EXTRA_PARTICIPANT_SLOT = "EXTRA_PARTICIPANT_SLOT"
    VISIBILITY_BOOST_24H = "VISIBILITY_BOOST_24H"
    VISIBILITY_BOOST_7D = "VISIBILITY_BOOST_7D"
    PREMIUM_ANALYTICS_30D = "PREMIUM_ANALYTICS_30D"
    FEATURED_PLACEMENT_24H = "FEATURED_PLACEMENT_24H"
    PRIORITY_SUPPORT_30D = "PRIORITY_SUPPORT_30D"


# ==================== DEFAULT POINT COSTS ====================
POINTS_PRICING = {
    FeatureSku.EXTRA_PARTICIPANT_SLOT: 50,     # per extra participant
    FeatureSku.VISIBILITY_BOOST_24H: 200,
    FeatureSku.VISIBILITY_BOOST_7D: 1000,
    FeatureSku.PREMIUM_ANALYTICS_30D: 500,
    FeatureSku.FEATURED_PLACEMENT_24H: 300,
    FeatureSku.PRIORITY_SUPPORT_30D: 400,
}

# How long a purchased feature stays active
FEATURE_DURATIONS = {
    FeatureSku.VISIBILITY_BOOST_24H: timedelta(hours=24),
    FeatureSku.VISIBILITY_BOOST_7D: timedelta(days=7),
    FeatureSku.PREMIUM_ANALYTICS_30D: timedelta(days=30),
    FeatureSku.FEATURED_PLACEMENT_24H: timedelta(hours=24),
    FeatureSku.PRIORITY_SUPPORT_30D: timedelta(days=30),
}

# Activation record key per SKU (both boost SKUs share one visibility flag)
FEATURE_KEYS = {
    FeatureSku.VISIBILITY_BOOST_24H: "visibility_boost",
    FeatureSku.VISIBILITY_BOOST_7D: "visibility_boost",
    FeatureSku.PREMIUM_ANALYTICS_30D: "premium_analytics",
    FeatureSku.FEATURED_PLACEMENT_24H: "featured_placement",
    FeatureSku.PRIORITY_SUPPORT_30D: "priority_support",
}

PREMIUM_SKUS = frozenset({
    FeatureSku.PREMIUM_ANALYTICS_30D,
    FeatureSku.FEATURED_PLACEMENT_24H,
    FeatureSku.PRIORITY_SUPPORT_30D,
})

VISIBILITY_SKUS = {
    "24H": FeatureSku.VISIBILITY_BOOST_24H,
    "7D": FeatureSku.VISIBILITY_BOOST_7D,
}


class PricingCatalog:
    """Read-only SKU -> point cost table."""

    def __init__(self, prices: Optional[Mapping] = None):
        merged: Dict[FeatureSku, int] = dict(POINTS_PRICING)
        for sku, points in (prices or {}).items():
            merged[FeatureSku(sku)] = _validate_price(sku, points)
        self._prices = MappingProxyType(merged)

    @classmethod
    def from_env(cls) -> "PricingCatalog":
        """Build the catalog from defaults plus POINTS_PRICING_OVERRIDES."""
        raw = os.environ.get("POINTS_PRICING_OVERRIDES", "").strip()
        if not raw:
            return cls()

        try:
            overrides = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ValueError(f"POINTS_PRICING_OVERRIDES is not valid JSON: {e}")

        if not isinstance(overrides, dict):
            raise ValueError("POINTS_PRICING_OVERRIDES must be a JSON object")

        return cls(overrides)

    @property
    def prices(self) -> Mapping[FeatureSku, int]:
        return self._prices

    def cost(self, sku) -> int:
        return self._prices[FeatureSku(sku)]

    def duration(self, sku) -> Optional[timedelta]:
        return FEATURE_DURATIONS.get(FeatureSku(sku))

    def visibility_sku(self, duration: str) -> Optional[FeatureSku]:
        return VISIBILITY_SKUS.get(duration)

    def items(self):
        """Catalog listing for display."""
        return [
            {
                "sku": sku.value,
                "points": points,
                "duration_hours": (
                    int(FEATURE_DURATIONS[sku].total_seconds() // 3600)
                    if sku in FEATURE_DURATIONS else None
                ),
            }
            for sku, points in self._prices.items()
        ]


def _validate_price(sku, points) -> int:
    if isinstance(points, bool) or not isinstance(points, int) or points <= 0:
        raise ValueError(f"Price for {sku} must be a positive integer, got {points!r}")
    return points
