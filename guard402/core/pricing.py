"""
Pricing of payment quotes.

Converts smallest-unit asset amounts from a quote into USD.
"""

import math
from dataclasses import dataclass
from decimal import ROUND_UP, Decimal
from typing import Callable, Dict

from .quote import PaymentOption, PaymentQuote


@dataclass(frozen=True)
class AssetPricing:
    """How to turn smallest units of an asset into USD."""
    decimals: int
    usd_per_token: Decimal


@dataclass(frozen=True)
class AssetPricingTable:
    """Fixed pricing table for supported settlement assets."""
    assets: Dict[str, AssetPricing]

    def get_pricing(self, asset: str) -> AssetPricing:
        """Get pricing for an asset symbol (case-insensitive).

        Raises:
            ValueError: If the asset is not supported
        """
        pricing = self.assets.get(asset.upper())
        if pricing is None:
            raise ValueError(f"Unsupported asset: {asset}")
        return pricing


# Stablecoins only - no price feeds
ASSET_PRICING_TABLE = AssetPricingTable({
    "USDC": AssetPricing(decimals=6, usd_per_token=Decimal("1")),
    "USDT": AssetPricing(decimals=6, usd_per_token=Decimal("1")),
    "DAI": AssetPricing(decimals=18, usd_per_token=Decimal("1")),
})

USD_PRECISION = Decimal("0.000001")


def estimate_usd_from_quote(quote: PaymentQuote, option: PaymentOption) -> float:
    """Convert the selected option's amount into USD with conservative rounding.

    Args:
        quote: The payment quote (unused beyond the option, kept for the hook signature)
        option: The option that will be paid

    Returns:
        USD amount rounded UP to 6 decimal places

    Raises:
        ValueError: If the option's asset is not supported
    """
    pricing = ASSET_PRICING_TABLE.get_pricing(option.asset)
    tokens = Decimal(option.amount_required).scaleb(-pricing.decimals)
    usd = (tokens * pricing.usd_per_token).quantize(USD_PRECISION, rounding=ROUND_UP)
    return float(usd)


def flat_quote_estimator(usd_amount: float) -> Callable[[PaymentQuote, PaymentOption], float]:
    """Build a quote estimator that prices every quote at ``usd_amount``."""
    if not math.isfinite(usd_amount) or usd_amount < 0:
        raise ValueError("usd_amount must be a finite number >= 0")

    def estimate(quote: PaymentQuote, option: PaymentOption) -> float:
        return usd_amount

    return estimate
