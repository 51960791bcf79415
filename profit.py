"""
profit.py — resale profit estimate for a priced item.

Marketplace fee is a final-value percentage plus a fixed per-order charge.
"""
from __future__ import annotations

from dataclasses import dataclass

FEE_RATE         = 0.1325
FIXED_FEE        = 0.30
PROFIT_THRESHOLD = 15.0


@dataclass
class ProfitCalculation:
    sold_price: float
    shipping_cost: float
    item_cost: float
    fees: float
    net_profit: float

    @property
    def is_profitable(self) -> bool:
        return self.net_profit >= PROFIT_THRESHOLD

    @property
    def margin_pct(self) -> float:
        if self.sold_price <= 0:
            return 0.0
        return round(self.net_profit / self.sold_price * 100, 1)


def calculate(sold_price: float, shipping_cost: float = 0.0, item_cost: float = 0.0) -> ProfitCalculation:
    sold_price = max(0.0, float(sold_price or 0))
    shipping_cost = max(0.0, float(shipping_cost or 0))
    item_cost = max(0.0, float(item_cost or 0))

    fees = round(sold_price * FEE_RATE + FIXED_FEE, 2) if sold_price > 0 else 0.0
    net = round(sold_price - fees - shipping_cost - item_cost, 2)
    return ProfitCalculation(
        sold_price=sold_price,
        shipping_cost=shipping_cost,
        item_cost=item_cost,
        fees=fees,
        net_profit=net,
    )
