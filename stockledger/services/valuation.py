"""Pluggable unit-cost strategies used to price count variances and snapshots."""

from __future__ import annotations

from decimal import Decimal, ROUND_HALF_UP

from flask import current_app, has_app_context
from sqlalchemy import func

from ..extensions import db
from ..models import InventorySnapshot, Product

CENT = Decimal("0.01")


def quantize_money(value) -> Decimal:
    return Decimal(value or 0).quantize(CENT, rounding=ROUND_HALF_UP)


class ValuationStrategy:
    """Resolve the cost of one unit of a product."""

    name = "abstract"

    def unit_cost(self, product: Product) -> Decimal:
        raise NotImplementedError

    def value_of(self, product: Product, quantity: int) -> Decimal:
        return quantize_money(self.unit_cost(product) * quantity)


class CurrentCostValuation(ValuationStrategy):
    """Current cost price, falling back to the selling price when cost is unknown."""

    name = "current_cost"

    def unit_cost(self, product: Product) -> Decimal:
        if product.cost_price is not None:
            return Decimal(product.cost_price)
        return Decimal(product.base_price or 0)


class RetailPriceValuation(ValuationStrategy):
    name = "retail_price"

    def unit_cost(self, product: Product) -> Decimal:
        return Decimal(product.base_price or 0)


class WeightedAverageCostValuation(ValuationStrategy):
    """Quantity-weighted average of the cost prices captured in recent snapshots."""

    name = "weighted_average"

    def __init__(self, window: int = 30, fallback: ValuationStrategy | None = None):
        self.window = window
        self.fallback = fallback or CurrentCostValuation()

    def unit_cost(self, product: Product) -> Decimal:
        recent = (
            db.session.query(InventorySnapshot.quantity, InventorySnapshot.cost_price)
            .filter(
                InventorySnapshot.product_id == product.id,
                InventorySnapshot.cost_price.isnot(None),
                InventorySnapshot.quantity > 0,
            )
            .order_by(InventorySnapshot.taken_at.desc(), InventorySnapshot.id.desc())
            .limit(self.window)
            .subquery()
        )
        total_units, total_cost = db.session.query(
            func.sum(recent.c.quantity),
            func.sum(recent.c.quantity * recent.c.cost_price),
        ).one()
        if not total_units:
            return self.fallback.unit_cost(product)
        return (Decimal(total_cost) / Decimal(total_units)).quantize(CENT, rounding=ROUND_HALF_UP)


VALUATION_STRATEGIES = {
    CurrentCostValuation.name: CurrentCostValuation,
    RetailPriceValuation.name: RetailPriceValuation,
    WeightedAverageCostValuation.name: WeightedAverageCostValuation,
}


def get_valuation_strategy(name: str | None = None) -> ValuationStrategy:
    if name is None and has_app_context():
        name = current_app.config.get("VALUATION_METHOD")
    name = name or CurrentCostValuation.name
    try:
        return VALUATION_STRATEGIES[name]()
    except KeyError:
        raise ValueError(
            f"Unknown valuation method {name!r}; expected one of {sorted(VALUATION_STRATEGIES)}"
        ) from None
