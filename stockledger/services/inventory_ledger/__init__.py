"""
Inventory Ledger - Canonical Entry Point

Single source of truth for stock quantities. Every change to
``Product.quantity_in_stock`` goes through ``apply_delta``/``post_adjustment``,
which write exactly one immutable InventoryAdjustment per call.
"""

from ._core import LedgerContext, apply_delta, current_quantity, post_adjustment
from ._applier import ADJUSTMENT_SIGN_RULES, create_adjustment, get_adjustment
from ._history import (
    category_summary,
    inventory_valuation,
    list_adjustments,
    low_stock_products,
    out_of_stock_products,
    shrinkage_summary,
)
from ._validation import LedgerIssue, validate_ledger_consistency

__all__ = [
    'LedgerContext',
    'apply_delta',
    'current_quantity',
    'post_adjustment',
    'create_adjustment',
    'get_adjustment',
    'ADJUSTMENT_SIGN_RULES',
    'list_adjustments',
    'shrinkage_summary',
    'low_stock_products',
    'out_of_stock_products',
    'inventory_valuation',
    'category_summary',
    'LedgerIssue',
    'validate_ledger_consistency',
]
