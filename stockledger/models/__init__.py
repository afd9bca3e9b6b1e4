"""Models package - imports all models for the application"""
from ..extensions import db

# Import in dependency order for table creation
from .product import Product
from .document_sequence import DocumentSequence
from .inventory_adjustment import (
    ADJUSTMENT_TYPES,
    LOSS_ADJUSTMENT_TYPES,
    MANUAL_ADJUSTMENT_TYPES,
    ImmutableAuditRecordError,
    InventoryAdjustment,
)
from .terminal import Terminal
from .transaction import PAYMENT_METHODS, Payment, Transaction, TransactionItem
from .count_session import COUNT_TYPES, CountSession, CountSessionCounter, InventoryCount
from .reconciliation import Reconciliation
from .snapshot import SNAPSHOT_TYPES, InventorySnapshot
from .sync_operation import SYNC_OPERATION_TYPES, SyncOperation
from .idempotency import IdempotencyRecord

__all__ = [
    'db',
    'Product',
    'DocumentSequence',
    'InventoryAdjustment',
    'ImmutableAuditRecordError',
    'ADJUSTMENT_TYPES',
    'MANUAL_ADJUSTMENT_TYPES',
    'LOSS_ADJUSTMENT_TYPES',
    'Terminal',
    'Transaction',
    'TransactionItem',
    'Payment',
    'PAYMENT_METHODS',
    'CountSession',
    'CountSessionCounter',
    'InventoryCount',
    'COUNT_TYPES',
    'Reconciliation',
    'InventorySnapshot',
    'SNAPSHOT_TYPES',
    'SyncOperation',
    'SYNC_OPERATION_TYPES',
    'IdempotencyRecord',
]
