from .catalog import Product, WholesaleTier, StockEntry
from .sales import Sale, SaleItem, Payment, Refund
from .sync import SyncQueueItem
from .audit import AuditRecord, AuditAction, DocumentSequence

__all__ = [
    'Product', 'WholesaleTier', 'StockEntry',
    'Sale', 'SaleItem', 'Payment', 'Refund',
    'SyncQueueItem',
    'AuditRecord', 'AuditAction', 'DocumentSequence',
]
