from .customers import Customer
from .inventory import Product, StockMovement, PurchaseOrder, PurchaseOrderLine
from .sales import Sale, SaleLine, Payment
from .documents import DocumentSequence

__all__ = [
    'Customer',
    'Product', 'StockMovement', 'PurchaseOrder', 'PurchaseOrderLine',
    'Sale', 'SaleLine', 'Payment',
    'DocumentSequence',
]
