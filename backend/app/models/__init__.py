from .catalog import Product, Location, LocationStock, Vendor
from .customers import Customer, LoyaltyMember, LoyaltyTransaction
from .inventory import StockMovement, InventoryTransfer
from .sales import Sale, SaleLineItem, PaymentTransaction, MpesaTransaction
from .purchasing import PurchaseOrder, POItem, DeliveryNote, DeliveryNoteItem
from .documents import Return, ReturnItem, DocumentSequence
from .settings import Setting

__all__ = [
    'Product', 'Location', 'LocationStock', 'Vendor',
    'Customer', 'LoyaltyMember', 'LoyaltyTransaction',
    'StockMovement', 'InventoryTransfer',
    'Sale', 'SaleLineItem', 'PaymentTransaction', 'MpesaTransaction',
    'PurchaseOrder', 'POItem', 'DeliveryNote', 'DeliveryNoteItem',
    'Return', 'ReturnItem', 'DocumentSequence',
    'Setting',
]
