from .auth import User, UserCapability
from .catalog import Product, Warehouse, WarehouseStock, InventoryMovement
from .clients import Client, Voucher
from .orders import Sale, SaleItem, Payment, OrderLock

__all__ = [
    'User', 'UserCapability',
    'Product', 'Warehouse', 'WarehouseStock', 'InventoryMovement',
    'Client', 'Voucher',
    'Sale', 'SaleItem', 'Payment', 'OrderLock',
]
