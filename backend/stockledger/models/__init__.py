from .catalog import Category, Product
from .ledger import StockInEntry, SaleEntry, InventoryMovement

__all__ = [
    'Category', 'Product',
    'StockInEntry', 'SaleEntry', 'InventoryMovement',
]
