from .inventory import Ingredient, InventoryBatch, Product, Recipe
from .sales import Sale, SaleItem, BatchConsumption
from .registers import RegisterSession, SESSION_OPEN, SESSION_CLOSED

__all__ = [
    'Ingredient', 'InventoryBatch', 'Product', 'Recipe',
    'Sale', 'SaleItem', 'BatchConsumption',
    'RegisterSession', 'SESSION_OPEN', 'SESSION_CLOSED',
]
