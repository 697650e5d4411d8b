from .tenant import Tenant
from .user import User
from .product import Product
from .stock_movement import StockMovement

__all__ = ["Tenant", "User", "Product", "StockMovement"]
