"""
ShelfFlow 数据模型包（权威数据源只读映射）
"""
from .base import Base
from .catalog import Category, Supplier, Product, ProductVariant
from .customers import Customer
from .inventory import Location, InventoryItem

__all__ = [
    "Base",
    "Category",
    "Supplier",
    "Product",
    "ProductVariant",
    "Customer",
    "Location",
    "InventoryItem",
]
