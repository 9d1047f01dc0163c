"""Raw pharmacy fact tables read by the KPI engine.

- Dimension tables: Pharmacy, GlobalProduct, InternalProduct
- Fact tables: InventorySnapshot, Sale, Order, ProductOrder
"""

from app.features.data_platform.models import (
    GlobalProduct,
    InternalProduct,
    InventorySnapshot,
    Order,
    Pharmacy,
    ProductOrder,
    Sale,
)

__all__ = [
    "GlobalProduct",
    "InternalProduct",
    "InventorySnapshot",
    "Order",
    "Pharmacy",
    "ProductOrder",
    "Sale",
]
