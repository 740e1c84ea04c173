"""
Catalog entity services (products and carts) on top of the cache.
"""
from .models import (
    SCHEMAS,
    Cart,
    CartAnalytics,
    CartItem,
    CartLine,
    CartTotals,
    CartValidation,
    FacetCount,
    ItemValidation,
    Pagination,
    Product,
    ProductFilter,
    ProductPage,
    SearchResults,
    StockStatus,
)
from .products import ProductNotFoundError, ProductService
from .cart import CartService, cart_key

__all__ = [
    # Schemas
    "SCHEMAS",
    "Cart",
    "CartAnalytics",
    "CartItem",
    "CartLine",
    "CartTotals",
    "CartValidation",
    "FacetCount",
    "ItemValidation",
    "Pagination",
    "Product",
    "ProductFilter",
    "ProductPage",
    "SearchResults",
    "StockStatus",
    # Services
    "CartService",
    "ProductNotFoundError",
    "ProductService",
    "cart_key",
]
