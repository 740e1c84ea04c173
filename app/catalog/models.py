"""
Pydantic schemas for catalog records.

These are the payloads the cache holds. SCHEMAS maps each cached data type
to the adapter used to rehydrate persisted entries.
"""
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter

from app.cache import DataType


# ===== PRODUCT SCHEMAS =====

class Product(BaseModel):
    """Product record as stored in the products collection"""
    id: str
    name: str
    slug: Optional[str] = None
    description: str = ""
    short_description: Optional[str] = None
    category: Optional[str] = None
    brand: Optional[str] = None
    price: float = 0.0
    original_price: Optional[float] = None
    discount: float = 0.0
    has_discount: bool = False
    featured: bool = False
    stock: int = 0
    rating: float = 0.0
    review_count: int = 0
    images: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    features: List[str] = Field(default_factory=list)

    class Config:
        from_attributes = True
        coerce_numbers_to_str = True


class ProductFilter(BaseModel):
    """Options for a product list query"""
    page: int = Field(default=1, ge=1)
    limit: Optional[int] = Field(default=None, ge=1)
    category: Optional[str] = None
    brand: Optional[str] = None
    min_price: Optional[float] = None
    max_price: Optional[float] = None
    sort_by: str = "name"
    sort_order: Literal["asc", "desc"] = "asc"
    search: Optional[str] = None

    def cache_key(self, limit: int) -> str:
        """One key per distinct query: "list:<page>:<limit>:<category>:..."."""
        parts = [
            "list",
            self.page,
            limit,
            self.category or "",
            self.brand or "",
            "" if self.min_price is None else self.min_price,
            "" if self.max_price is None else self.max_price,
            self.sort_by,
            self.sort_order,
            (self.search or "").strip().lower(),
        ]
        return ":".join(str(p) for p in parts)


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    has_more: bool


class ProductPage(BaseModel):
    """One page of a product list with pagination metadata"""
    products: List[Product]
    pagination: Pagination
    filters: ProductFilter
    fallback_used: bool = False


class FacetCount(BaseModel):
    """Category or brand with its product count"""
    id: str
    name: str
    product_count: int


class SearchResults(BaseModel):
    query: str
    products: List[Product]
    total: int


# ===== CART SCHEMAS =====

class CartLine(BaseModel):
    """Raw cart line as stored in the carts collection"""
    product_id: str
    quantity: int = Field(ge=1)
    selected_variants: Dict[str, Any] = Field(default_factory=dict)
    added_at: Optional[datetime] = None

    class Config:
        coerce_numbers_to_str = True


class StockStatus(BaseModel):
    status: Literal["out_of_stock", "insufficient_stock", "low_stock", "in_stock"]
    message: str
    available: int


class CartItem(CartLine):
    """Cart line enriched with product data and derived pricing"""
    product: Optional[Product] = None
    item_price: float = 0.0
    item_original_price: float = 0.0
    item_total_price: float = 0.0
    item_original_total_price: float = 0.0
    item_discount: float = 0.0
    item_savings: float = 0.0
    is_available: bool = False
    stock_status: Optional[StockStatus] = None
    max_available_quantity: int = 0
    display_name: str = ""
    display_image: str = ""
    display_slug: Optional[str] = None
    key: str = ""
    error: Optional[str] = None


class CartTotals(BaseModel):
    total_price: float = 0.0
    total_original_price: float = 0.0
    total_discount: float = 0.0
    total_savings: float = 0.0
    unavailable_items_value: float = 0.0
    discount_percentage: float = 0.0


class Cart(BaseModel):
    """Assembled cart for one user"""
    user_id: str
    items: List[CartItem] = Field(default_factory=list)
    total_items: int = 0
    total_price: float = 0.0
    total_original_price: float = 0.0
    total_discount: float = 0.0
    total_savings: float = 0.0
    unavailable_items_value: float = 0.0
    last_updated: Optional[datetime] = None
    is_empty: bool = True
    has_unavailable_items: bool = False
    optimistic_update: bool = False


class PriceChange(BaseModel):
    old: float
    new: float
    difference: float


class ItemValidation(BaseModel):
    product_id: str
    original_quantity: int
    is_valid: bool = True
    issues: List[str] = Field(default_factory=list)
    suggested_action: Optional[Literal["remove", "reduce"]] = None
    suggested_quantity: Optional[int] = None
    price_change: Optional[PriceChange] = None


class CartValidation(BaseModel):
    is_valid: bool
    has_changes: bool
    items: List[ItemValidation]
    validated_at: datetime


class CartAnalytics(BaseModel):
    total_items: int
    unique_products: int
    total_value: float
    average_item_price: float
    total_savings: float
    categories: Dict[str, int]
    brands: Dict[str, int]
    price_ranges: Dict[str, int]
    unavailable_items: int


# ===== PERSISTENCE ADAPTERS =====

SCHEMAS: Dict[DataType, TypeAdapter] = {
    DataType.PRODUCTS: TypeAdapter(Product),
    DataType.PRODUCT_LISTS: TypeAdapter(Union[ProductPage, List[Product]]),
    DataType.FACETS: TypeAdapter(List[FacetCount]),
    DataType.SEARCHES: TypeAdapter(SearchResults),
    DataType.CARTS: TypeAdapter(Cart),
}
