"""
Pure derivations over catalog records: line pricing, stock status, cart
totals, optimistic cart transitions, search and similarity scoring.

Nothing here performs I/O or touches the cache.
"""
import json
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from .models import (
    Cart,
    CartAnalytics,
    CartItem,
    CartLine,
    CartTotals,
    Product,
    StockStatus,
)

LOW_STOCK_THRESHOLD = 5

# Analytics price bands (upper bounds, exclusive)
PRICE_RANGE_LOW = 100
PRICE_RANGE_MEDIUM = 1000


def line_key(product_id: str, selected_variants: Optional[Dict[str, Any]] = None) -> str:
    """Identity of a cart line: same product with the same variants."""
    variants = json.dumps(selected_variants or {}, sort_keys=True)
    return f"{product_id}_{variants}"


def get_stock_status(available_stock: int, requested_quantity: int) -> StockStatus:
    if available_stock <= 0:
        return StockStatus(status="out_of_stock", message="Out of stock", available=0)
    if available_stock < requested_quantity:
        return StockStatus(
            status="insufficient_stock",
            message=f"Only {available_stock} available",
            available=available_stock,
        )
    if available_stock <= LOW_STOCK_THRESHOLD:
        return StockStatus(
            status="low_stock",
            message=f"Only {available_stock} left",
            available=available_stock,
        )
    return StockStatus(status="in_stock", message="In stock", available=available_stock)


def enrich_cart_item(line: CartLine, products: Mapping[str, Product]) -> CartItem:
    """
    Join a raw cart line with its product and compute derived fields.

    A line whose product is unknown comes back with product=None and
    is_available=False.
    """
    base = line.model_dump(include={"product_id", "quantity", "selected_variants", "added_at"})
    key = line_key(line.product_id, line.selected_variants)
    product = products.get(line.product_id)

    if product is None:
        return CartItem(**base, product=None, is_available=False, key=key, error="Product not found")

    item_price = product.price or 0.0
    item_original_price = product.original_price or item_price
    item_total_price = item_price * line.quantity
    item_original_total_price = item_original_price * line.quantity
    item_discount = item_original_total_price - item_total_price

    return CartItem(
        **base,
        product=product,
        item_price=item_price,
        item_original_price=item_original_price,
        item_total_price=item_total_price,
        item_original_total_price=item_original_total_price,
        item_discount=item_discount,
        item_savings=max(item_discount, 0.0),
        is_available=product.stock >= line.quantity,
        stock_status=get_stock_status(product.stock, line.quantity),
        max_available_quantity=product.stock,
        display_name=product.name,
        display_image=product.images[0] if product.images else "",
        display_slug=product.slug,
        key=key,
    )


def calculate_cart_totals(items: List[CartItem]) -> CartTotals:
    """Totals over available lines; unavailable lines are summed separately."""
    totals = CartTotals()
    for item in items:
        if item.is_available:
            totals.total_price += item.item_total_price
            totals.total_original_price += item.item_original_total_price
            totals.total_discount += item.item_discount
        else:
            totals.unavailable_items_value += item.item_total_price

    totals.total_savings = totals.total_discount
    if totals.total_original_price > 0:
        totals.discount_percentage = round(totals.total_discount / totals.total_original_price * 100, 2)
    return totals


def build_cart(user_id: str, items: List[CartItem], now: datetime, optimistic: bool = False) -> Cart:
    totals = calculate_cart_totals(items)
    return Cart(
        user_id=user_id,
        items=items,
        total_items=sum(item.quantity for item in items),
        total_price=totals.total_price,
        total_original_price=totals.total_original_price,
        total_discount=totals.total_discount,
        total_savings=totals.total_savings,
        unavailable_items_value=totals.unavailable_items_value,
        last_updated=now,
        is_empty=len(items) == 0,
        has_unavailable_items=any(not item.is_available for item in items),
        optimistic_update=optimistic,
    )


def apply_line_change(
    cart: Cart,
    operation: str,
    product_id: str,
    quantity: int,
    selected_variants: Optional[Dict[str, Any]],
    product: Optional[Product],
    now: datetime,
) -> Cart:
    """
    Speculative cart transition for "add", "update" or "remove".

    Raises:
        ValueError: unknown operation, or update of a line not in the cart
    """
    key = line_key(product_id, selected_variants)
    items = list(cart.items)
    index = next((i for i, item in enumerate(items) if item.key == key), None)

    if operation == "add":
        if index is not None:
            existing = items[index]
            line = CartLine(
                product_id=existing.product_id,
                quantity=existing.quantity + quantity,
                selected_variants=existing.selected_variants,
                added_at=existing.added_at,
            )
            items[index] = enrich_cart_item(line, _product_map(product or existing.product))
        else:
            line = CartLine(
                product_id=product_id,
                quantity=quantity,
                selected_variants=selected_variants or {},
                added_at=now,
            )
            items.append(enrich_cart_item(line, _product_map(product)))
    elif operation == "update":
        if index is None:
            raise ValueError(f"Product {product_id} is not in the cart")
        existing = items[index]
        line = CartLine(
            product_id=existing.product_id,
            quantity=quantity,
            selected_variants=existing.selected_variants,
            added_at=existing.added_at,
        )
        items[index] = enrich_cart_item(line, _product_map(product or existing.product))
    elif operation == "remove":
        if index is not None:
            del items[index]
    else:
        raise ValueError(f"Unknown cart operation {operation!r}")

    return build_cart(cart.user_id, items, now, optimistic=True)


def _product_map(product: Optional[Product]) -> Dict[str, Product]:
    return {product.id: product} if product is not None else {}


def cart_analytics(cart: Cart) -> CartAnalytics:
    categories: Dict[str, int] = {}
    brands: Dict[str, int] = {}
    price_ranges = {"low": 0, "medium": 0, "high": 0}

    for item in cart.items:
        if item.product is None:
            continue
        category = item.product.category or "uncategorized"
        brand = item.product.brand or "unbranded"
        categories[category] = categories.get(category, 0) + item.quantity
        brands[brand] = brands.get(brand, 0) + item.quantity

        price = item.product.price
        if price < PRICE_RANGE_LOW:
            price_ranges["low"] += item.quantity
        elif price < PRICE_RANGE_MEDIUM:
            price_ranges["medium"] += item.quantity
        else:
            price_ranges["high"] += item.quantity

    return CartAnalytics(
        total_items=cart.total_items,
        unique_products=len(cart.items),
        total_value=cart.total_price,
        average_item_price=cart.total_price / cart.total_items if cart.total_items > 0 else 0.0,
        total_savings=cart.total_savings,
        categories=categories,
        brands=brands,
        price_ranges=price_ranges,
        unavailable_items=sum(1 for item in cart.items if not item.is_available),
    )


# ===== SCORING =====

def search_score(product: Product, query: str) -> int:
    """
    Relevance of a product for a free-text query.

    Name match 100, brand 80, category 60, tag 40 each, plus 20 per query
    term found anywhere in the searchable text.
    """
    normalized = query.lower().strip()
    terms = [term for term in normalized.split() if len(term) > 1]
    searchable = " ".join(
        [
            product.name,
            product.description or "",
            product.short_description or "",
            product.category or "",
            product.brand or "",
            *product.tags,
            *product.features,
        ]
    ).lower()

    score = 0
    if normalized in product.name.lower():
        score += 100
    if product.brand and normalized in product.brand.lower():
        score += 80
    if product.category and normalized in product.category.lower():
        score += 60
    score += 20 * sum(1 for term in terms if term in searchable)
    score += 40 * sum(1 for tag in product.tags if normalized in tag.lower())
    return score


def search_products(products: List[Product], query: str) -> List[Product]:
    """Products with a positive score, best first (stable for ties)."""
    scored = [(search_score(p, query), p) for p in products]
    scored = [item for item in scored if item[0] > 0]
    scored.sort(key=lambda item: item[0], reverse=True)
    return [p for _, p in scored]


def similarity_score(base: Product, other: Product) -> float:
    score = 0.0
    if base.category and base.category == other.category:
        score += 50
    if base.brand and base.brand == other.brand:
        score += 30

    avg_price = (base.price + other.price) / 2
    if avg_price > 0:
        score += max(0.0, 20 - abs(base.price - other.price) / avg_price * 100)

    score += max(0.0, 10 - abs(base.rating - other.rating) * 2)
    score += 15 * len(set(base.tags) & set(other.tags))
    return score
