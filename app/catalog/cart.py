"""
Cart façade: assembled carts through the cache, mutations through the
optimistic mutator.

Raw carts live in the "carts" collection, one document per user:
{"user_id": ..., "items": [CartLine, ...]}. The cached value is the
assembled Cart (lines joined with their products, totals computed).
"""
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from app.cache import CacheEvent, CacheStore, DataType, OptimisticMutator
from app.store import DocumentStore

from .models import Cart, CartAnalytics, CartLine, CartValidation, ItemValidation, PriceChange
from .pricing import apply_line_change, build_cart, cart_analytics, enrich_cart_item, line_key
from .products import ProductNotFoundError, ProductService

logger = logging.getLogger("catalog.cart")

CARTS_COLLECTION = "carts"

# Price differences below this are rounding noise
PRICE_DRIFT_TOLERANCE = 0.01


def cart_key(user_id: str) -> str:
    return f"cart:{user_id}"


def _now() -> datetime:
    return datetime.now(timezone.utc)


class CartService:
    """
    Cached carts with optimistic add/update/remove.

    A mutation is visible in the cache before the remote write; the write
    either confirms it (the cart is then re-read on next access) or the
    pre-mutation cart is restored and the error re-raised.
    """

    def __init__(
        self,
        cache: CacheStore,
        documents: DocumentStore,
        products: ProductService,
        mutator: Optional[OptimisticMutator] = None,
    ):
        self._cache = cache
        self._documents = documents
        self._products = products
        self._mutator = mutator or OptimisticMutator(cache)

    # ===== READS =====

    def get_cart(self, user_id: str, use_cache: bool = True) -> Cart:
        _require_user(user_id)
        user_id = str(user_id)
        if not use_cache:
            return self._fetch_cart(user_id)
        return self._cache.get(cart_key(user_id), DataType.CARTS, lambda: self._fetch_cart(user_id))

    def _read_lines(self, user_id: str) -> List[CartLine]:
        doc = self._documents.get(CARTS_COLLECTION, user_id)
        if not doc:
            return []
        return [CartLine.model_validate(line) for line in doc.get("items", [])]

    def _fetch_cart(self, user_id: str) -> Cart:
        logger.info(f"Assembling cart for user {user_id}")
        lines = self._read_lines(user_id)
        if not lines:
            return build_cart(user_id, [], _now())

        product_ids = list(dict.fromkeys(line.product_id for line in lines))
        products = self._products.get_many(product_ids)

        items = []
        for line in lines:
            item = enrich_cart_item(line, products)
            if item.product is None:
                logger.warning(f"Dropping cart line for missing product {line.product_id} (user {user_id})")
                continue
            items.append(item)

        cart = build_cart(user_id, items, _now())
        logger.info(f"Cart loaded for user {user_id}: {len(items)} items, {cart.total_price:.2f} total")
        return cart

    # ===== MUTATIONS =====

    def add_item(
        self,
        user_id: str,
        product_id: str,
        quantity: int = 1,
        selected_variants: Optional[Dict[str, Any]] = None,
    ) -> Cart:
        """
        Add a product to the cart (merging with an identical line).

        Raises:
            ValueError: missing ids, non-positive quantity or insufficient stock
            ProductNotFoundError: the product does not exist
            WriteError: the remote write failed (the cart was rolled back)
        """
        _require_user(user_id)
        if not product_id:
            raise ValueError("Product ID is required")
        if quantity < 1:
            raise ValueError("Quantity must be at least 1")
        user_id, product_id = str(user_id), str(product_id)

        product = self._products.get_one(product_id)
        if product is None:
            raise ProductNotFoundError(product_id)
        if product.stock < quantity:
            raise ValueError(f"Insufficient stock. Only {product.stock} items available.")

        logger.info(f"Adding to cart: {product_id} x{quantity} for user {user_id}")
        return self._mutate(user_id, "add", product_id, quantity, selected_variants, product)

    def update_item(
        self,
        user_id: str,
        product_id: str,
        quantity: int,
        selected_variants: Optional[Dict[str, Any]] = None,
    ) -> Cart:
        """Set a line's quantity; zero or less removes the line."""
        _require_user(user_id)
        if not product_id:
            raise ValueError("Product ID is required")
        if quantity <= 0:
            return self.remove_item(user_id, product_id, selected_variants)
        user_id, product_id = str(user_id), str(product_id)

        product = self._products.get_one(product_id)
        if product is not None and product.stock < quantity:
            raise ValueError(f"Insufficient stock. Only {product.stock} items available.")

        logger.info(f"Updating cart item {product_id} to quantity {quantity} for user {user_id}")
        return self._mutate(user_id, "update", product_id, quantity, selected_variants, product)

    def remove_item(
        self,
        user_id: str,
        product_id: str,
        selected_variants: Optional[Dict[str, Any]] = None,
    ) -> Cart:
        _require_user(user_id)
        if not product_id:
            raise ValueError("Product ID is required")
        user_id, product_id = str(user_id), str(product_id)

        logger.info(f"Removing from cart: {product_id} for user {user_id}")
        return self._mutate(user_id, "remove", product_id, 0, selected_variants, None)

    def _mutate(self, user_id, operation, product_id, quantity, selected_variants, product) -> Cart:
        result = self._mutator.mutate(
            cart_key(user_id),
            DataType.CARTS,
            fetch_fn=lambda: self._fetch_cart(user_id),
            transform_fn=lambda cart: apply_line_change(
                cart, operation, product_id, quantity, selected_variants, product, _now()
            ),
            remote_write_fn=lambda _cart: self._write_line(
                user_id, operation, product_id, quantity, selected_variants
            ),
        )
        return result.speculative

    def _write_line(
        self,
        user_id: str,
        operation: str,
        product_id: str,
        quantity: int,
        selected_variants: Optional[Dict[str, Any]],
    ) -> int:
        """Apply one line change to the stored cart; returns the line count."""
        lines = self._read_lines(user_id)
        key = line_key(product_id, selected_variants)
        index = next(
            (i for i, line in enumerate(lines) if line_key(line.product_id, line.selected_variants) == key),
            None,
        )

        if operation == "add":
            if index is None:
                lines.append(CartLine(
                    product_id=product_id,
                    quantity=quantity,
                    selected_variants=selected_variants or {},
                    added_at=_now(),
                ))
            else:
                lines[index].quantity += quantity
        elif operation == "update" and index is not None:
            lines[index].quantity = quantity
        elif operation == "remove" and index is not None:
            del lines[index]

        self._documents.set(CARTS_COLLECTION, user_id, {
            "user_id": user_id,
            "items": [line.model_dump(mode="json") for line in lines],
        })
        return len(lines)

    def clear_cart(self, user_id: str) -> bool:
        """Delete the stored cart, then drop the cached one."""
        _require_user(user_id)
        user_id = str(user_id)
        logger.info(f"Clearing cart for user {user_id}")
        deleted = self._documents.delete(CARTS_COLLECTION, user_id)
        self.invalidate_one(user_id)
        return deleted

    # ===== VALIDATION & ANALYTICS =====

    def validate_cart(self, user_id: str) -> CartValidation:
        """
        Check the stored cart against fresh product data.

        Reports products that no longer exist, lines exceeding stock (with a
        suggested quantity) and prices that changed since the cart was cached.
        """
        _require_user(user_id)
        user_id = str(user_id)
        logger.info(f"Validating cart items for user {user_id}")

        seen_prices = {item.key: item.item_price for item in self.get_cart(user_id).items}
        lines = self._read_lines(user_id)
        products = self._products.get_many([line.product_id for line in lines], use_cache=False)

        results = []
        has_changes = False
        for line in lines:
            validation = ItemValidation(product_id=line.product_id, original_quantity=line.quantity)
            product = products.get(line.product_id)

            if product is None:
                validation.is_valid = False
                validation.issues.append("Product no longer exists")
                validation.suggested_action = "remove"
                has_changes = True
            else:
                if product.stock < line.quantity:
                    validation.is_valid = False
                    validation.issues.append(f"Insufficient stock ({product.stock} available)")
                    validation.suggested_quantity = product.stock
                    validation.suggested_action = "reduce" if product.stock > 0 else "remove"
                    has_changes = True

                seen = seen_prices.get(line_key(line.product_id, line.selected_variants))
                if seen is not None and abs(product.price - seen) > PRICE_DRIFT_TOLERANCE:
                    validation.issues.append(f"Price changed from {seen:.2f} to {product.price:.2f}")
                    validation.price_change = PriceChange(
                        old=seen, new=product.price, difference=product.price - seen
                    )

            results.append(validation)

        return CartValidation(
            is_valid=not has_changes,
            has_changes=has_changes,
            items=results,
            validated_at=_now(),
        )

    @staticmethod
    def analytics(cart: Optional[Cart]) -> Optional[CartAnalytics]:
        if cart is None:
            return None
        return cart_analytics(cart)

    # ===== OBSERVATION & CACHE CONTROL =====

    def subscribe(self, user_id: str, callback: Callable[[CacheEvent], None]) -> Callable[[], None]:
        """
        Notify callback of every change to one user's cached cart
        (speculative sets, rollbacks, invalidations).
        """
        _require_user(user_id)
        key = cart_key(str(user_id))

        def listener(event: CacheEvent) -> None:
            if event.data_type == DataType.CARTS and event.key == key:
                callback(event)

        return self._cache.subscribe(listener)

    def invalidate_one(self, user_id: str) -> int:
        return self._cache.invalidate(cart_key(str(user_id)), DataType.CARTS)

    def invalidate_all(self) -> int:
        return self._cache.invalidate("", DataType.CARTS)


def _require_user(user_id: Optional[str]) -> None:
    if not user_id:
        raise ValueError("User ID is required")
