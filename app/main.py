"""
Catalog Cache - Main FastAPI Application
Product and cart reads served through the data-access cache
"""
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from app.cache import DataType, FetchError, WriteError
from app.catalog import ProductFilter, ProductNotFoundError
from app.services import CatalogServices
from config.settings import settings

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("app.main")

# Version tracking
APP_VERSION = "v0.1.0"
APP_NAME = "Catalog Cache"
APP_STAGE = "Alpha"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create the service container unless one was installed beforehand."""
    owned = getattr(app.state, "services", None) is None
    if owned:
        app.state.services = CatalogServices.create(settings)
        try:
            app.state.services.initialize()
        except FetchError as e:
            logger.warning(f"Startup warmup skipped: {e.message}")
    try:
        yield
    finally:
        if owned:
            app.state.services.dispose()
            app.state.services = None


app = FastAPI(
    title=f"{APP_NAME} ({APP_STAGE})",
    description="Cached product catalog and carts over a remote document store",
    version=APP_VERSION,
    lifespan=lifespan,
)


def get_services(request: Request) -> CatalogServices:
    return request.app.state.services


# ===== ERROR MAPPING =====

@app.exception_handler(ValueError)
def value_error_handler(request: Request, exc: ValueError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(ProductNotFoundError)
def product_not_found_handler(request: Request, exc: ProductNotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(FetchError)
@app.exception_handler(WriteError)
def remote_error_handler(request: Request, exc):
    logger.warning(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=502, content=exc.to_dict())


# ===== SERVICE =====

@app.get("/health")
def health_check(request: Request):
    """Health check endpoint."""
    return get_services(request).health_check()


@app.get("/version")
def version_info():
    """Version information endpoint."""
    return {
        "name": APP_NAME,
        "version": APP_VERSION,
        "stage": APP_STAGE,
        "full": f"{APP_NAME} {APP_VERSION} ({APP_STAGE})"
    }


@app.get("/cache/stats")
def cache_stats(request: Request):
    """Get cache statistics."""
    return get_services(request).get_statistics()


class InvalidateRequest(BaseModel):
    """Request body for cache invalidation."""
    pattern: str = ""
    data_type: Optional[DataType] = None


@app.post("/cache/invalidate")
def cache_invalidate(body: InvalidateRequest, request: Request):
    """
    Invalidate cache entries whose key contains a pattern.

    An empty pattern with no data type drops everything.
    """
    cache = get_services(request).cache
    if not body.pattern and body.data_type is None:
        return {"invalidated": cache.clear()}
    return {"invalidated": cache.invalidate(body.pattern, body.data_type)}


# ===== PRODUCTS =====

@app.get("/products")
def list_products(
    request: Request,
    page: int = Query(default=1, ge=1, description="Page number"),
    limit: Optional[int] = Query(default=None, ge=1, le=settings.max_query_results, description="Page size"),
    category: Optional[str] = Query(default=None),
    brand: Optional[str] = Query(default=None),
    min_price: Optional[float] = Query(default=None, alias="minPrice"),
    max_price: Optional[float] = Query(default=None, alias="maxPrice"),
    sort_by: str = Query(default="name", alias="sortBy"),
    sort_order: str = Query(default="asc", alias="sortOrder", pattern="^(asc|desc)$"),
    search: Optional[str] = Query(default=None),
    use_cache: bool = Query(default=True, alias="useCache", description="Bypass cache and read fresh data"),
):
    """Get one page of products with pagination metadata."""
    product_filter = ProductFilter(
        page=page,
        limit=limit,
        category=category,
        brand=brand,
        min_price=min_price,
        max_price=max_price,
        sort_by=sort_by,
        sort_order=sort_order,
        search=search,
    )
    return get_services(request).products.list(product_filter, use_cache=use_cache)


@app.get("/products/{product_id}")
def get_product(product_id: str, request: Request):
    """Get product details by ID."""
    product = get_services(request).products.get_one(product_id)
    if product is None:
        raise HTTPException(status_code=404, detail="Product not found")
    return product


# ===== CART =====

class CartItemRequest(BaseModel):
    """Request body for adding a cart item."""
    product_id: str
    quantity: int = Field(default=1, ge=1)
    selected_variants: Dict[str, Any] = Field(default_factory=dict)


class CartLineRequest(BaseModel):
    """Request body identifying a cart line by its variants."""
    selected_variants: Dict[str, Any] = Field(default_factory=dict)


class CartQuantityRequest(CartLineRequest):
    """Request body for changing a cart line's quantity."""
    quantity: int


@app.get("/cart/{user_id}")
def get_cart(user_id: str, request: Request, use_cache: bool = Query(default=True, alias="useCache")):
    return get_services(request).carts.get_cart(user_id, use_cache=use_cache)


@app.post("/cart/{user_id}/items")
def add_cart_item(user_id: str, body: CartItemRequest, request: Request):
    """Add a product; the returned cart reflects the change immediately."""
    return get_services(request).carts.add_item(
        user_id, body.product_id, body.quantity, body.selected_variants
    )


@app.put("/cart/{user_id}/items/{product_id}")
def update_cart_item(user_id: str, product_id: str, body: CartQuantityRequest, request: Request):
    """Set a line's quantity (zero or less removes it)."""
    return get_services(request).carts.update_item(
        user_id, product_id, body.quantity, body.selected_variants
    )


@app.delete("/cart/{user_id}/items/{product_id}")
def remove_cart_item(
    user_id: str,
    product_id: str,
    request: Request,
    body: Optional[CartLineRequest] = None,
):
    """Remove a line; variants select which line of the product to drop."""
    selected_variants = body.selected_variants if body is not None else None
    return get_services(request).carts.remove_item(user_id, product_id, selected_variants)


@app.delete("/cart/{user_id}")
def clear_cart(user_id: str, request: Request):
    return {"cleared": get_services(request).carts.clear_cart(user_id)}
