"""
Shared fixtures: a controllable clock, a seeded SQL document store and a
fully wired service container.
"""
import pytest

from app.cache import CacheStore, MemoryKeyValueStore, PersistenceBridge
from app.catalog import SCHEMAS, CartService, ProductService
from app.store import SqlDocumentStore


class FakeClock:
    """Epoch-seconds clock that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


SAMPLE_PRODUCTS = [
    {
        "id": "p1", "name": "Trail Running Shoe", "slug": "trail-running-shoe",
        "category": "shoes", "brand": "Stride", "price": 120.0, "original_price": 150.0,
        "discount": 20.0, "has_discount": True, "featured": True, "stock": 10,
        "rating": 4.6, "tags": ["running", "outdoor"], "images": ["shoe.jpg"],
    },
    {
        "id": "p2", "name": "Road Running Shoe", "slug": "road-running-shoe",
        "category": "shoes", "brand": "Stride", "price": 100.0, "stock": 3,
        "rating": 4.2, "tags": ["running"],
    },
    {
        "id": "p3", "name": "Hiking Boot", "slug": "hiking-boot",
        "category": "shoes", "brand": "Summit", "price": 180.0, "stock": 0,
        "rating": 4.8, "tags": ["outdoor"],
    },
    {
        "id": "p4", "name": "Water Bottle", "slug": "water-bottle",
        "category": "accessories", "brand": "Hydra", "price": 15.0, "original_price": 20.0,
        "discount": 25.0, "has_discount": True, "stock": 50, "rating": 3.9,
    },
    {
        "id": "p5", "name": "Camping Tent", "slug": "camping-tent",
        "category": "outdoor", "brand": "Summit", "price": 1200.0, "stock": 2,
        "rating": 4.4, "featured": True, "tags": ["outdoor", "camping"],
    },
]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def document_store(tmp_path):
    store = SqlDocumentStore(f"sqlite:///{tmp_path / 'catalog.db'}")
    for product in SAMPLE_PRODUCTS:
        store.set("products", product["id"], product)
    yield store
    store.dispose()


@pytest.fixture
def cache(clock):
    store = CacheStore(clock=clock)
    yield store
    store.dispose()


@pytest.fixture
def kv_store():
    return MemoryKeyValueStore()


@pytest.fixture
def persistent_cache(clock, kv_store):
    """Cache mirrored into kv_store."""
    store = CacheStore(clock=clock, persistence=PersistenceBridge(kv_store, SCHEMAS))
    yield store
    store.dispose()


@pytest.fixture
def product_service(cache, document_store):
    return ProductService(cache, document_store, items_per_page=2)


@pytest.fixture
def cart_service(cache, document_store, product_service):
    return CartService(cache, document_store, product_service)
