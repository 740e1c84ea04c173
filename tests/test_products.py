"""
Tests for ProductService against a seeded SQL document store.
"""
import logging

import pytest

from app.cache import DataType
from app.catalog import Product, ProductFilter, ProductService
from app.store import SqlDocumentStore


class CountingStore:
    """Wraps a document store and counts calls per operation."""

    def __init__(self, inner):
        self.inner = inner
        self.calls = {}

    def __getattr__(self, name):
        target = getattr(self.inner, name)

        def wrapper(*args, **kwargs):
            self.calls[name] = self.calls.get(name, 0) + 1
            return target(*args, **kwargs)

        return wrapper


@pytest.fixture
def counting_store(document_store):
    return CountingStore(document_store)


@pytest.fixture
def counted_service(cache, counting_store):
    return ProductService(cache, counting_store, items_per_page=2)


# =============================================================================
# Single records
# =============================================================================

class TestGetOne:

    def test_returns_product_model(self, product_service):
        product = product_service.get_one("p1")
        assert isinstance(product, Product)
        assert product.name == "Trail Running Shoe"
        assert product.original_price == 150.0

    def test_second_read_is_served_from_cache(self, counted_service, counting_store):
        counted_service.get_one("p1")
        counted_service.get_one("p1")
        assert counting_store.calls["get"] == 1

    def test_bypass_cache(self, counted_service, counting_store):
        counted_service.get_one("p1", use_cache=False)
        counted_service.get_one("p1", use_cache=False)
        assert counting_store.calls["get"] == 2

    def test_unknown_product_is_none(self, product_service):
        assert product_service.get_one("missing") is None

    def test_empty_id_rejected(self, product_service):
        with pytest.raises(ValueError):
            product_service.get_one("")

    def test_get_by_slug(self, product_service):
        assert product_service.get_by_slug("hiking-boot").id == "p3"
        assert product_service.get_by_slug("nope") is None


class TestGetMany:

    def test_one_bulk_read_for_uncached(self, counted_service, counting_store):
        counted_service.get_one("p1")
        result = counted_service.get_many(["p1", "p2", "p3", "p2"])

        assert list(result) == ["p1", "p2", "p3"]
        assert counting_store.calls["get_many"] == 1

    def test_unknown_ids_omitted(self, product_service):
        assert list(product_service.get_many(["p1", "ghost"])) == ["p1"]

    def test_empty_input(self, counted_service, counting_store):
        assert counted_service.get_many([]) == {}
        assert "get_many" not in counting_store.calls


# =============================================================================
# Lists
# =============================================================================

class TestList:

    def test_pagination_metadata(self, product_service):
        page = product_service.list(ProductFilter(page=1))

        assert [p.name for p in page.products] == ["Camping Tent", "Hiking Boot"]
        assert page.pagination.total == 5
        assert page.pagination.limit == 2
        assert page.pagination.has_more
        assert not page.fallback_used

    def test_last_page(self, product_service):
        page = product_service.list(ProductFilter(page=3))
        assert [p.name for p in page.products] == ["Water Bottle"]
        assert not page.pagination.has_more

    def test_category_and_price_filters(self, product_service):
        page = product_service.list(ProductFilter(category="shoes", min_price=110, limit=10))
        assert [p.id for p in page.products] == ["p3", "p1"]

    def test_sort_descending_by_price(self, product_service):
        page = product_service.list(ProductFilter(sort_by="price", sort_order="desc", limit=3))
        assert [p.id for p in page.products] == ["p5", "p3", "p1"]

    def test_search_is_applied_client_side(self, product_service):
        page = product_service.list(ProductFilter(search="running", limit=10))
        assert {p.id for p in page.products} == {"p1", "p2"}
        assert page.pagination.total == 2

    def test_list_is_cached_per_filter(self, counted_service, counting_store):
        counted_service.list(ProductFilter(category="shoes"))
        counted_service.list(ProductFilter(category="shoes"))
        counted_service.list(ProductFilter(category="outdoor"))
        assert counting_store.calls["query"] == 2


class TestFallback:

    @pytest.fixture
    def limited_service(self, cache, tmp_path):
        store = SqlDocumentStore(f"sqlite:///{tmp_path / 'limited.db'}", max_index_fields=1)
        for doc in (
            {"id": "a", "name": "Alpha", "category": "x", "price": 30.0},
            {"id": "b", "name": "Bravo", "category": "x", "price": 10.0},
            {"id": "c", "name": "Charlie", "category": "y", "price": 20.0},
            {"id": "d", "name": "Delta", "category": "x", "price": 20.0},
        ):
            store.set("products", doc["id"], doc)
        yield ProductService(cache, store, items_per_page=2)
        store.dispose()

    def test_unsupported_query_filters_client_side(self, limited_service, caplog):
        with caplog.at_level(logging.WARNING, logger="catalog.products"):
            page = limited_service.list(ProductFilter(category="x", sort_by="price"))

        assert page.fallback_used
        assert [p.id for p in page.products] == ["b", "d"]
        assert page.pagination.total == 3
        assert page.pagination.has_more
        assert "client-side" in caplog.text

    def test_supported_query_runs_in_store(self, limited_service):
        page = limited_service.list(ProductFilter(sort_by="price", limit=10))
        assert not page.fallback_used
        assert [p.id for p in page.products][0] == "b"


# =============================================================================
# Derived lists and facets
# =============================================================================

class TestDerived:

    def test_featured_ordered_by_rating(self, product_service):
        assert [p.id for p in product_service.get_featured(6)] == ["p1", "p5"]

    def test_featured_falls_back_to_highest_rated(self, cache, tmp_path):
        store = SqlDocumentStore(f"sqlite:///{tmp_path / 'plain.db'}")
        store.set("products", "a", {"name": "A", "rating": 3.0})
        store.set("products", "b", {"name": "B", "rating": 5.0})
        service = ProductService(cache, store)

        assert [p.id for p in service.get_featured(1)] == ["b"]
        store.dispose()

    def test_discounted(self, product_service):
        assert [p.id for p in product_service.get_discounted(8)] == ["p4", "p1"]

    def test_related_prefers_same_brand(self, product_service):
        related = product_service.get_related("p1", limit=2)
        assert [p.id for p in related] == ["p2", "p3"]

    def test_related_for_unknown_product(self, product_service):
        assert product_service.get_related("ghost") == []

    def test_categories_and_brands(self, product_service):
        categories = {f.name: f.product_count for f in product_service.get_categories()}
        brands = {f.name: f.product_count for f in product_service.get_brands()}

        assert categories == {"shoes": 3, "accessories": 1, "outdoor": 1}
        assert brands == {"Stride": 2, "Summit": 2, "Hydra": 1}

    def test_search_ranks_name_matches_first(self, product_service):
        results = product_service.search("shoe")
        # the boot only matches through its category
        assert results.total == 3
        assert {p.id for p in results.products[:2]} == {"p1", "p2"}
        assert results.products[2].id == "p3"

    def test_short_search_returns_nothing(self, product_service):
        assert product_service.search("a").total == 0


# =============================================================================
# Cache control
# =============================================================================

class TestCacheControl:

    def test_warm(self, product_service, cache):
        results = product_service.warm(["p1", "p2", "ghost"])
        assert {r.key for r in results if r.success} == {"p1", "p2", "ghost"}
        assert cache.contains("p1", DataType.PRODUCTS)
        assert not cache.contains("ghost", DataType.PRODUCTS)

    def test_preload_common_data(self, product_service, cache):
        assert product_service.preload_common_data() == {
            "featured": True, "discounted": True, "categories": True, "brands": True,
        }
        assert cache.contains("categories", DataType.FACETS)

    def test_invalidate_one_drops_product_and_related(self, product_service, cache):
        product_service.get_one("p1")
        product_service.get_one("p2")
        product_service.get_related("p1", limit=2)

        product_service.invalidate_one("p1")

        assert not cache.contains("p1", DataType.PRODUCTS)
        assert not cache.contains("related:p1:2", DataType.PRODUCT_LISTS)
        assert cache.contains("p2", DataType.PRODUCTS)

    def test_invalidate_all(self, product_service, cache):
        product_service.get_one("p1")
        product_service.get_categories()
        product_service.invalidate_all()
        assert cache.get_stats()["entries"] == 0
