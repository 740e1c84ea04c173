"""
Product façade over the cache and the document store.

Every read goes through CacheStore so concurrent callers share one remote
read per key. Bulk reads go through the batch path (no N+1).
"""
import logging
from dataclasses import replace
from typing import Callable, Dict, List, Optional, Tuple

from app.cache import CacheStore, DataType, WarmResult
from app.store import Document, DocumentStore, FieldFilter, QueryNotSupportedError, QuerySpec, apply_query

from .models import FacetCount, Pagination, Product, ProductFilter, ProductPage, SearchResults
from .pricing import search_products, similarity_score

logger = logging.getLogger("catalog.products")

PRODUCTS_COLLECTION = "products"

ALL_PRODUCTS_KEY = "all-products"
MIN_SEARCH_LENGTH = 2


class ProductNotFoundError(LookupError):
    """Raised when an operation needs a product that does not exist."""

    def __init__(self, product_id: str):
        super().__init__(f"Product {product_id} not found")
        self.product_id = product_id


def _to_products(docs: List[Document]) -> List[Product]:
    return [Product.model_validate(doc) for doc in docs]


class ProductService:
    """
    Cached product reads.

    Data types used: PRODUCTS (single records by id or slug), PRODUCT_LISTS
    (list pages, featured, discounted, related), FACETS (categories and
    brands) and SEARCHES.
    """

    def __init__(
        self,
        cache: CacheStore,
        documents: DocumentStore,
        items_per_page: int = 12,
        max_query_results: int = 1000,
    ):
        self._cache = cache
        self._documents = documents
        self.items_per_page = items_per_page
        self.max_query_results = max_query_results

    def _cached(self, use_cache: bool, key: str, data_type: DataType, fetch_fn: Callable):
        if not use_cache:
            return fetch_fn()
        return self._cache.get(key, data_type, fetch_fn)

    # ===== SINGLE RECORDS =====

    def get_one(self, product_id: str, use_cache: bool = True) -> Optional[Product]:
        """Get one product by id; None if it does not exist."""
        if not product_id:
            raise ValueError("Product ID is required")
        product_id = str(product_id)
        return self._cached(use_cache, product_id, DataType.PRODUCTS, lambda: self._fetch_product(product_id))

    def _fetch_product(self, product_id: str) -> Optional[Product]:
        doc = self._documents.get(PRODUCTS_COLLECTION, product_id)
        return Product.model_validate(doc) if doc else None

    def get_many(self, product_ids: List[str], use_cache: bool = True) -> Dict[str, Product]:
        """
        Resolve many products with at most one bulk remote read.

        Unknown ids are omitted from the result.
        """
        ids = [str(pid) for pid in product_ids if pid]
        if not ids:
            return {}
        if not use_cache:
            return self._fetch_products(list(dict.fromkeys(ids)))
        return self._cache.get_batch(ids, DataType.PRODUCTS, self._fetch_products)

    def _fetch_products(self, product_ids: List[str]) -> Dict[str, Product]:
        logger.info(f"Bulk reading {len(product_ids)} products")
        docs = self._documents.get_many(PRODUCTS_COLLECTION, product_ids)
        return {doc_id: Product.model_validate(doc) for doc_id, doc in docs.items()}

    def get_by_slug(self, slug: str) -> Optional[Product]:
        if not slug:
            raise ValueError("Product slug is required")

        def fetch() -> Optional[Product]:
            spec = QuerySpec(filters=[FieldFilter("slug", "==", slug)], limit=1)
            docs, _ = self._query_documents(spec)
            return Product.model_validate(docs[0]) if docs else None

        return self._cache.get(f"slug:{slug}", DataType.PRODUCTS, fetch)

    # ===== LISTS =====

    def list(self, product_filter: Optional[ProductFilter] = None, use_cache: bool = True) -> ProductPage:
        """
        One page of products matching a filter, with pagination metadata.

        Filters, sort and paging run in the document store. When the store
        cannot serve the query, a simplified query is issued and the rest is
        applied here (the page is then marked fallback_used).
        """
        product_filter = product_filter or ProductFilter()
        limit = product_filter.limit or self.items_per_page
        key = product_filter.cache_key(limit)
        return self._cached(use_cache, key, DataType.PRODUCT_LISTS, lambda: self._fetch_page(product_filter, limit))

    def _fetch_page(self, product_filter: ProductFilter, limit: int) -> ProductPage:
        offset = (product_filter.page - 1) * limit
        spec = QuerySpec(
            filters=self._filters_for(product_filter),
            order_by=product_filter.sort_by,
            descending=product_filter.sort_order == "desc",
            limit=limit,
            offset=offset,
        )
        search = (product_filter.search or "").strip()
        logger.info(f"Querying products: {spec.to_dict()}")

        if search:
            # No full-text search in the store: match everything, score here
            docs, fallback_used = self._query_documents(spec.without_paging())
            matches = search_products(_to_products(docs), search)
            total = len(matches)
            products = matches[offset:offset + limit]
        else:
            try:
                products = _to_products(self._documents.query(PRODUCTS_COLLECTION, spec))
                total = self._documents.count(PRODUCTS_COLLECTION, spec)
                fallback_used = False
            except QueryNotSupportedError as e:
                logger.warning(f"Product query not supported by the store, filtering client-side: {e.message}")
                matches = _to_products(self._fallback_query(spec.without_paging()))
                total = len(matches)
                products = matches[offset:offset + limit]
                fallback_used = True

        return ProductPage(
            products=products,
            pagination=Pagination(
                page=product_filter.page,
                limit=limit,
                total=total,
                has_more=offset + len(products) < total,
            ),
            filters=product_filter,
            fallback_used=fallback_used,
        )

    @staticmethod
    def _filters_for(product_filter: ProductFilter) -> List[FieldFilter]:
        filters = []
        if product_filter.category:
            filters.append(FieldFilter("category", "==", product_filter.category))
        if product_filter.brand:
            filters.append(FieldFilter("brand", "==", product_filter.brand))
        if product_filter.min_price is not None:
            filters.append(FieldFilter("price", ">=", product_filter.min_price))
        if product_filter.max_price is not None:
            filters.append(FieldFilter("price", "<=", product_filter.max_price))
        return filters

    def _query_documents(self, spec: QuerySpec) -> Tuple[List[Document], bool]:
        """Run a query, falling back to client-side evaluation when unsupported."""
        try:
            return self._documents.query(PRODUCTS_COLLECTION, spec), False
        except QueryNotSupportedError as e:
            logger.warning(f"Product query not supported by the store, filtering client-side: {e.message}")
            return self._fallback_query(spec), True

    def _fallback_query(self, spec: QuerySpec) -> List[Document]:
        """
        Issue the query with at most one equality filter and no sort, then
        apply the remaining filters, sort and paging in memory.
        """
        primary = next((f for f in spec.filters if f.op == "=="), None)
        simplified = QuerySpec(filters=[primary] if primary else [], limit=self.max_query_results)
        docs = self._documents.query(PRODUCTS_COLLECTION, simplified)
        remaining = [f for f in spec.filters if f is not primary]
        return apply_query(docs, replace(spec, filters=remaining))

    def _all_products(self) -> List[Product]:
        def fetch() -> List[Product]:
            docs, _ = self._query_documents(QuerySpec(limit=self.max_query_results))
            return _to_products(docs)

        return self._cache.get(ALL_PRODUCTS_KEY, DataType.PRODUCT_LISTS, fetch)

    def search(self, query: str) -> SearchResults:
        """Free-text search over the catalog, best matches first."""
        query = (query or "").strip()
        if len(query) < MIN_SEARCH_LENGTH:
            return SearchResults(query=query, products=[], total=0)

        def fetch() -> SearchResults:
            matches = search_products(self._all_products(), query)
            return SearchResults(query=query, products=matches, total=len(matches))

        return self._cache.get(f"search:{query.lower()}", DataType.SEARCHES, fetch)

    def get_featured(self, limit: int = 6) -> List[Product]:
        """Featured products by rating, or the highest rated when none are featured."""

        def fetch() -> List[Product]:
            spec = QuerySpec(
                filters=[FieldFilter("featured", "==", True)],
                order_by="rating",
                descending=True,
                limit=limit,
            )
            docs, _ = self._query_documents(spec)
            if not docs:
                logger.info("No featured products, using highest rated")
                docs, _ = self._query_documents(QuerySpec(order_by="rating", descending=True, limit=limit))
            return _to_products(docs)

        return self._cache.get(f"featured:{limit}", DataType.PRODUCT_LISTS, fetch)

    def get_discounted(self, limit: int = 8) -> List[Product]:
        def fetch() -> List[Product]:
            spec = QuerySpec(
                filters=[FieldFilter("has_discount", "==", True)],
                order_by="discount",
                descending=True,
                limit=limit,
            )
            docs, _ = self._query_documents(spec)
            return _to_products(docs)

        return self._cache.get(f"discounted:{limit}", DataType.PRODUCT_LISTS, fetch)

    def get_related(self, product_id: str, limit: int = 4) -> List[Product]:
        """Products from the same category, most similar first."""
        product_id = str(product_id)

        def fetch() -> List[Product]:
            base = self.get_one(product_id)
            if base is None:
                return []
            page = self.list(ProductFilter(category=base.category, limit=limit * 2))
            candidates = [p for p in page.products if p.id != base.id]
            candidates.sort(key=lambda p: similarity_score(base, p), reverse=True)
            return candidates[:limit]

        return self._cache.get(f"related:{product_id}:{limit}", DataType.PRODUCT_LISTS, fetch)

    # ===== FACETS =====

    def get_categories(self) -> List[FacetCount]:
        return self._cache.get("categories", DataType.FACETS, lambda: self._facet("category"))

    def get_brands(self) -> List[FacetCount]:
        return self._cache.get("brands", DataType.FACETS, lambda: self._facet("brand"))

    def _facet(self, field: str) -> List[FacetCount]:
        counts: Dict[str, int] = {}
        for product in self._all_products():
            value = getattr(product, field)
            if value:
                counts[value] = counts.get(value, 0) + 1
        return [FacetCount(id=name, name=name, product_count=count) for name, count in counts.items()]

    # ===== CACHE CONTROL =====

    def warm(self, product_ids: List[str]) -> List[WarmResult]:
        """Predictively load products that are not cached yet."""
        ids = [str(pid) for pid in product_ids if pid]
        if not ids:
            return []
        return self._cache.warm(ids, DataType.PRODUCTS, self._fetch_product)

    def preload_common_data(self) -> Dict[str, bool]:
        """
        Load featured, discounted, categories and brands.

        Returns:
            task name -> whether it succeeded
        """
        logger.info("Preloading common product data...")
        tasks = {
            "featured": lambda: self.get_featured(6),
            "discounted": lambda: self.get_discounted(8),
            "categories": self.get_categories,
            "brands": self.get_brands,
        }
        results = {}
        for name, task in tasks.items():
            try:
                task()
                results[name] = True
            except Exception as e:
                logger.warning(f"Preload task {name} failed: {e}")
                results[name] = False

        logger.info(f"Preloaded {sum(results.values())}/{len(tasks)} common data sets")
        return results

    def invalidate_one(self, product_id: str) -> int:
        """Drop a product and the related lists computed from it."""
        product_id = str(product_id)
        removed = self._cache.invalidate(f"{DataType.PRODUCTS.value}:{product_id}", DataType.PRODUCTS)
        removed += self._cache.invalidate(f"related:{product_id}:", DataType.PRODUCT_LISTS)
        return removed

    def invalidate_all(self) -> int:
        removed = 0
        for data_type in (DataType.PRODUCTS, DataType.PRODUCT_LISTS, DataType.FACETS, DataType.SEARCHES):
            removed += self._cache.invalidate("", data_type)
        return removed
