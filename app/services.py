"""
Service container: one owned cache, one document store, the catalog
façades built on them. Created once at startup and disposed at shutdown.
"""
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from app.cache import CacheStore, DataType, OptimisticMutator, PersistenceBridge, SQLiteKeyValueStore
from app.catalog import SCHEMAS, CartService, ProductService
from app.store import DocumentStore, HttpDocumentStore, SqlDocumentStore
from config.settings import Settings

logger = logging.getLogger("app.services")

# Thresholds for the statistics recommendations
LOW_HIT_RATE_PERCENT = 70
LARGE_CACHE_ENTRIES = 5000

# Data type the health check writes its probe entry under
HEALTH_PROBE_TYPE = DataType.USERS


def create_document_store(settings: Settings) -> DocumentStore:
    """REST store when a URL is configured, SQL store otherwise."""
    if settings.document_store_url:
        logger.info(f"Using REST document store at {settings.document_store_url}")
        return HttpDocumentStore(
            settings.document_store_url,
            api_key=settings.document_store_api_key,
            timeout=settings.request_timeout_seconds,
        )
    logger.info(f"Using SQL document store at {settings.database_url}")
    return SqlDocumentStore(settings.database_url, max_query_results=settings.max_query_results)


@dataclass
class CatalogServices:
    cache: CacheStore
    documents: DocumentStore
    products: ProductService
    carts: CartService
    initialized: bool = False
    started_at: float = field(default_factory=time.time)

    @classmethod
    def create(
        cls,
        settings: Settings,
        documents: Optional[DocumentStore] = None,
        start_maintenance: Optional[bool] = None,
    ) -> "CatalogServices":
        persistence = None
        if settings.cache_persistence_enabled:
            persistence = PersistenceBridge(SQLiteKeyValueStore(settings.cache_persistence_path), SCHEMAS)

        cache = CacheStore(persistence=persistence)
        if start_maintenance is None:
            start_maintenance = settings.cache_maintenance_enabled
        if start_maintenance:
            cache.start_maintenance(
                settings.cache_cleanup_interval_seconds,
                settings.cache_report_interval_seconds,
            )

        documents = documents or create_document_store(settings)
        products = ProductService(
            cache,
            documents,
            items_per_page=settings.items_per_page,
            max_query_results=settings.max_query_results,
        )
        carts = CartService(cache, documents, products, OptimisticMutator(cache))
        return cls(cache=cache, documents=documents, products=products, carts=carts)

    def initialize(self) -> Dict[str, Any]:
        """Check the document store and warm the common caches (idempotent)."""
        if self.initialized:
            logger.info("Catalog services already initialized")
            return {"success": True, "already_initialized": True}

        started = time.perf_counter()
        latency_ms = self.documents.ping()
        logger.info(f"Document store reachable ({latency_ms:.0f}ms)")
        preloaded = self.products.preload_common_data()
        self.initialized = True

        elapsed_ms = (time.perf_counter() - started) * 1000
        logger.info(f"Catalog services initialized in {elapsed_ms:.0f}ms")
        return {
            "success": True,
            "initialization_ms": round(elapsed_ms, 1),
            "connection_latency_ms": round(latency_ms, 1),
            "preloaded": preloaded,
        }

    def health_check(self) -> Dict[str, Any]:
        """
        Status of each dependency.

        overall is "healthy", "degraded" (some unhealthy) or "critical"
        (all unhealthy).
        """
        services: Dict[str, Dict[str, Any]] = {}

        try:
            latency_ms = self.documents.ping()
            services["document_store"] = {"status": "healthy", "latency_ms": round(latency_ms, 1)}
        except Exception as e:
            services["document_store"] = {"status": "unhealthy", "error": str(e)}

        probe = {"ok": True, "at": time.time()}
        self.cache.set("health_check_probe", probe, HEALTH_PROBE_TYPE)
        cached = self.cache.get("health_check_probe", HEALTH_PROBE_TYPE, lambda: probe)
        self.cache.invalidate("health_check_probe", HEALTH_PROBE_TYPE)
        services["cache"] = {
            "status": "healthy" if cached == probe else "unhealthy",
            "entries": self.cache.get_stats()["entries"],
        }

        try:
            self.products.get_featured(1)
            services["products"] = {"status": "healthy"}
        except Exception as e:
            services["products"] = {"status": "unhealthy", "error": str(e)}

        unhealthy = [s for s in services.values() if s["status"] == "unhealthy"]
        if not unhealthy:
            overall = "healthy"
        elif len(unhealthy) == len(services):
            overall = "critical"
        else:
            overall = "degraded"

        return {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "overall": overall,
            "services": services,
        }

    def refresh_all_caches(self) -> Dict[str, Any]:
        """Drop every cached entry, then warm the common data again."""
        logger.info("Refreshing all caches...")
        cleared = self.cache.clear()
        preloaded = self.products.preload_common_data()
        return {
            "success": True,
            "cleared": cleared,
            "preloaded": preloaded,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    def get_statistics(self) -> Dict[str, Any]:
        stats = self.cache.get_stats()
        return {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "uptime_seconds": round(time.time() - self.started_at, 1),
            "initialized": self.initialized,
            "cache": stats,
            "recommendations": recommendations_for(stats),
        }

    def dispose(self) -> None:
        self.cache.dispose()
        close = getattr(self.documents, "close", None) or getattr(self.documents, "dispose", None)
        if close is not None:
            close()
        logger.info("Catalog services disposed")


def recommendations_for(stats: Dict[str, Any]) -> List[Dict[str, str]]:
    """Tuning hints derived from cache statistics."""
    recommendations = []
    metrics = stats["metrics"]
    if metrics["requests"] > 0 and stats["hit_rate_percent"] < LOW_HIT_RATE_PERCENT:
        recommendations.append({
            "type": "cache_efficiency",
            "priority": "high",
            "message": f"Cache hit rate is {stats['hit_rate_percent']}%. "
                       f"Consider increasing TTL for frequently accessed data.",
        })
    if stats["entries"] > LARGE_CACHE_ENTRIES:
        recommendations.append({
            "type": "memory_usage",
            "priority": "medium",
            "message": f"Cache contains {stats['entries']} items. Consider lowering per-type limits.",
        })
    return recommendations
