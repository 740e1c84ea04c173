"""
TTL and capacity configuration per data type.
"""
from dataclasses import dataclass
from typing import Dict, Optional

from .core import DataType


@dataclass(frozen=True)
class TypeConfig:
    """Freshness window and LRU bound for one data type."""
    ttl_seconds: float
    max_items: int


# TTL configuration by data type
TTL_CONFIG: Dict[DataType, TypeConfig] = {
    # Products change infrequently - long cache
    DataType.PRODUCTS: TypeConfig(ttl_seconds=30 * 60, max_items=1000),
    DataType.PRODUCT_LISTS: TypeConfig(ttl_seconds=30 * 60, max_items=300),
    DataType.FACETS: TypeConfig(ttl_seconds=30 * 60, max_items=50),
    # User data needs fresh updates - medium cache
    DataType.USERS: TypeConfig(ttl_seconds=10 * 60, max_items=200),
    # Cart data changes frequently - short cache
    DataType.CARTS: TypeConfig(ttl_seconds=2 * 60, max_items=100),
    # Orders rarely change once created
    DataType.ORDERS: TypeConfig(ttl_seconds=60 * 60, max_items=500),
    DataType.SEARCHES: TypeConfig(ttl_seconds=15 * 60, max_items=300),
    # Recommendations are expensive to compute
    DataType.RECOMMENDATIONS: TypeConfig(ttl_seconds=120 * 60, max_items=100),
}

DEFAULT_DATA_TYPE = DataType.PRODUCTS


def get_type_config(
    data_type: DataType,
    configs: Optional[Dict[DataType, TypeConfig]] = None,
) -> TypeConfig:
    """
    Get the TTL configuration for a data type.

    Args:
        data_type: The data type
        configs: Override table (defaults to TTL_CONFIG)

    Returns:
        The type's TypeConfig, or the products config when it has none
    """
    table = configs if configs is not None else TTL_CONFIG
    config = table.get(data_type)
    if config is None:
        config = table.get(DEFAULT_DATA_TYPE, TTL_CONFIG[DEFAULT_DATA_TYPE])
    return config
