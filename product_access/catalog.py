from __future__ import annotations

import logging
from pathlib import Path
from threading import RLock
from types import MappingProxyType
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Union

import yaml

from product_access.errors import ProductNotFoundError
from product_access.models import Product, TrialType

logger = logging.getLogger(__name__)


class ProductCatalog:
    """Immutable snapshot of the product list, indexed by id."""

    def __init__(self, products: Iterable[Product]) -> None:
        indexed: Dict[str, Product] = {}
        for product in products:
            if product.id in indexed:
                raise ValueError(f"duplicate product id: {product.id}")
            indexed[product.id] = product
        self._products: Mapping[str, Product] = MappingProxyType(indexed)

    def __contains__(self, product_id: object) -> bool:
        return product_id in self._products

    def __len__(self) -> int:
        return len(self._products)

    def find(self, product_id: str) -> Optional[Product]:
        return self._products.get(str(product_id).strip())

    def get(self, product_id: str) -> Product:
        product = self.find(product_id)
        if product is None:
            raise ProductNotFoundError(product_id)
        return product

    def list(self, *, include_inactive: bool = False) -> List[Product]:
        """Products in display order. Inactive ones are hidden from browsing only."""
        products = [p for p in self._products.values() if include_inactive or p.is_active]
        return sorted(products, key=lambda p: (p.sort_order, p.id))

    def bundles_including(self, product_id: str) -> List[Product]:
        return [p for p in self.list(include_inactive=True) if product_id in p.includes]


class CatalogLoader:
    """Holds the current catalog and reloads it from a source on demand."""

    def __init__(self, source: Callable[[], Iterable[Product]]) -> None:
        self._source = source
        self._lock = RLock()
        self._catalog: Optional[ProductCatalog] = None

    def reload(self) -> ProductCatalog:
        catalog = ProductCatalog(self._source())
        with self._lock:
            self._catalog = catalog
        logger.info("Product catalog loaded", extra={"product_count": len(catalog)})
        return catalog

    def current(self) -> ProductCatalog:
        with self._lock:
            catalog = self._catalog
        if catalog is None:
            return self.reload()
        return catalog


def load_catalog_file(path: Union[str, Path]) -> List[Product]:
    """Read product definitions from a YAML catalog file."""
    with Path(path).open("r", encoding="utf-8") as handle:
        raw = yaml.safe_load(handle)
    if not isinstance(raw, dict):
        raise ValueError(f"{path} must contain a top-level mapping")
    return parse_catalog(raw)


def parse_catalog(raw: dict) -> List[Product]:
    products_raw = raw.get("products")
    if not isinstance(products_raw, dict):
        raise ValueError("catalog must include a mapping field named 'products'")

    products: List[Product] = []
    for product_id, data in products_raw.items():
        if not isinstance(product_id, str) or not product_id.strip():
            raise ValueError("each product id must be a non-empty string")
        if not isinstance(data, dict):
            raise ValueError(f"product '{product_id}' must be a mapping")
        if not str(data.get("name") or "").strip():
            raise ValueError(f"product '{product_id}' needs a name")

        trial_type_raw = data.get("trial_type") or TrialType.NONE.value
        try:
            trial_type = TrialType(trial_type_raw)
        except ValueError:
            raise ValueError(f"product '{product_id}' has invalid trial_type: {trial_type_raw!r}") from None

        for list_field in ("trial_features", "includes"):
            values = data.get(list_field, [])
            if not isinstance(values, list) or not all(isinstance(v, str) and v.strip() for v in values):
                raise ValueError(f"product '{product_id}' {list_field} must be a list of strings")

        trial_limit = data.get("trial_limit")
        products.append(
            Product(
                id=product_id.strip(),
                name=str(data["name"]).strip(),
                description=str(data.get("description") or ""),
                icon=str(data.get("icon") or ""),
                price_monthly=_optional_price(data.get("price_monthly")),
                price_annual=_optional_price(data.get("price_annual")),
                trial_type=trial_type,
                trial_limit=int(trial_limit) if trial_limit is not None else None,
                is_active=bool(data.get("is_active", True)),
                sort_order=int(data.get("sort_order", 0)),
                trial_features=tuple(v.strip() for v in data.get("trial_features", [])),
                includes=tuple(v.strip() for v in data.get("includes", [])),
            )
        )

    if not products:
        raise ValueError("catalog must define at least one product")

    known = {p.id for p in products}
    for product in products:
        unknown = set(product.includes) - known
        if unknown:
            raise ValueError(f"bundle '{product.id}' includes unknown products: {sorted(unknown)}")

    return products


def _optional_price(value) -> Optional[float]:
    if value is None:
        return None
    return float(value)
