"""Product catalog - the products this service grants entitlements for.

Loaded from the products section of config/license.yaml.
"""

from typing import Dict, Iterable, List, Optional

from iap_license.models import ProductDefinition, ProductType


class ProductNotFoundError(Exception):
    """Raised when a product is not in the catalog."""

    pass


class ProductCatalog:
    """Lookup of product definitions by id. Read-only after construction."""

    def __init__(self, products: Iterable[ProductDefinition]):
        self._products_by_id: Dict[str, ProductDefinition] = {}
        for product in products:
            if product.id in self._products_by_id:
                raise ValueError(f"Duplicate product id in catalog: {product.id}")
            self._products_by_id[product.id] = product

    def get_by_id(self, product_id: str) -> ProductDefinition:
        """Get product definition by ID.

        Raises:
            ProductNotFoundError: If product ID not found
        """
        product = self._products_by_id.get(product_id)
        if product is None:
            raise ProductNotFoundError(
                f"Product not found: {product_id}. "
                f"Available products: {list(self._products_by_id.keys())}"
            )
        return product

    def find_by_id(self, product_id: str) -> Optional[ProductDefinition]:
        return self._products_by_id.get(product_id)

    def is_consumable(self, product_id: str) -> bool:
        product = self.find_by_id(product_id)
        return product is not None and product.type == ProductType.CONSUMABLE

    def is_subscription(self, product_id: str) -> bool:
        product = self.find_by_id(product_id)
        return product is not None and product.type == ProductType.SUBSCRIPTION

    def scans_per_unit(self, product_id: str) -> int:
        """Scans granted per purchased unit (0 for non-consumables and unknown products)."""
        product = self.find_by_id(product_id)
        return product.scans_per_unit if product is not None else 0

    def pro_product_ids(self) -> frozenset[str]:
        """Products whose purchase unlocks pro features (and bearer tokens)."""
        return frozenset(p.id for p in self._products_by_id.values() if p.grants_pro)

    def consumable_product_ids(self) -> frozenset[str]:
        return frozenset(
            p.id for p in self._products_by_id.values() if p.type == ProductType.CONSUMABLE
        )

    def get_all(self) -> List[ProductDefinition]:
        return list(self._products_by_id.values())

    def count(self) -> int:
        return len(self._products_by_id)

    def __contains__(self, product_id: str) -> bool:
        return product_id in self._products_by_id

    def __repr__(self) -> str:
        return f"ProductCatalog(products={self.count()})"
