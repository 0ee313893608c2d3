"""
Mock product catalog.

In production this would query the catalog service; the engine only ever
receives the returned snapshot.
"""

import logging
from typing import Any, Optional

from concierge.schemas.product_schema import Product
from concierge.tools.base import FaultInjector

logger = logging.getLogger(__name__)

SEED_PRODUCTS: tuple[Product, ...] = (
    Product(
        id="p-aurora-solitaire", title="Aurora Solitaire Ring", slug="aurora-solitaire",
        category="ring", metal="yellow gold", stone="lab diamond", price=1450.0,
        ship_days=2, tags=("classic", "minimalist", "bridal"),
        bestseller_score=0.92, margin_score=0.55, ready_to_ship=True,
    ),
    Product(
        id="p-deco-halo", title="Deco Halo Ring", slug="deco-halo",
        category="ring", metal="platinum", stone="sapphire", price=2300.0,
        ship_days=10, tags=("art deco", "vintage", "bold"),
        bestseller_score=0.71, margin_score=0.62, ready_to_ship=False,
    ),
    Product(
        id="p-stack-trio", title="Stacking Band Trio", slug="stack-trio",
        category="ring", metal="rose gold", price=480.0,
        ship_days=1, tags=("stackable", "dainty", "gift", "modern"),
        bestseller_score=0.84, margin_score=0.7, ready_to_ship=True,
    ),
    Product(
        id="p-luna-pendant", title="Luna Pearl Pendant", slug="luna-pendant",
        category="necklace", metal="silver", stone="pearl", price=260.0,
        ship_days=2, tags=("classic", "gift", "dainty"),
        bestseller_score=0.77, margin_score=0.66, ready_to_ship=True,
    ),
    Product(
        id="p-ember-studs", title="Ember Ruby Studs", slug="ember-studs",
        category="earrings", metal="white gold", stone="ruby", price=690.0,
        ship_days=4, tags=("bold", "modern"),
        bestseller_score=0.58, margin_score=0.5, ready_to_ship=False,
    ),
    Product(
        id="p-verde-bangle", title="Verde Emerald Bangle", slug="verde-bangle",
        category="bracelet", metal="yellow gold", stone="emerald", price=1890.0,
        in_stock=False, ship_days=6, tags=("vintage", "bold"),
        bestseller_score=0.44, margin_score=0.72, ready_to_ship=False,
    ),
)


class InMemoryCatalog(FaultInjector):
    """Catalog provider over a fixed list of products."""

    def __init__(self, products: Optional[list[Product]] = None) -> None:
        super().__init__()
        self._products: list[Product] = list(products if products is not None else SEED_PRODUCTS)

    def search(self, filters: dict[str, Any]) -> list[Product]:
        """Coarse pre-filter by category; ranking and hard filters happen in the engine."""
        self._enter()
        category = filters.get("category")
        if not category:
            return list(self._products)
        wanted = str(category).lower()
        return [p for p in self._products if p.category.lower() == wanted]

    def reset(self) -> None:
        self._products = list(SEED_PRODUCTS)
        self.reset_faults()
