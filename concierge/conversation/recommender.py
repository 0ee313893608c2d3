"""
Content-based product ranking over a catalog snapshot.

Two stages. The filter stage applies hard constraints (category, metal,
stone, budget range, stock, ready-to-ship). The score stage ranks the
survivors:

    score = w_style * styleOverlap + w_best * bestseller + w_margin * margin
            + w_price * priceProximity + shipBonus

``budget_max`` is a hard ceiling: a product priced above it never reaches
the score stage, and a product priced exactly at it passes. Sorting is
stable, so catalog order breaks ties and identical inputs always yield
identical output.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from concierge.config import RankingWeights, settings
from concierge.schemas.product_schema import Preferences, Product

logger = logging.getLogger(__name__)

PRICE_SCALE_FLOOR = 50.0
PRICE_SCALE_RATIO = 0.2
PRICE_PROXIMITY_MIN = -0.3
PRICE_PROXIMITY_MAX = 1.0


@dataclass(frozen=True)
class ScoredProduct:
    product: Product
    score: float


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def _matches(expected: Optional[str], actual: Optional[str]) -> bool:
    if expected is None:
        return True
    return actual is not None and actual.strip().lower() == expected.strip().lower()


class RecommendationEngine:
    """Pure, total ranker. Empty output is a valid result."""

    def __init__(
        self,
        weights: Optional[RankingWeights] = None,
        top_k: Optional[int] = None,
    ) -> None:
        self._weights = weights or settings.ranking
        self._top_k = top_k if top_k is not None else settings.catalog.top_k

    def passes_filters(self, product: Product, prefs: Preferences) -> bool:
        if not product.in_stock:
            return False
        if not _matches(prefs.category, product.category):
            return False
        if not _matches(prefs.metal, product.metal):
            return False
        if not _matches(prefs.stone, product.stone):
            return False
        if prefs.budget_min is not None and product.price < prefs.budget_min:
            return False
        if prefs.budget_max is not None and product.price > prefs.budget_max:
            return False
        if prefs.ready_to_ship and not product.ready_to_ship:
            return False
        return True

    def style_overlap(self, product: Product, prefs: Preferences) -> float:
        if not prefs.style_tags:
            return 0.0
        wanted = {t.strip().lower() for t in prefs.style_tags}
        have = {t.strip().lower() for t in product.tags}
        return min(1.0, len(wanted & have) / self._weights.style_divisor)

    def price_proximity(self, product: Product, prefs: Preferences) -> float:
        if prefs.budget_max is None:
            return 0.0
        scale = max(PRICE_SCALE_FLOOR, PRICE_SCALE_RATIO * prefs.budget_max)
        return _clamp(
            (prefs.budget_max - product.price) / scale,
            PRICE_PROXIMITY_MIN,
            PRICE_PROXIMITY_MAX,
        )

    def score(self, product: Product, prefs: Preferences) -> float:
        w = self._weights
        ship_bonus = w.ship_bonus if product.ship_days <= w.fast_ship_days else 0.0
        return (
            w.style * self.style_overlap(product, prefs)
            + w.bestseller * product.bestseller_score
            + w.margin * product.margin_score
            + w.price * self.price_proximity(product, prefs)
            + ship_bonus
        )

    def rank_scored(self, catalog: list[Product], prefs: Preferences) -> list[ScoredProduct]:
        survivors = [
            ScoredProduct(product=p, score=self.score(p, prefs))
            for p in catalog
            if self.passes_filters(p, prefs)
        ]
        # sorted() is stable: catalog order is the final tiebreaker.
        ranked = sorted(survivors, key=lambda s: s.score, reverse=True)
        logger.debug("Ranked %d of %d products", len(ranked), len(catalog))
        return ranked[: self._top_k]

    def rank(self, catalog: list[Product], prefs: Preferences) -> list[Product]:
        return [s.product for s in self.rank_scored(catalog, prefs)]
