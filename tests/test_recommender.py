"""Tests for product filtering and ranking."""

import pytest

from concierge.config import RankingWeights
from concierge.conversation.recommender import RecommendationEngine
from concierge.schemas.product_schema import Preferences
from concierge.tools.catalog import SEED_PRODUCTS
from tests.conftest import make_product


class TestStability:
    def test_identical_inputs_identical_output(self, recommender):
        prefs = Preferences(category="ring", budget_max=3000, style_tags=["classic", "bold"])
        first = recommender.rank_scored(list(SEED_PRODUCTS), prefs)
        second = recommender.rank_scored(list(SEED_PRODUCTS), prefs)
        assert [(s.product.id, s.score) for s in first] == [(s.product.id, s.score) for s in second]

    def test_ties_keep_catalog_order(self, recommender):
        catalog = [make_product(f"p-{i}") for i in range(5)]
        ranked = recommender.rank(catalog, Preferences(category="ring"))
        assert [p.id for p in ranked] == [f"p-{i}" for i in range(5)]

    def test_top_k_truncates(self):
        engine = RecommendationEngine(top_k=2)
        catalog = [make_product(f"p-{i}") for i in range(5)]
        assert len(engine.rank(catalog, Preferences())) == 2


class TestHardFilters:
    def test_price_over_budget_never_returned(self, recommender):
        catalog = [
            make_product("under", price=999.99),
            make_product("exact", price=1000.0),
            make_product("over", price=1000.01),
        ]
        ids = [p.id for p in recommender.rank(catalog, Preferences(budget_max=1000))]
        assert "over" not in ids
        assert set(ids) == {"under", "exact"}

    @pytest.mark.parametrize("budget", [100, 480, 1450, 2300, 5000])
    def test_budget_ceiling_on_seed_catalog(self, recommender, budget):
        ranked = recommender.rank(list(SEED_PRODUCTS), Preferences(budget_max=budget))
        assert all(p.price <= budget for p in ranked)

    def test_budget_min(self, recommender):
        catalog = [make_product("cheap", price=50), make_product("mid", price=400)]
        assert [p.id for p in recommender.rank(catalog, Preferences(budget_min=100))] == ["mid"]

    def test_out_of_stock_excluded(self, recommender):
        catalog = [make_product("gone", in_stock=False), make_product("here")]
        assert [p.id for p in recommender.rank(catalog, Preferences())] == ["here"]

    def test_category_metal_stone_case_insensitive(self, recommender):
        catalog = [
            make_product("a", category="Ring", metal="Yellow Gold", stone="Sapphire"),
            make_product("b", category="ring", metal="silver", stone="sapphire"),
        ]
        prefs = Preferences(category="RING", metal="yellow gold", stone="sapphire")
        assert [p.id for p in recommender.rank(catalog, prefs)] == ["a"]

    def test_ready_to_ship(self, recommender):
        catalog = [make_product("slow"), make_product("fast", ready_to_ship=True)]
        assert [p.id for p in recommender.rank(catalog, Preferences(ready_to_ship=True))] == ["fast"]

    def test_empty_result_is_valid(self, recommender):
        assert recommender.rank(list(SEED_PRODUCTS), Preferences(category="tiara")) == []


class TestScoring:
    def test_style_overlap_caps_at_one(self, recommender):
        product = make_product(tags=("a", "b", "c", "d"))
        prefs = Preferences(style_tags=["a", "b", "c", "d"])
        assert recommender.style_overlap(product, prefs) == 1.0

    def test_style_overlap_partial(self, recommender):
        product = make_product(tags=("Classic", "bold"))
        assert recommender.style_overlap(product, Preferences(style_tags=["classic"])) == pytest.approx(1 / 3)

    def test_price_proximity_without_budget_is_zero(self, recommender):
        assert recommender.price_proximity(make_product(price=100), Preferences()) == 0.0

    def test_price_proximity_clamped(self, recommender):
        prefs = Preferences(budget_max=1000)
        assert recommender.price_proximity(make_product(price=0), prefs) == 1.0
        assert recommender.price_proximity(make_product(price=5000), prefs) == -0.3

    def test_price_proximity_small_budget_uses_floor(self, recommender):
        # scale = max(50, 0.2 * 100) = 50
        prefs = Preferences(budget_max=100)
        assert recommender.price_proximity(make_product(price=75), prefs) == pytest.approx(0.5)

    def test_score_formula(self):
        weights = RankingWeights(
            style=0.5, bestseller=0.3, margin=0.1, price=0.1,
            ship_bonus=0.2, fast_ship_days=2, style_divisor=3,
        )
        engine = RecommendationEngine(weights=weights, top_k=6)
        product = make_product(price=800, tags=("classic",), bestseller=0.8, margin=0.4, ship_days=2)
        prefs = Preferences(budget_max=1000, style_tags=["classic"])
        # proximity = (1000 - 800) / max(50, 200) = 1.0
        expected = 0.5 * (1 / 3) + 0.3 * 0.8 + 0.1 * 0.4 + 0.1 * 1.0 + 0.2
        assert engine.score(product, prefs) == pytest.approx(expected)

    def test_fast_shipping_ranks_higher(self, recommender):
        slow = make_product("slow", ship_days=7)
        fast = make_product("fast", ship_days=1)
        assert recommender.rank([slow, fast], Preferences())[0].id == "fast"

    def test_zero_weights_fall_back_to_catalog_order(self):
        weights = RankingWeights(
            style=0, bestseller=0, margin=0, price=0, ship_bonus=0, fast_ship_days=2, style_divisor=3,
        )
        engine = RecommendationEngine(weights=weights, top_k=6)
        catalog = [make_product("b", bestseller=0.1), make_product("a", bestseller=0.9)]
        assert [p.id for p in engine.rank(catalog, Preferences())] == ["b", "a"]
