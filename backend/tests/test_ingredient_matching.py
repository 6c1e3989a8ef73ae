"""Tests for ingredient name matching and recipe resolution."""

import pytest
from decimal import Decimal

from app.models.recipe import IngredientRequirement
from app.models.stock import InventoryItem
from app.services.ingredient_matching_service import (
    ConfidenceTier,
    IngredientMatchingService,
    MatchingConfig,
    MatchMethod,
    confidence_tier,
    levenshtein_distance,
    normalize_name,
    score_names,
)
from app.services.stock_sync_errors import ResolutionError


def _item(item_id, name, unit="pieces"):
    return InventoryItem(id=item_id, store_id=1, name=name, unit=unit, quantity=Decimal("10"))


def _req(req_id, name, qty="1", unit="pieces"):
    return IngredientRequirement(id=req_id, recipe_id=1, ingredient_name=name, quantity=Decimal(qty), unit=unit)


@pytest.fixture
def matcher():
    return IngredientMatchingService(
        config=MatchingConfig(default_threshold=0.6, acceptance_threshold=0.7, ambiguity_delta=0.05)
    )


class TestNormalization:
    def test_lowercases_and_strips_punctuation(self):
        assert normalize_name("  Oreo-Crushed!! ") == "oreo crushed"

    def test_size_shorthands(self):
        assert normalize_name("16 oz Cup") == "16oz cup"
        assert normalize_name("Sixteen Ounce Cup") == "16oz cup"
        assert normalize_name("500 Grams Flour") == "500g flour"

    def test_symbol_abbreviations(self):
        assert normalize_name("Cup w/ Lid") == "cup with lid"
        assert normalize_name("Salt & Pepper") == "salt and pepper"

    def test_plural_tokens_are_singularized(self):
        assert normalize_name("Plastic Cups") == "plastic cup"
        assert normalize_name("Glass") == "glass"

    def test_empty(self):
        assert normalize_name("") == ""


class TestScoring:
    def test_levenshtein(self):
        assert levenshtein_distance("kitten", "sitting") == 3
        assert levenshtein_distance("", "abc") == 3
        assert levenshtein_distance("same", "same") == 0

    def test_exact_after_normalization_scores_one(self):
        scored = score_names("WHIPPED CREAM", "whipped cream")
        assert scored.score == 1.0
        assert scored.method == MatchMethod.EXACT

    def test_reordered_tokens_score_high(self):
        scored = score_names("16oz Plastic Cups", "Plastic Cup 16oz")
        assert scored.score >= 0.8
        assert scored.method == MatchMethod.CONTAINMENT
        assert confidence_tier(scored.score) == ConfidenceTier.HIGH

    def test_phrase_containment(self):
        assert score_names("Cream", "Whipped Cream").score == pytest.approx(0.9)

    def test_token_subset_containment(self):
        assert score_names("Chocolate Syrup", "Chocolate Dark Syrup").score == pytest.approx(0.8)

    def test_unrelated_token_contributes_nothing(self):
        scored = score_names("Oreo Crushed", "Oreo Cookies")
        assert scored.score < 0.6
        assert confidence_tier(scored.score) == ConfidenceTier.UNMATCHED

    def test_misspelling_scores_through_token_path(self):
        scored = score_names("Chocolate Syrup", "Chocolate Syrupp")
        assert scored.method == MatchMethod.TOKEN
        assert 0.75 <= scored.score < 1.0

    def test_synonym_path(self):
        scored = score_names("Plastic Cup", "Plastic Tumbler")
        assert scored.method == MatchMethod.SYNONYM
        assert scored.score >= 0.75

    def test_ingredient_variation(self):
        assert score_names("Whip Cream", "Whipped Cream").score >= 0.85

    def test_fuzzy_never_reaches_exact_score(self):
        assert score_names("Chocolate Syrup", "Chocolate Syrupp").score < 1.0

    def test_confidence_tiers(self):
        assert confidence_tier(1.0) == ConfidenceTier.VERY_HIGH
        assert confidence_tier(0.95) == ConfidenceTier.VERY_HIGH
        assert confidence_tier(0.9) == ConfidenceTier.HIGH
        assert confidence_tier(0.8) == ConfidenceTier.MEDIUM
        assert confidence_tier(0.6) == ConfidenceTier.LOW
        assert confidence_tier(0.59) == ConfidenceTier.UNMATCHED


class TestResolve:
    def test_results_sorted_and_filtered(self, matcher):
        candidates = [_item(1, "Oreo Cookies"), _item(2, "Oreo Crushed"), _item(3, "Straw")]
        matches = matcher.resolve(_req(1, "Oreo Crushed"), candidates)
        assert [m.inventory_item.id for m in matches] == [2]
        assert matches[0].score == 1.0
        assert matches[0].confidence == ConfidenceTier.VERY_HIGH

    def test_exact_match_wins_over_fuzzy(self, matcher):
        candidates = [_item(1, "Whipped Cream Dispenser"), _item(2, "Whipped Cream")]
        matches = matcher.resolve(_req(1, "Whipped Cream"), candidates, threshold=0.0)
        assert matches[0].inventory_item.id == 2
        assert matches[0].method == MatchMethod.EXACT

    def test_equal_scores_prefer_closer_name(self, matcher):
        candidates = [_item(1, "Whipped Cream"), _item(2, "Heavy Cream")]
        matches = matcher.resolve(_req(1, "Cream"), candidates)
        assert matches[0].score == matches[1].score
        assert [m.inventory_item.name for m in matches] == ["Heavy Cream", "Whipped Cream"]

    def test_match_dict(self, matcher):
        match = matcher.resolve(_req(1, "Straw"), [_item(7, "Straw")])[0]
        data = match.to_dict()
        assert data["inventory_item_id"] == 7
        assert data["confidence"] == "very_high"
        assert data["method"] == "exact"


class TestResolveRecipe:
    def test_every_requirement_resolved(self, matcher):
        candidates = [
            _item(1, "Plastic Cup 16oz"),
            _item(2, "Plastic Lid"),
            _item(3, "Straw"),
            _item(4, "Oreo Crushed"),
            _item(5, "Oreo Cookies"),
        ]
        requirements = [
            _req(1, "16oz Plastic Cups"),
            _req(2, "Plastic Lid"),
            _req(3, "Straw"),
            _req(4, "Oreo Crushed"),
        ]
        resolved = matcher.resolve_recipe("Oreo Blended", requirements, candidates)
        assert [r.match.inventory_item.id for r in resolved] == [1, 2, 3, 4]

    def test_unmatched_requirement_fails_whole_recipe(self, matcher):
        candidates = [_item(1, "Straw"), _item(2, "Plastic Lid")]
        requirements = [_req(1, "Straw"), _req(2, "Unicorn Sprinkles")]
        with pytest.raises(ResolutionError) as exc_info:
            matcher.resolve_recipe("Magic Shake", requirements, candidates)
        problems = exc_info.value.problems
        assert len(problems) == 1
        assert problems[0]["ingredient"] == "Unicorn Sprinkles"

    def test_ambiguous_requirement_fails(self, matcher):
        candidates = [_item(1, "Whipped Cream"), _item(2, "Heavy Cream")]
        with pytest.raises(ResolutionError) as exc_info:
            matcher.resolve_recipe("Cream Puff", [_req(1, "Cream")], candidates)
        problem = exc_info.value.problems[0]
        assert "ambiguous" in problem["reason"]
        assert {c["inventory_item_id"] for c in problem["candidates"]} == {1, 2}

    def test_low_confidence_match_is_not_accepted(self, matcher):
        candidates = [_item(1, "Oreo Cookies")]
        with pytest.raises(ResolutionError):
            matcher.resolve_recipe("Oreo Shake", [_req(1, "Oreo Crushed")], candidates)

    def test_recipe_without_requirements_fails(self, matcher):
        with pytest.raises(ResolutionError):
            matcher.resolve_recipe("Empty", [], [_item(1, "Straw")])


class TestMatchIngredient:
    def test_preview_against_store_inventory(self, stock_setup):
        service = IngredientMatchingService(stock_setup["db"])
        matches = service.match_ingredient("plastic cups 16 oz", stock_setup["store"].id)
        assert matches
        assert matches[0].inventory_item.name == "Plastic Cup 16oz"

    def test_requires_session(self):
        with pytest.raises(RuntimeError):
            IngredientMatchingService().match_ingredient("Straw", 1)
