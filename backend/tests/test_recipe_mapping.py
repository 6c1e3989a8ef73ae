"""Tests for building, reusing and invalidating persisted ingredient mappings."""

import pytest
from decimal import Decimal

from app.models.product import Product
from app.models.recipe import RecipeIngredientMapping
from app.models.stock import InventoryItem
from app.services.recipe_mapping_service import ProposedMapping, RecipeMappingService
from app.services.stock_sync_errors import MappingIncompleteError, ResolutionError


def _mapping_count(db, recipe_id, store_id):
    return (
        db.query(RecipeIngredientMapping)
        .filter(
            RecipeIngredientMapping.recipe_id == recipe_id,
            RecipeIngredientMapping.store_id == store_id,
        )
        .count()
    )


class TestBuildMapping:
    def test_one_row_per_requirement(self, stock_setup):
        db = stock_setup["db"]
        store = stock_setup["store"]
        recipe = stock_setup["recipes"]["blended"]
        items = stock_setup["items"]

        rows = RecipeMappingService(db).build_mapping(recipe.id, store.id)

        assert len(rows) == 4
        assert _mapping_count(db, recipe.id, store.id) == 4
        mapped = {row.inventory_item_id for row in rows}
        assert items["Plastic Cup 16oz"].id in mapped
        assert items["Oreo Crushed"].id in mapped
        assert items["Oreo Cookies"].id not in mapped

    def test_existing_mapping_is_reused(self, stock_setup):
        db = stock_setup["db"]
        store = stock_setup["store"]
        recipe = stock_setup["recipes"]["croffle"]
        service = RecipeMappingService(db)

        first = service.build_mapping(recipe.id, store.id)
        second = service.build_mapping(recipe.id, store.id)

        assert [r.id for r in first] == [r.id for r in second]
        assert _mapping_count(db, recipe.id, store.id) == 4

    def test_force_rebuild_replaces_rows(self, stock_setup):
        db = stock_setup["db"]
        store = stock_setup["store"]
        recipe = stock_setup["recipes"]["croffle"]
        service = RecipeMappingService(db)

        service.build_mapping(recipe.id, store.id)
        rebuilt = service.build_mapping(recipe.id, store.id, force=True)

        assert len(rebuilt) == 4
        assert _mapping_count(db, recipe.id, store.id) == 4

    def test_one_unresolvable_requirement_writes_nothing(self, stock_setup, add_recipe):
        db = stock_setup["db"]
        store = stock_setup["store"]
        created = add_recipe("Mystery Shake", [
            ("Straw", 1, "pieces"),
            ("Plastic Lid", 1, "pieces"),
            ("Oreo Crushed", 1, "serving"),
            ("Wax Paper", 1, "pieces"),
            ("Dragon Fruit Syrup", 1, "serving"),
        ])

        with pytest.raises(ResolutionError) as exc_info:
            RecipeMappingService(db).build_mapping(created["recipe"].id, store.id)

        assert exc_info.value.problems[0]["ingredient"] == "Dragon Fruit Syrup"
        assert _mapping_count(db, created["recipe"].id, store.id) == 0

    def test_ambiguous_requirement_writes_nothing(self, stock_setup, add_recipe):
        db = stock_setup["db"]
        store = stock_setup["store"]
        db.add(InventoryItem(store_id=store.id, name="Heavy Cream", unit="serving", quantity=Decimal("20")))
        db.commit()
        created = add_recipe("Cream Puff", [("Cream", 1, "serving")])

        with pytest.raises(ResolutionError) as exc_info:
            RecipeMappingService(db).build_mapping(created["recipe"].id, store.id)

        assert "ambiguous" in exc_info.value.problems[0]["reason"]
        assert _mapping_count(db, created["recipe"].id, store.id) == 0

    def test_unknown_recipe(self, stock_setup):
        with pytest.raises(LookupError):
            RecipeMappingService(stock_setup["db"]).build_mapping(9999, stock_setup["store"].id)


class TestMappingLifecycle:
    def test_invalidate_then_rebuild(self, stock_setup):
        db = stock_setup["db"]
        store = stock_setup["store"]
        recipe = stock_setup["recipes"]["topping"]
        service = RecipeMappingService(db)

        service.build_mapping(recipe.id, store.id)
        assert service.invalidate(recipe.id, store.id) == 1
        assert service.load_mappings(store.id, [recipe.id]) == {}

        service.build_mapping(recipe.id, store.id)
        assert _mapping_count(db, recipe.id, store.id) == 1

    def test_inactive_item_hides_mapping(self, stock_setup):
        db = stock_setup["db"]
        store = stock_setup["store"]
        recipe = stock_setup["recipes"]["croffle"]
        service = RecipeMappingService(db)
        service.build_mapping(recipe.id, store.id)

        stock_setup["items"]["Wax Paper"].active = False
        db.commit()

        assert service.load_mappings(store.id, [recipe.id]) == {}

    def test_ensure_mapping_builds_on_first_use(self, stock_setup):
        db = stock_setup["db"]
        store = stock_setup["store"]
        rows = RecipeMappingService(db).ensure_mapping(stock_setup["topping"], store.id)
        assert [r.inventory_item_id for r in rows] == [stock_setup["items"]["Whipped Cream"].id]

    def test_ensure_mapping_without_recipe(self, stock_setup):
        db = stock_setup["db"]
        gift_card = Product(name="Gift Card", active=True)
        db.add(gift_card)
        db.commit()

        with pytest.raises(MappingIncompleteError) as exc_info:
            RecipeMappingService(db).ensure_mapping(gift_card, stock_setup["store"].id)
        assert exc_info.value.product_id == gift_card.id

    def test_ensure_mapping_wraps_resolution_failure(self, stock_setup, add_recipe):
        created = add_recipe("Unicorn Latte", [("Unicorn Dust", 1, "serving")])
        with pytest.raises(MappingIncompleteError):
            RecipeMappingService(stock_setup["db"]).ensure_mapping(created["product"], stock_setup["store"].id)

    def test_get_recipe_for_product(self, stock_setup):
        service = RecipeMappingService(stock_setup["db"])
        assert service.get_recipe_for_product(stock_setup["croffle"].id) == stock_setup["recipes"]["croffle"].id
        assert service.get_recipe_for_product(9999) is None


class TestValidateMapping:
    def test_validate_proposed_rows(self, stock_setup):
        db = stock_setup["db"]
        store = stock_setup["store"]
        product = stock_setup["topping"]
        service = RecipeMappingService(db)
        requirement = service.get_ingredient_requirements(product.recipe_id)[0]

        result = service.validate_mapping(product.id, store.id, [
            ProposedMapping(
                requirement_id=requirement.id,
                inventory_item_id=stock_setup["items"]["Whipped Cream"].id,
                quantity_per_unit=Decimal("1"),
                unit="serving",
            ),
        ])
        assert result.valid is True
        assert result.score == 100

    def test_validate_unknown_product(self, stock_setup):
        with pytest.raises(LookupError):
            RecipeMappingService(stock_setup["db"]).validate_mapping(9999, stock_setup["store"].id, [])
