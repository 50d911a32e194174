"""Tests for the Variant stock counter."""

import pytest
from commerce.catalog.variant import Variant
from protean.exceptions import ValidationError


def _variant(stock=3):
    return Variant.create(product_id="prod-1", sku="SKU-1", title="Tee", price=499.0, stock=stock)


class TestVariantCreation:
    def test_create_sets_fields(self):
        variant = _variant()
        assert variant.sku == "SKU-1"
        assert variant.price == 499.0
        assert variant.stock == 3
        assert variant.active is True

    def test_categories_round_trip_through_json(self):
        variant = Variant.create(
            product_id="prod-1", sku="SKU-1", title="Tee", price=10.0, category_ids=["cat-a", "cat-b"]
        )
        assert variant.categories == ["cat-a", "cat-b"]

    def test_negative_stock_is_rejected(self):
        with pytest.raises(ValidationError):
            Variant(product_id="prod-1", sku="SKU-1", title="Tee", price=10.0, stock=-1)


class TestTake:
    def test_take_decrements_when_covered(self):
        variant = _variant(stock=3)
        assert variant.take(2) is True
        assert variant.stock == 1

    def test_take_refuses_more_than_on_hand(self):
        variant = _variant(stock=1)
        assert variant.take(2) is False
        assert variant.stock == 1

    def test_take_exactly_the_last_unit(self):
        variant = _variant(stock=1)
        assert variant.take(1) is True
        assert variant.stock == 0

    def test_take_refuses_inactive_variant(self):
        variant = _variant(stock=5)
        variant.deactivate()
        assert variant.take(1) is False
        assert variant.stock == 5

    def test_take_rejects_non_positive_quantity(self):
        with pytest.raises(ValidationError):
            _variant().take(0)


class TestRestore:
    def test_restore_increments(self):
        variant = _variant(stock=0)
        variant.restore(2)
        assert variant.stock == 2

    def test_restore_rejects_non_positive_quantity(self):
        with pytest.raises(ValidationError):
            _variant().restore(-1)
