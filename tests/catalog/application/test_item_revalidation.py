"""Tests for server-side re-pricing of checkout lines."""

import pytest
from commerce.catalog.pricing import revalidate_items
from protean.exceptions import ValidationError


class TestRevalidateItems:
    def test_prices_come_from_the_catalog(self, make_variant):
        variant = make_variant(price=250.0)
        lines, subtotal = revalidate_items([{"variant_id": str(variant.id), "quantity": 2, "unit_price": 1.0}])

        assert lines[0].unit_price == 250.0
        assert lines[0].line_total == 500.0
        assert subtotal == 500.0

    def test_subtotal_sums_every_line(self, make_variant):
        shirt = make_variant(price=100.0, sku="SHIRT")
        socks = make_variant(price=30.5, sku="SOCKS")
        _, subtotal = revalidate_items(
            [
                {"variant_id": str(shirt.id), "quantity": 1},
                {"variant_id": str(socks.id), "quantity": 3},
            ]
        )
        assert subtotal == 191.5

    def test_item_id_is_carried_through(self, make_variant):
        variant = make_variant()
        lines, _ = revalidate_items([{"variant_id": str(variant.id), "quantity": 1, "item_id": "item-9"}])
        assert lines[0].item_id == "item-9"

    def test_empty_items_are_rejected(self):
        with pytest.raises(ValidationError):
            revalidate_items([])

    def test_unknown_variant_is_rejected(self):
        with pytest.raises(ValidationError) as exc:
            revalidate_items([{"variant_id": "missing", "quantity": 1}])
        assert "Variant not found" in str(exc.value.messages)

    def test_inactive_variant_is_rejected(self, make_variant):
        from commerce.catalog.variant import Variant
        from protean import current_domain

        variant = make_variant()
        variant.deactivate()
        current_domain.repository_for(Variant).add(variant)

        with pytest.raises(ValidationError):
            revalidate_items([{"variant_id": str(variant.id), "quantity": 1}])

    def test_zero_quantity_is_rejected(self, make_variant):
        variant = make_variant()
        with pytest.raises(ValidationError):
            revalidate_items([{"variant_id": str(variant.id), "quantity": 0}])
