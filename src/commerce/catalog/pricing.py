"""Server-side re-pricing of checkout lines.

Client-submitted prices and totals are never trusted: every line is priced
from the current catalog before anything is reserved.
"""

from dataclasses import dataclass, field

from protean.exceptions import ObjectNotFoundError, ValidationError
from protean.utils.globals import current_domain

from commerce.catalog.variant import Variant


@dataclass
class PricedLine:
    product_id: str
    variant_id: str
    sku: str
    title: str
    quantity: int
    unit_price: float
    line_total: float
    category_ids: list[str] = field(default_factory=list)
    item_id: str | None = None


def revalidate_items(items) -> tuple[list[PricedLine], float]:
    """Price `items` (dicts with variant_id and quantity) against the catalog.

    Returns the priced lines and the server subtotal.
    """
    if not items:
        raise ValidationError({"items": ["No items provided"]})

    repo = current_domain.repository_for(Variant)
    lines = []
    for item in items:
        variant_id = str(item["variant_id"])
        quantity = int(item.get("quantity") or 0)
        if quantity < 1:
            raise ValidationError({"quantity": [f"Quantity for variant {variant_id} must be at least 1"]})

        try:
            variant = repo.get(variant_id)
        except ObjectNotFoundError as exc:
            raise ValidationError({"items": [f"Variant not found: {variant_id}"]}) from exc
        if not variant.active:
            raise ValidationError({"items": [f"Variant {variant_id} is no longer available"]})

        lines.append(
            PricedLine(
                product_id=str(variant.product_id),
                variant_id=variant_id,
                sku=variant.sku,
                title=variant.title,
                quantity=quantity,
                unit_price=variant.price,
                line_total=round(variant.price * quantity, 2),
                category_ids=variant.categories,
                item_id=item.get("item_id"),
            )
        )

    subtotal = round(sum(line.line_total for line in lines), 2)
    return lines, subtotal
