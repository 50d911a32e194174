"""Product variant (CQRS) — the sellable unit and owner of the stock counter.

Stock is only ever changed through `take` and `restore`, which the ledger
primitives call inside a Unit of Work. `take` checks and decrements on the
same aggregate version, so two writers racing on a stale copy cannot both
succeed.
"""

import json
from datetime import UTC, datetime

from protean import invariant
from protean.exceptions import ValidationError
from protean.fields import Boolean, DateTime, Float, Identifier, Integer, String, Text

from commerce.domain import commerce


@commerce.aggregate
class Variant:
    product_id = Identifier(required=True)
    sku = String(required=True, max_length=64)
    title = String(required=True, max_length=255)
    price = Float(required=True, min_value=0.0)
    stock = Integer(default=0)
    category_ids = Text()  # JSON array of category ids
    active = Boolean(default=True)
    created_at = DateTime()
    updated_at = DateTime()

    @invariant.post
    def stock_cannot_be_negative(self):
        if self.stock is not None and self.stock < 0:
            raise ValidationError({"stock": ["Stock cannot be negative"]})

    @classmethod
    def create(cls, product_id, sku, title, price, stock=0, category_ids=None):
        now = datetime.now(UTC)
        return cls(
            product_id=product_id,
            sku=sku,
            title=title,
            price=price,
            stock=stock,
            category_ids=json.dumps([str(c) for c in category_ids or []]),
            active=True,
            created_at=now,
            updated_at=now,
        )

    @property
    def categories(self) -> list[str]:
        return json.loads(self.category_ids) if self.category_ids else []

    def take(self, quantity: int) -> bool:
        """Decrement stock by `quantity` only if that much is on hand."""
        if quantity <= 0:
            raise ValidationError({"quantity": ["Quantity must be positive"]})
        if not self.active or self.stock < quantity:
            return False
        self.stock -= quantity
        self.updated_at = datetime.now(UTC)
        return True

    def restore(self, quantity: int) -> None:
        if quantity <= 0:
            raise ValidationError({"quantity": ["Quantity must be positive"]})
        self.stock += quantity
        self.updated_at = datetime.now(UTC)

    def deactivate(self) -> None:
        self.active = False
        self.updated_at = datetime.now(UTC)
