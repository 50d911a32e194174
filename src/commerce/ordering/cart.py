"""Cart aggregate — the items a user has picked before checkout.

A checkout that places an order "from cart" reads these lines; settlement
empties the cart.
"""

from protean import handle
from protean.exceptions import ValidationError
from protean.fields import DateTime, HasMany, Identifier, Integer
from protean.utils.globals import current_domain

from commerce.domain import commerce
from commerce.utils.clock import utcnow


@commerce.entity(part_of="Cart")
class CartItem:
    variant_id = Identifier(required=True)
    quantity = Integer(required=True, min_value=1)
    added_at = DateTime()


@commerce.aggregate
class Cart:
    user_id = Identifier(required=True)
    items = HasMany(CartItem)
    updated_at = DateTime()

    @classmethod
    def create(cls, user_id):
        return cls(user_id=user_id, updated_at=utcnow())

    def add_item(self, variant_id, quantity: int) -> None:
        if quantity < 1:
            raise ValidationError({"quantity": ["Quantity must be at least 1"]})

        existing = next((i for i in self.items if str(i.variant_id) == str(variant_id)), None)
        now = utcnow()
        if existing:
            existing.quantity += quantity
        else:
            self.add_items(CartItem(variant_id=variant_id, quantity=quantity, added_at=now))
        self.updated_at = now

    def clear(self) -> None:
        for item in list(self.items):
            self.remove_items(item)
        self.updated_at = utcnow()

    def as_checkout_items(self) -> list[dict]:
        return [{"variant_id": str(i.variant_id), "quantity": i.quantity} for i in self.items]


def cart_for(user_id, create: bool = False) -> Cart | None:
    repo = current_domain.repository_for(Cart)
    carts = repo._dao.query.filter(user_id=str(user_id)).all().items
    if carts:
        return carts[0]
    return Cart.create(user_id) if create else None


def clear_cart(user_id) -> None:
    """Empty the user's cart inside the caller's Unit of Work."""
    cart = cart_for(user_id)
    if cart is None or not cart.items:
        return
    cart.clear()
    current_domain.repository_for(Cart).add(cart)


@commerce.command(part_of="Cart")
class AddToCart:
    user_id = Identifier(required=True)
    variant_id = Identifier(required=True)
    quantity = Integer(default=1)


@commerce.command_handler(part_of=Cart)
class CartHandler:
    @handle(AddToCart)
    def add_to_cart(self, command):
        cart = cart_for(command.user_id, create=True)
        cart.add_item(command.variant_id, command.quantity or 1)
        current_domain.repository_for(Cart).add(cart)
        return str(cart.id)
