"""Conditional updates over the three contended counters.

Each primitive loads the owning aggregate inside the caller's Unit of Work,
applies the guarded mutation and persists it, returning whether the
condition held. These are the only code paths that move variant stock,
coupon usage counts and wallet balances. The aggregate version check at
commit time rejects a writer that raced on a stale copy.

Callers translate a False result into the matching InsufficientResource
error; none of these functions raise on an unmet condition.
"""

from protean.utils.globals import current_domain

from commerce.catalog.variant import Variant
from commerce.coupons.coupon import Coupon
from commerce.wallet.wallet import Wallet


def take_stock(variant_id, quantity: int) -> bool:
    """Decrement stock by `quantity` only if current stock >= quantity."""
    repo = current_domain.repository_for(Variant)
    variant = repo.get(variant_id)
    if not variant.take(quantity):
        return False
    repo.add(variant)
    return True


def return_stock(variant_id, quantity: int) -> bool:
    repo = current_domain.repository_for(Variant)
    variant = repo.get(variant_id)
    variant.restore(quantity)
    repo.add(variant)
    return True


def claim_coupon_use(coupon_id) -> bool:
    """Increment usage only if uses_count < max_uses."""
    repo = current_domain.repository_for(Coupon)
    coupon = repo.get(coupon_id)
    if not coupon.claim_use():
        return False
    repo.add(coupon)
    return True


def release_coupon_use(coupon_id) -> bool:
    """Decrement usage only if uses_count > 0."""
    repo = current_domain.repository_for(Coupon)
    coupon = repo.get(coupon_id)
    if not coupon.release_use():
        return False
    repo.add(coupon)
    return True


def wallet_for(user_id, create: bool = False) -> Wallet | None:
    """Return the user's wallet, opening an empty one on first credit when asked."""
    repo = current_domain.repository_for(Wallet)
    wallets = repo._dao.query.filter(user_id=str(user_id)).all().items
    if wallets:
        return wallets[0]
    if not create:
        return None
    return Wallet.open(user_id)


def debit_balance(user_id, amount: float) -> Wallet | None:
    """Debit only if balance >= amount. Returns the updated wallet, or None."""
    wallet = wallet_for(user_id)
    if wallet is None or not wallet.withdraw(amount):
        return None
    current_domain.repository_for(Wallet).add(wallet)
    return wallet


def credit_balance(user_id, amount: float) -> Wallet:
    wallet = wallet_for(user_id, create=True)
    wallet.deposit(amount)
    current_domain.repository_for(Wallet).add(wallet)
    return wallet
