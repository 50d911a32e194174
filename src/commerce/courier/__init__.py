from commerce.courier.fake_adapter import FakeCourier
from commerce.courier.port import Courier

_current_courier: Courier | None = None


def get_courier() -> Courier:
    """Return the active courier. Only the fake courier ships in-tree."""
    global _current_courier
    if _current_courier is None:
        _current_courier = FakeCourier()
    return _current_courier


def set_courier(courier: Courier) -> None:
    global _current_courier
    _current_courier = courier


def reset_courier() -> None:
    global _current_courier
    _current_courier = None
