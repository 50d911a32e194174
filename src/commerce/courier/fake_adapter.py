"""Fake courier that books pickups for the next day without any network calls."""

from datetime import timedelta
from uuid import uuid4

from commerce.courier.port import Courier, CourierError, PickupRequest, PickupResult
from commerce.utils.clock import utcnow


class FakeCourier(Courier):
    def __init__(self) -> None:
        self.should_succeed: bool = True
        self.requests: list[PickupRequest] = []

    def configure(self, should_succeed: bool) -> None:
        self.should_succeed = should_succeed

    def schedule_pickup(self, request: PickupRequest) -> PickupResult:
        self.requests.append(request)
        if not self.should_succeed:
            raise CourierError("Courier rejected the pickup request")

        tracking = uuid4().hex[:10].upper()
        return PickupResult(
            pickup_id=f"fake_pickup_{uuid4().hex[:12]}",
            scheduled_at=utcnow() + timedelta(days=1),
            carrier="fake",
            tracking_id=tracking,
            label_url=f"https://labels.example.invalid/{tracking}.pdf",
        )
