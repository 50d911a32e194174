"""Courier collaborator port — reverse pickups for returns and exchanges."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True)
class PickupRequest:
    reference_id: str  # return or exchange id
    order_id: str
    user_id: str
    address: dict
    items: list[dict]


@dataclass(frozen=True)
class PickupResult:
    pickup_id: str
    scheduled_at: datetime
    carrier: str
    tracking_id: str | None = None
    label_url: str | None = None


class CourierError(Exception):
    """The courier could not schedule a pickup."""


class Courier(ABC):
    @abstractmethod
    def schedule_pickup(self, request: PickupRequest) -> PickupResult:
        """Book a reverse pickup. Raises CourierError on failure."""
        ...
