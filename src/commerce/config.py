"""Runtime settings for the commerce engine, read from the environment."""

import os
from dataclasses import dataclass


def _int(name: str, default: int) -> int:
    return int(os.getenv(name, default))


def _float(name: str, default: float) -> float:
    return float(os.getenv(name, default))


def _bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    environment: str = "development"
    currency: str = "INR"

    # Holds and timeouts
    reservation_ttl_minutes: int = 10
    exchange_reservation_ttl_minutes: int = 30
    payment_session_ttl_minutes: int = 15
    pending_order_ttl_hours: int = 48

    # Post-sale rules
    return_window_days: int = 7
    exchange_window_days: int = 7
    auto_restock_on_approval: bool = True
    reverse_pickup_fee: float = 50.0

    # Distributed lock
    lock_backend: str = "memory"
    lock_ttl_ms: int = 15000
    lock_retries: int = 3
    lock_retry_delay_ms: int = 100

    # Cache
    cache_backend: str = "memory"
    redis_url: str = "redis://localhost:6379/0"

    # Gateways and couriers
    active_gateway: str = "fake"
    razorpay_key_id: str = ""
    razorpay_key_secret: str = ""
    razorpay_webhook_secret: str = ""
    payu_merchant_key: str = ""
    payu_merchant_salt: str = ""
    courier_adapter: str = "fake"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            environment=(os.getenv("PROTEAN_ENV") or os.getenv("ENVIRONMENT") or "development").lower(),
            currency=os.getenv("CURRENCY", "INR"),
            reservation_ttl_minutes=_int("RESERVATION_TTL_MINUTES", 10),
            exchange_reservation_ttl_minutes=_int("EXCHANGE_RESERVATION_TTL_MINUTES", 30),
            payment_session_ttl_minutes=_int("PAYMENT_SESSION_TTL_MINUTES", 15),
            pending_order_ttl_hours=_int("PENDING_ORDER_TTL_HOURS", 48),
            return_window_days=_int("RETURN_WINDOW_DAYS", 7),
            exchange_window_days=_int("EXCHANGE_WINDOW_DAYS", 7),
            auto_restock_on_approval=_bool("AUTO_RESTOCK_ON_APPROVAL", True),
            reverse_pickup_fee=_float("REVERSE_PICKUP_FEE", 50.0),
            lock_backend=os.getenv("LOCK_BACKEND", "memory"),
            lock_ttl_ms=_int("LOCK_TTL_MS", 15000),
            lock_retries=_int("LOCK_RETRIES", 3),
            lock_retry_delay_ms=_int("LOCK_RETRY_DELAY_MS", 100),
            cache_backend=os.getenv("CACHE_BACKEND", "memory"),
            redis_url=os.getenv("REDIS_URL", "redis://localhost:6379/0"),
            active_gateway=os.getenv("ACTIVE_GATEWAY", "fake"),
            razorpay_key_id=os.getenv("RAZORPAY_KEY_ID", ""),
            razorpay_key_secret=os.getenv("RAZORPAY_KEY_SECRET", ""),
            razorpay_webhook_secret=os.getenv("RAZORPAY_WEBHOOK_SECRET", ""),
            payu_merchant_key=os.getenv("PAYU_MERCHANT_KEY", ""),
            payu_merchant_salt=os.getenv("PAYU_MERCHANT_SALT", ""),
            courier_adapter=os.getenv("COURIER_ADAPTER", "fake"),
        )


_settings: Settings | None = None


def get_settings() -> Settings:
    """Return process-wide settings, loading them from the environment once."""
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings


def reset_settings() -> None:
    """Drop cached settings so the next call re-reads the environment."""
    global _settings
    _settings = None
