import hashlib
import hmac
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional
from pydantic import BaseModel
from orderflow.config.settings import Settings, config_settings

CENT = Decimal("0.01")


class PaymentConfig(BaseModel):
    store_currency: str = "VND"
    store_currency_exponent: int = 0
    gateway_currency: str = "USD"
    exchange_rate: Decimal = Decimal("24000")
    min_charge: Decimal = Decimal("0.01")
    capture_timeout: float = 15.0
    max_retries: int = 3
    backoff_base: float = 0.5

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "PaymentConfig":
        settings = settings or config_settings
        return cls(
            store_currency=settings.STORE_CURRENCY,
            store_currency_exponent=settings.STORE_CURRENCY_EXPONENT,
            gateway_currency=settings.GATEWAY_CURRENCY,
            exchange_rate=settings.GATEWAY_EXCHANGE_RATE,
            min_charge=settings.GATEWAY_MIN_CHARGE,
            capture_timeout=settings.GATEWAY_CAPTURE_TIMEOUT,
            max_retries=settings.GATEWAY_MAX_RETRIES,
            backoff_base=settings.GATEWAY_BACKOFF_BASE,
        )


def convert_for_gateway(amount: int, config: PaymentConfig) -> Decimal:
    """Store minor units -> gateway currency, two decimals, never below the gateway minimum."""
    major = Decimal(int(amount)).scaleb(-config.store_currency_exponent)
    converted = (major / Decimal(config.exchange_rate)).quantize(CENT, rounding=ROUND_HALF_UP)
    return max(converted, Decimal(config.min_charge).quantize(CENT, rounding=ROUND_HALF_UP))


def sign_payload(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def verify_signature(secret: str, body: bytes, signature: Optional[str]) -> bool:
    if not signature:
        return False
    return hmac.compare_digest(sign_payload(secret, body), signature)
