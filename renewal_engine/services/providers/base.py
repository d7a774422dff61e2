import json
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from pydantic import ValidationError

from renewal_engine.core.errors import MalformedPayload
from renewal_engine.schemas.events import BillingEvent


class ProviderAdapter:
    """
    Signature verification and normalisation for one payment provider.

    ``parse`` returns the normalised event together with the raw payload text
    that gets stored on the WebhookEvent row.
    """
    provider = None

    def __init__(self, settings):
        self.settings = settings

    def parse(self, raw_payload: bytes, signature: Optional[str]) -> BillingEvent:
        raise NotImplementedError

    def build_event(self, **fields) -> BillingEvent:
        try:
            return BillingEvent(provider=self.provider, **fields)
        except ValidationError as e:
            raise MalformedPayload(f"Unusable {self.provider.value} event: {e.errors()[0]['msg']}") from e


def load_json(raw) -> dict:
    try:
        data = json.loads(raw)
    except (TypeError, ValueError, UnicodeDecodeError) as e:
        raise MalformedPayload(f"Payload is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise MalformedPayload("Payload must be a JSON object")
    return data


def from_epoch(value, millis: bool = False) -> Optional[datetime]:
    if value in (None, ""):
        return None
    seconds = int(value) / 1000 if millis else int(value)
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def minor_units(value, divisor: int = 100) -> Optional[Decimal]:
    if value is None:
        return None
    return (Decimal(int(value)) / Decimal(divisor)).quantize(Decimal("0.01"))
