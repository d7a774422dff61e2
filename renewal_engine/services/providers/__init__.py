from renewal_engine.core.config import get_settings
from renewal_engine.core.errors import NotFound
from renewal_engine.models.enums import Provider

from .apple_adapter import AppleAdapter
from .base import ProviderAdapter
from .stripe_adapter import StripeAdapter

ADAPTERS = {
    Provider.stripe: StripeAdapter,
    Provider.apple: AppleAdapter,
}


def get_adapter(provider, settings=None) -> ProviderAdapter:
    try:
        adapter_cls = ADAPTERS[Provider(provider)]
    except ValueError:
        raise NotFound(f"Unknown payment provider: {provider}")
    return adapter_cls(settings or get_settings())
