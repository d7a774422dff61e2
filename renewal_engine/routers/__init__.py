from .webhooks import router as webhooks_router
from .subscription import router as subscription_router
from .recurring_items import router as recurring_items_router
