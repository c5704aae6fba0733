# Routers package
from . import (
    notification_router,
    relay_router,
    revenuecat_router,
    stripe_webhook_router,
    subscription_router,
)

__all__ = [
    "notification_router",
    "relay_router",
    "revenuecat_router",
    "stripe_webhook_router",
    "subscription_router",
]
