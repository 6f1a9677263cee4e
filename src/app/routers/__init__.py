# Routers package
from . import (
    billing_router,
    stripe_webhook_router,
)

__all__ = [
    "billing_router",
    "stripe_webhook_router",
]
