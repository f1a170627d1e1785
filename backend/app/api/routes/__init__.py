# API Routes Module
from app.api.routes import (
    admin,
    billing,
    webhooks,
)

__all__ = [
    "admin",
    "billing",
    "webhooks",
]
