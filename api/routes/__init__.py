"""API Routes Package."""

from api.routes import health, webhooks, events, transactions, admin, auth

__all__ = [
    "health",
    "webhooks",
    "events",
    "transactions",
    "admin",
    "auth",
]
