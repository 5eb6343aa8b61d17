"""
API route modules.
"""
from app.api.routes import subscriptions, payments, webhooks

__all__ = ["subscriptions", "payments", "webhooks"]
