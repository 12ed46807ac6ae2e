"""External integrations: Stripe checkout and the payment webhook."""
from .stripe_client import StripeClient, StripeError
from .webhook_handler import WebhookHandler

__all__ = ["StripeClient", "StripeError", "WebhookHandler"]
