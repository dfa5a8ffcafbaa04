"""Resort payments API: payment intents, webhook fulfillment and redemption."""

__version__ = "0.3.0"
