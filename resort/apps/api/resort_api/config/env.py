"""Environment variable resolution utilities.

Canonical env names + fail-fast validation. Getters raise ValueError with an
actionable message so callers can map a missing secret to a 500
misconfiguration response instead of a client error.
"""

import os

DEFAULT_WEBHOOK_TOLERANCE_SEC = 300
DEFAULT_CURRENCY = "usd"


def get_env_name() -> str:
    """Deployment environment (RESORT_ENV), lower-cased; empty in dev."""
    return os.getenv("RESORT_ENV", "").lower()


def is_production() -> bool:
    return get_env_name() in {"prod", "production"}


def get_stripe_secret_key() -> str:
    """Get Stripe secret API key.

    Required: STRIPE_SECRET_KEY (sk_test_* or sk_live_*)

    Raises:
        ValueError: If STRIPE_SECRET_KEY is not set
    """
    key = os.getenv("STRIPE_SECRET_KEY")
    if not key:
        raise ValueError(
            "STRIPE_SECRET_KEY is required. Set it in environment configuration."
        )
    return key


def get_stripe_webhook_secret() -> str:
    """Get Stripe webhook signing secret.

    Required: STRIPE_WEBHOOK_SECRET (whsec_*)

    Raises:
        ValueError: If STRIPE_WEBHOOK_SECRET is not set
    """
    secret = os.getenv("STRIPE_WEBHOOK_SECRET")
    if not secret:
        raise ValueError(
            "STRIPE_WEBHOOK_SECRET is required for webhook signature verification. "
            "Set it in environment configuration."
        )
    return secret


def get_webhook_tolerance_seconds() -> int:
    """Maximum accepted age of a signed webhook timestamp (seconds)."""
    raw = os.getenv("STRIPE_WEBHOOK_TOLERANCE_SEC")
    if not raw:
        return DEFAULT_WEBHOOK_TOLERANCE_SEC
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(
            f"STRIPE_WEBHOOK_TOLERANCE_SEC must be an integer, got {raw!r}"
        ) from None
    if value <= 0:
        raise ValueError("STRIPE_WEBHOOK_TOLERANCE_SEC must be positive")
    return value


def get_payment_currency() -> str:
    """ISO currency code for payment intents (PAYMENT_CURRENCY, default usd)."""
    return os.getenv("PAYMENT_CURRENCY", DEFAULT_CURRENCY).lower()


def get_cors_allowed_origins() -> list[str]:
    """Explicit CORS allowlist (comma-separated CORS_ALLOWED_ORIGINS).

    Falls back to localhost variants for development.
    """
    raw = os.getenv("CORS_ALLOWED_ORIGINS", "")
    if raw:
        return [origin.strip() for origin in raw.split(",") if origin.strip()]
    return [
        "http://localhost:5173",
        "http://localhost:8080",
        "http://127.0.0.1:5173",
        "http://127.0.0.1:8080",
    ]
