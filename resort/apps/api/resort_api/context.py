"""Request context management for observability.

Context variables for request tracking across async boundaries. The JSON log
formatter reads these so every log line carries the caller and the payment
intent being handled.
"""

from contextvars import ContextVar

# Request ID - unique per HTTP request
request_id_var: ContextVar[str] = ContextVar("request_id", default="")

# Authenticated caller (Supabase auth.users id)
user_id_var: ContextVar[str] = ContextVar("user_id", default="")

# Processor payment intent currently being created or fulfilled
payment_intent_id_var: ContextVar[str] = ContextVar("payment_intent_id", default="")
