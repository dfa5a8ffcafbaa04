"""Payment intent issuance, webhook fulfillment and redemption."""

from resort_api.billing.result import Err, ErrorKind, Ok, Result

__all__ = ["Err", "ErrorKind", "Ok", "Result"]
