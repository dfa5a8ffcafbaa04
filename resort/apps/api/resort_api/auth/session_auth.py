"""Session authentication for purchase and staff endpoints.

Supabase JWT-based session auth.

FLOW:
1. User signs in on the client via Supabase Auth -> receives JWT access_token
2. Client calls a payment/redemption endpoint with Authorization: Bearer <jwt>
3. resolve_caller() validates the JWT with Supabase and returns Caller(user_id, email)
4. Staff endpoints additionally require the Staff or Admin role (has_role RPC)

SECURITY:
- JWT signature and expiry verified by Supabase (auth.get_user)
- Role checks run server-side with the secret key; the client cannot assert roles
"""

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from resort_api.billing.result import Err, ErrorKind, Ok, Result
from resort_api.context import user_id_var
from resort_api.supabase_client import get_supabase_admin_client

logger = logging.getLogger(__name__)

# HTTPBearer scheme for session JWT
session_security = HTTPBearer(auto_error=False, description="Supabase JWT Session Token")

STAFF_ROLES = ("Staff", "Admin")


@dataclass(frozen=True)
class Caller:
    """Authenticated caller resolved from a session token."""

    user_id: str
    email: Optional[str] = None


CallerResolver = Callable[[Optional[str]], Result[Caller]]
RoleChecker = Callable[[str], bool]


def resolve_caller(token: Optional[str]) -> Result[Caller]:
    """Resolve the caller behind a Supabase access token.

    Returns:
        Ok(Caller) or Err(UNAUTHENTICATED) for a missing/invalid/expired token
    """
    if not token:
        return Err(ErrorKind.UNAUTHENTICATED, "Missing Authorization header. Please sign in first.")

    try:
        supabase = get_supabase_admin_client()
        user_response = supabase.auth.get_user(token)
    except Exception as e:
        # supabase-py raises AuthApiError for invalid/expired tokens
        logger.warning(
            "SESSION_JWT_REJECTED",
            extra={"error_type": type(e).__name__},
        )
        return Err(ErrorKind.UNAUTHENTICATED, "Invalid or expired session token. Please sign in again.")

    if not user_response or not user_response.user:
        return Err(ErrorKind.UNAUTHENTICATED, "Invalid or expired session token. Please sign in again.")

    user = user_response.user
    user_id_var.set(user.id)
    logger.debug("SESSION_JWT_VALIDATED")
    return Ok(Caller(user_id=user.id, email=user.email))


def has_staff_role(user_id: str) -> bool:
    """True if the user holds the Staff or Admin role.

    RPC failures count as "no role" (fail-closed).
    """
    supabase = get_supabase_admin_client()
    for role in STAFF_ROLES:
        try:
            response = supabase.rpc("has_role", {"_user_id": user_id, "_role": role}).execute()
        except Exception as e:
            logger.warning(
                "STAFF_ROLE_CHECK_FAILED",
                extra={"role": role, "error_type": type(e).__name__},
            )
            continue
        if response.data:
            return True
    return False


def require_staff(
    token: Optional[str],
    resolver: CallerResolver = resolve_caller,
    role_checker: RoleChecker = has_staff_role,
) -> Result[Caller]:
    """Resolve the caller and require a staff role.

    Returns:
        Ok(Caller), Err(UNAUTHENTICATED) or Err(FORBIDDEN)
    """
    resolved = resolver(token)
    if isinstance(resolved, Err):
        return resolved

    caller = resolved.value
    if not role_checker(caller.user_id):
        logger.warning("STAFF_ACCESS_DENIED", extra={"staff_user_id": caller.user_id})
        return Err(ErrorKind.FORBIDDEN, "Access denied. Staff privileges required.")
    return resolved


def get_bearer_token(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(session_security),
) -> Optional[str]:
    """FastAPI dependency: raw bearer token or None (validated downstream)."""
    if credentials is None:
        return None
    return credentials.credentials


def get_caller_resolver() -> CallerResolver:
    """FastAPI dependency: caller resolver (overridable in tests)."""
    return resolve_caller


def get_role_checker() -> RoleChecker:
    """FastAPI dependency: staff role checker (overridable in tests)."""
    return has_staff_role
