"""API dependencies for authentication and common operations."""

from typing import Annotated
from uuid import UUID

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from sitswap.core.exceptions import AuthenticationError
from sitswap.core.security import verify_token
from sitswap.database import get_db
from sitswap.gateways.stripe_gateway import StripeGateway, stripe_gateway

# Security scheme
security = HTTPBearer(auto_error=False)

__all__ = ["get_db", "get_current_user_id", "get_stripe_gateway"]


async def get_current_user_id(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
) -> UUID:
    """Get the current user's profile id from the JWT bearer token."""
    if credentials is None:
        raise AuthenticationError("Not authenticated")
    payload = verify_token(credentials.credentials, token_type="access")
    subject = payload.get("sub")
    if not subject:
        raise AuthenticationError("Invalid token payload")
    try:
        return UUID(str(subject))
    except ValueError:
        raise AuthenticationError("Invalid token subject")


def get_stripe_gateway() -> StripeGateway:
    return stripe_gateway
