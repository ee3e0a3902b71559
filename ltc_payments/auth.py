"""
API key check for the payment endpoints.

When API_TOKEN is unset every caller is accepted, which is only suitable for
local development. When it is set, routes that depend on `verify_api_token`
require it in the X-API-Key header; query parameters are never consulted.
/health stays open so load balancers can probe it.
"""

import hmac
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import APIKeyHeader

from .gateway import PaymentGateway

api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


def get_gateway(request: Request) -> PaymentGateway:
    """The service object installed on the app at startup."""
    return request.app.state.gateway


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "X-API-Key"},
    )


async def verify_api_token(
    api_key: Optional[str] = Depends(api_key_header),
    gateway: PaymentGateway = Depends(get_gateway),
) -> bool:
    """
    Raises:
        HTTPException: 401 when a token is configured and the request's key
            is missing or wrong
    """
    expected = gateway.settings.api_token
    if not expected:
        return True
    if not api_key:
        raise _unauthorized("Missing X-API-Key header")
    # constant-time comparison
    if not hmac.compare_digest(api_key.encode("utf-8"), expected.encode("utf-8")):
        raise _unauthorized("Invalid API key")
    return True
