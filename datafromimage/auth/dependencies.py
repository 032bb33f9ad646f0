"""
FastAPI dependencies for authentication.

Security:
- Access token verified with the identity provider (cached 5 minutes)
- account_id comes from the verified token, never from the request body
- Account created with signup credits on first successful sign-in
"""

import logging

from fastapi import Depends, Header, HTTPException, Request, status

from datafromimage.auth.identity import IdentityUnavailable
from datafromimage.models.account import Account
from datafromimage.observability.logging import set_account_id
from datafromimage.services import Services, get_services

logger = logging.getLogger(__name__)


def _extract_bearer_token(authorization: str | None) -> str:
    if not authorization:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authentication. Provide an access token via the Authorization header.",
            headers={"WWW-Authenticate": "Bearer"},
        )

    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid Authorization header format. Use: 'Bearer {access_token}'",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return parts[1]


async def get_current_account(
    request: Request,
    authorization: str | None = Header(None, alias="Authorization"),
    services: Services = Depends(get_services),
) -> Account:
    """
    Authenticate the caller and return their account.

    Raises:
        HTTPException 401: Missing, malformed or rejected access token
        HTTPException 503: Identity provider unavailable
    """
    token = _extract_bearer_token(authorization)

    try:
        identity = await services.identity.verify_token(token)
    except IdentityUnavailable as e:
        logger.error(f"Authentication unavailable: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Authentication service unavailable",
        ) from e

    if identity is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired access token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    account = await services.database.ensure_account(identity.user_id, identity.email)

    request.state.account = account
    set_account_id(account.account_id)
    return account
