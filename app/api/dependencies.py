from __future__ import annotations

import logging
from typing import Annotated

import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer

from app.models.principal import Principal
from app.services import token_service
from app.services.registry import Services

logger = logging.getLogger(__name__)

# Tokens are issued by the platform's auth service; tokenUrl only feeds
# the OpenAPI docs.
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/oauth/token")


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def require_user(
    raw_token: Annotated[str, Depends(oauth2_scheme)],
) -> Principal:
    """The caller, from a verified bearer token.

    Analytics endpoints only ever read and write the caller's own data,
    so ``principal.user_id`` is the only user id a handler sees.
    """
    try:
        claims = token_service.decode_access_token(raw_token)
    except jwt.ExpiredSignatureError:
        logger.warning("Expired token rejected")
        raise _unauthorized("Token expired") from None
    except jwt.InvalidTokenError as e:
        logger.warning("Invalid token rejected: %s", e)
        raise _unauthorized("Invalid token") from None

    return Principal(
        user_id=claims["sub"],
        roles=frozenset(claims.get("roles", [])),
    )


def get_services(request: Request) -> Services:
    """The services built by the application lifespan."""
    return request.app.state.services


CurrentUser = Annotated[Principal, Depends(require_user)]
ServicesDep = Annotated[Services, Depends(get_services)]
