"""Caller identity from bearer tokens issued by the identity provider."""

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from . import schemas
from .core import get_settings

bearer_scheme = HTTPBearer(auto_error=False)


def _credentials_exception() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )


def verify_identity_token(token: str) -> str:
    """
    Verify an identity token and return the caller's identity.

    Args:
        token (str): Bearer token issued by the identity provider.

    Raises:
        HTTPException: If the token is invalid, expired or has no subject.

    Returns:
        str: Stable caller identity (the token's ``sub`` claim).
    """
    settings = get_settings()
    options = {"verify_aud": settings.JWT_AUDIENCE is not None}
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM],
            audience=settings.JWT_AUDIENCE,
            issuer=settings.JWT_ISSUER,
            options=options,
        )
        token_data = schemas.TokenData(**payload)
    except (JWTError, ValueError):
        raise _credentials_exception()
    if not token_data.sub or not token_data.sub.strip():
        raise _credentials_exception()
    return token_data.sub.strip()


def get_current_uid(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> str:
    """Dependency that returns the authenticated caller's identity."""
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise _credentials_exception()
    return verify_identity_token(credentials.credentials)
