from typing import Optional

from fastapi import HTTPException, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from renewal_engine.core.config import get_settings

bearer_scheme = HTTPBearer(auto_error=False)

_AUTH_HEADERS = {"WWW-Authenticate": "Bearer"}


async def get_current_user(
    bearer: Optional[HTTPAuthorizationCredentials] = Security(bearer_scheme),
) -> str:
    """
    Verify the caller's Bearer JWT and return its subject (the user id).

    Tokens are issued by the identity provider; this service only checks the
    signature and expiry.
    """
    settings = get_settings()

    if not bearer or not bearer.credentials:
        raise HTTPException(status_code=401, detail="Authentication required", headers=_AUTH_HEADERS)

    try:
        payload = jwt.decode(
            bearer.credentials,
            settings.JWT_SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM],
            options={"verify_aud": False},
        )
        user_id = str(payload["sub"])
    except (JWTError, KeyError):
        raise HTTPException(status_code=401, detail="Invalid or expired token", headers=_AUTH_HEADERS)

    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid or expired token", headers=_AUTH_HEADERS)
    return user_id
