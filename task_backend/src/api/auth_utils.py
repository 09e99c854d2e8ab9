import os
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from jose.exceptions import ExpiredSignatureError

from src.api import tenants
from src.api.schemas import CurrentUser


_bearer = HTTPBearer(auto_error=False)


def _required_env(name: str) -> str:
    value = os.getenv(name)
    if not value:
        raise RuntimeError(
            f"Missing required environment variable '{name}'. "
            "Set it in the service environment before starting the API."
        )
    return value


def _jwt_secret() -> str:
    # Required for security; do not default.
    return _required_env("JWT_SECRET")


def _jwt_algorithm() -> str:
    return os.getenv("JWT_ALGORITHM", "HS256")


def _jwt_exp_minutes() -> int:
    return int(os.getenv("JWT_EXPIRES_MINUTES", "1440"))  # default: 24h


# PUBLIC_INTERFACE
def create_access_token(
    user_id: Any, email: Optional[str], tenant_id: str, expires_delta: Optional[timedelta] = None
) -> str:
    """Sign a JWT carrying the user id, email and tenant id."""
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=_jwt_exp_minutes()))
    payload = {"userId": str(user_id), "email": email, "tenantId": tenant_id, "exp": expire}
    return jwt.encode(payload, _jwt_secret(), algorithm=_jwt_algorithm())


# PUBLIC_INTERFACE
def decode_access_token(token: str) -> Dict[str, Any]:
    """Verify signature and expiry; raises jose.JWTError on failure."""
    return jwt.decode(token, _jwt_secret(), algorithms=[_jwt_algorithm()])


# PUBLIC_INTERFACE
def get_current_user(credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer)) -> CurrentUser:
    """Dependency that returns the user and tenant carried by a verified bearer token."""
    if credentials is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Access token required")

    try:
        payload = decode_access_token(credentials.credentials)
    except ExpiredSignatureError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token expired")
    except JWTError:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid token")

    tenant_id = payload.get("tenantId")
    if not tenants.is_valid_tenant(tenant_id):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid tenant")

    user_id = payload.get("userId")
    if user_id is None:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid token")
    return CurrentUser(user_id=str(user_id), email=payload.get("email"), tenant_id=tenant_id)
