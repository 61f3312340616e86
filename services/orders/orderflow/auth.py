"""
Authentication and authorization for the Orders service.

Tokens are issued by the identity service; this service only verifies them
and trusts the (user id, role) pair they carry. Ownership of orders and
payments is checked by the workflow, the ledger and the coordinator.
"""
import logging
from typing import Callable

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from pydantic import BaseModel

from .config import ALGORITHM, SECRET_KEY

logger = logging.getLogger(__name__)

CUSTOMER = "customer"
SERVICE_PROVIDER = "service_provider"
ADMIN = "admin"
# Internal actor for coordinator and gateway driven changes; never issued in tokens
SYSTEM = "system"

ROLES = {CUSTOMER, SERVICE_PROVIDER, ADMIN}

bearer_scheme = HTTPBearer()


class CurrentUser(BaseModel):
    """Caller identity taken from a verified token."""
    id: str
    email: str
    role: str
    token: str = ""

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN


def system_actor(name: str = "system") -> CurrentUser:
    """Actor used for changes the service makes on its own behalf."""
    return CurrentUser(id=name, email=f"{name}@orderflow.local", role=SYSTEM)


def decode_token(token: str) -> CurrentUser:
    """
    Verify a bearer token and extract the caller.

    Raises:
        ValueError: If the token is invalid, expired or lacks a known role
    """
    try:
        claims = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError as e:
        raise ValueError(f"invalid token: {e}")

    user_id, email, role = claims.get("sub"), claims.get("email"), claims.get("role")
    if user_id is None or email is None:
        raise ValueError("token is missing the subject or email claim")
    if role not in ROLES:
        raise ValueError(f"token carries unknown role {role!r}")
    return CurrentUser(id=str(user_id), email=email, role=role, token=token)


def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme)) -> CurrentUser:
    """
    FastAPI dependency returning the authenticated caller.

    Raises:
        HTTPException: 401 if the token cannot be verified
    """
    try:
        return decode_token(credentials.credentials)
    except ValueError as e:
        logger.warning(f"Rejected bearer token: {e}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )


def require_role(role: str) -> Callable[..., CurrentUser]:
    """Build a dependency that admits only callers with the given role."""
    def dependency(current_user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if current_user.role != role:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"{role.replace('_', ' ').capitalize()} privileges required",
            )
        return current_user
    return dependency


require_admin = require_role(ADMIN)
require_service_provider = require_role(SERVICE_PROVIDER)
