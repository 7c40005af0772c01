from dataclasses import dataclass
from typing import Annotated

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError

from storefront.core.security import decode_token

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/v1/auth/login")

ROLE_ADMIN = "admin"
ROLE_MERCHANT = "merchant"
ROLES = (ROLE_ADMIN, ROLE_MERCHANT)


@dataclass(frozen=True)
class CurrentUser:
    """Caller identity as asserted by the identity service's token."""

    id: str
    role: str
    merchant_id: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


async def get_current_user(
    token: Annotated[str, Depends(oauth2_scheme)],
) -> CurrentUser:
    """Validate JWT and return the caller's identity claims."""
    credentials_exc = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = decode_token(token)
        if payload.get("type") != "access":
            raise credentials_exc
        user_id: str | None = payload.get("sub")
        role: str | None = payload.get("role")
        if not user_id or not role:
            raise credentials_exc
    except JWTError:
        raise credentials_exc

    return CurrentUser(id=user_id, role=role, merchant_id=payload.get("merchant_id"))


def require_role(*roles: str):
    """Dependency factory: raises 403 if user role not in allowed list."""
    async def check(user: CurrentUser = Depends(get_current_user)):
        if user.role not in roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Role '{user.role}' is not permitted for this action.",
            )
        return user
    return check
