from dataclasses import dataclass
from fastapi import Depends, Header, HTTPException
from jose import jwt

from storefront.config import get_settings
from storefront.errors import ForbiddenError


@dataclass
class CurrentUser:
    id: str
    email: str = None
    is_admin: bool = False


def get_current_user(authorization: str = Header(None)) -> CurrentUser:
    try:
        scheme, token = authorization.split()
        if scheme.lower() != "bearer":
            raise ValueError("unsupported scheme")
        claims = jwt.decode(token, get_settings().jwt_secret, algorithms=["HS256"])
        user_id = claims.get("sub") or claims.get("id")
        if not user_id:
            raise ValueError("token has no subject")
    except Exception:
        raise HTTPException(status_code=401, detail="Invalid or missing token")

    return CurrentUser(
        id=str(user_id),
        email=claims.get("email"),
        is_admin=bool(claims.get("isAdmin") or claims.get("is_admin")),
    )


def require_admin(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="Admin access required")
    return user


def ensure_owner_or_admin(user: CurrentUser, order):
    if order.user_id != user.id and not user.is_admin:
        raise ForbiddenError("Not authorized to access this order")
