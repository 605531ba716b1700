import logging
from dataclasses import dataclass

from fastapi import Depends, Header, HTTPException
from jose import JWTError, jwt

from donation_service.config import get_settings

logger = logging.getLogger(__name__)


@dataclass
class Actor:
    id: str
    is_admin: bool = False


def verify_token(authorization: str = Header(None)) -> Actor:
    secret = get_settings().jwt_secret
    if not secret:
        logger.error("JWT_SECRET is not set")
        raise HTTPException(status_code=500, detail="Server configuration error")
    try:
        scheme, token = authorization.split()
        if scheme.lower() != "bearer":
            raise ValueError(scheme)
        claims = jwt.decode(token, secret, algorithms=["HS256"])
    except (AttributeError, ValueError, JWTError):
        raise HTTPException(status_code=401, detail="Invalid or missing token")

    actor_id = claims.get("sub") or claims.get("userId") or claims.get("id")
    if not actor_id:
        raise HTTPException(status_code=401, detail="Invalid or missing token")
    return Actor(id=str(actor_id), is_admin=bool(claims.get("isAdmin")) or claims.get("role") == "admin")


def optional_actor(authorization: str = Header(None)):
    """The bearer actor when a token is sent; anonymous donations pass ``None``."""
    if not authorization:
        return None
    return verify_token(authorization)


def require_admin(actor: Actor = Depends(verify_token)) -> Actor:
    if not actor.is_admin:
        raise HTTPException(status_code=403, detail="Not authorized to manage donations")
    return actor


def require_owner_or_admin(donation, actor: Actor):
    if actor.is_admin or (donation.user_id and donation.user_id == actor.id):
        return
    raise HTTPException(status_code=403, detail="Not authorized to view this donation")
