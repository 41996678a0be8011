from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from database import get_db
from utils.errors import ValidationError
from utils.guards import parse_object_id
from utils.jwt import decode_token
from utils.sellers import get_seller_for_user

security = HTTPBearer()


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db=Depends(get_db),
):
    payload = decode_token(credentials.credentials)

    sub = payload.get("sub")
    if not sub:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
        )

    try:
        user_id = parse_object_id(sub, "user id")
    except ValidationError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
        )

    user = await db.users.find_one({"_id": user_id})
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found",
        )

    if user.get("is_blocked") or user.get("is_active") is False:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Account is inactive or blocked",
        )

    return user


async def get_actor(user=Depends(get_current_user), db=Depends(get_db)) -> dict:
    """
    The caller as the order engine sees it: role, user id and, for
    sellers, the seller profile resolved through the directory.
    """
    actor = {"role": user.get("role", "user"), "user_id": user["_id"], "seller_id": None}

    if actor["role"] == "seller":
        seller = await get_seller_for_user(db, user["_id"])
        actor["seller_id"] = seller["_id"]
        actor["seller"] = seller

    return actor


def require_role(*roles: str):
    async def checker(actor=Depends(get_actor)):
        if actor["role"] not in roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions",
            )
        return actor

    return checker
