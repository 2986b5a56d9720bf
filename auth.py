import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from bson import ObjectId
from bson.errors import InvalidId
from fastapi import Depends, HTTPException, Request
from jose import JWTError, jwt
from passlib.context import CryptContext

import database
from config import ACCESS_TOKEN_EXPIRE_MINUTES, BCRYPT_ROUNDS, JWT_ALGORITHM, JWT_SECRET
from database import USERS

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=BCRYPT_ROUNDS)


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain: str, hashed: str) -> bool:
    try:
        return pwd_context.verify(plain, hashed)
    except ValueError:
        # unrecognised or corrupt hash
        return False


def create_access_token(user: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    expire = datetime.utcnow() + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode = {
        "sub": str(user["_id"]),
        "role": user.get("role"),
        "email": user.get("email"),
        "exp": expire,
    }
    return jwt.encode(to_encode, JWT_SECRET, algorithm=JWT_ALGORITHM)


def decode_access_token(token: str) -> Optional[Dict[str, Any]]:
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except JWTError:
        return None


def bearer_token(request: Request) -> Optional[str]:
    auth = request.headers.get("authorization")
    if not auth or not auth.lower().startswith("bearer "):
        return None
    return auth.split(" ", 1)[1].strip() or None


async def get_current_user(request: Request) -> Dict[str, Any]:
    """Resolve the bearer token to an active user document (password removed)."""
    token = bearer_token(request)
    if not token:
        raise HTTPException(status_code=401, detail="No token, authorization denied")
    payload = decode_access_token(token)
    if payload is None:
        raise HTTPException(status_code=401, detail="Token is not valid")
    if database.db is None:
        raise HTTPException(status_code=500, detail="Database not available")
    try:
        user_oid = ObjectId(payload.get("sub"))
    except (InvalidId, TypeError):
        raise HTTPException(status_code=401, detail="Token is not valid")
    user = database.db[USERS].find_one({"_id": user_oid}, {"password": 0})
    if user is None:
        raise HTTPException(status_code=401, detail="Token is not valid")
    if not user.get("isActive", True):
        raise HTTPException(status_code=401, detail="Account is deactivated")
    return user


async def get_optional_user(request: Request) -> Optional[Dict[str, Any]]:
    """Like get_current_user, but anonymous requests resolve to None."""
    if not bearer_token(request):
        return None
    return await get_current_user(request)


def require_roles(*roles: str):
    async def _dep(user: Dict[str, Any] = Depends(get_current_user)):
        if roles and user.get("role") not in roles:
            logger.info("Role %s denied; requires %s", user.get("role"), ",".join(roles))
            raise HTTPException(status_code=403, detail="Access denied")
        return user
    return _dep
