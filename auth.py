from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from passlib.context import CryptContext

import config
from database import Database, get_database, live_filter
from errors import (
    Forbidden,
    InactiveAccount,
    InvalidCredentials,
    InvalidOrExpiredToken,
    Unauthorized,
    UserNotFound,
)
from schemas import Collection, to_object_id

# Security
security = HTTPBearer(auto_error=False)
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=config.BCRYPT_ROUNDS)


# Utility functions
def verify_password(plain_password, hashed_password):
    try:
        return pwd_context.verify(plain_password, hashed_password)
    except (TypeError, ValueError):
        # stored value is not a recognised hash
        return False


def get_password_hash(password):
    return pwd_context.hash(password)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES)
    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(to_encode, config.SECRET_KEY, algorithm=config.ALGORITHM)
    return encoded_jwt


def verify_token(token: str) -> Dict[str, Any]:
    try:
        payload = jwt.decode(token, config.SECRET_KEY, algorithms=[config.ALGORITHM])
    except JWTError:
        raise InvalidOrExpiredToken()
    if payload.get("sub") is None:
        raise InvalidOrExpiredToken()
    return payload


def without_password(user: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in user.items() if key != "password"}


async def authenticate(db: Database, nis: str, password: str) -> Dict[str, Any]:
    users = db.collection(Collection.USERS)
    user = await users.find_one(live_filter(nis=nis))
    if user is None:
        raise InvalidCredentials()

    if user.get("status") != "active":
        raise InactiveAccount()

    if not verify_password(password, user.get("password")):
        raise InvalidCredentials()

    now = datetime.now(timezone.utc)
    await users.update_one({"_id": user["_id"]}, {"$set": {"last_login_at": now, "updated_at": now}})

    access_token = create_access_token(
        data={"sub": str(user["_id"]), "nis": user["nis"], "role": user.get("role")}
    )
    return {
        "token": access_token,
        "user": {**without_password(user), "last_login_at": now, "updated_at": now},
    }


async def get_user_by_id(db: Database, user_id: Any) -> Dict[str, Any]:
    object_id = to_object_id(user_id)
    if object_id is None:
        raise UserNotFound("Invalid user ID format")

    user = await db.collection(Collection.USERS).find_one(live_filter(_id=object_id))
    if user is None:
        raise UserNotFound()
    if user.get("status") != "active":
        raise InactiveAccount()
    return without_password(user)


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Database = Depends(get_database),
):
    if credentials is None:
        raise Unauthorized("Authorization header is required. Use: Bearer <token>")
    payload = verify_token(credentials.credentials)
    return await get_user_by_id(db, payload["sub"])


async def get_admin_user(current_user: dict = Depends(get_current_user)):
    if current_user.get("role") != "admin":
        raise Forbidden("Admin access required")
    return current_user
