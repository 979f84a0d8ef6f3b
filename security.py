import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from fastapi import Depends
from fastapi.concurrency import run_in_threadpool
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from motor.motor_asyncio import AsyncIOMotorDatabase
from passlib.context import CryptContext
from pymongo.errors import DuplicateKeyError

from config import get_settings
from database import USERS, create_document, get_db, parse_object_id
from errors import AuthenticationError, AuthorizationError, ConflictError, ValidationError
from schemas import User, UserCreate, UserPublic

logger = logging.getLogger(__name__)

settings = get_settings()

pwd_context = CryptContext(
    schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=settings.BCRYPT_ROUNDS
)
oauth2_scheme = OAuth2PasswordBearer(tokenUrl=f"{settings.API_PREFIX}/auth/token", auto_error=False)


# bcrypt is CPU-bound; run it off the event loop, never cached
async def verify_password(plain_password: str, hashed_password: str) -> bool:
    return await run_in_threadpool(pwd_context.verify, plain_password, hashed_password)


async def get_password_hash(password: str) -> str:
    return await run_in_threadpool(pwd_context.hash, password)


def public_user(user: Dict[str, Any]) -> Dict[str, Any]:
    return UserPublic(
        id=str(user["_id"]),
        name=user.get("name", ""),
        email=user.get("email", ""),
        role=user.get("role", ""),
        createdAt=user.get("createdAt"),
    ).model_dump(by_alias=True)


def create_access_token(user_id: str, expires_delta: Optional[timedelta] = None) -> str:
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(days=settings.ACCESS_TOKEN_EXPIRE_DAYS)
    )
    to_encode = {"sub": user_id, "exp": expire}
    return jwt.encode(to_encode, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def auth_payload(user: Dict[str, Any]) -> Dict[str, Any]:
    return {"token": create_access_token(str(user["_id"])), "user": public_user(user)}


async def register_user(db: AsyncIOMotorDatabase, user_in: UserCreate) -> Dict[str, Any]:
    existing = await db[USERS].find_one({"email": user_in.email})
    if existing:
        raise ConflictError("User with this email already exists")
    user_doc = User(
        name=user_in.name,
        email=user_in.email,
        password=await get_password_hash(user_in.password),
        role=user_in.role,
    ).model_dump()
    try:
        created = await create_document(db, USERS, user_doc)
    except DuplicateKeyError:
        raise ConflictError("User with this email already exists")
    logger.info("Registered %s %s", created["role"], created["_id"])
    return auth_payload(created)


async def authenticate_user(
    db: AsyncIOMotorDatabase, email: str, password: str
) -> Dict[str, Any]:
    user = await db[USERS].find_one({"email": email})
    if not user:
        # keep the response time of unknown emails in line with wrong passwords
        await run_in_threadpool(pwd_context.dummy_verify)
        raise ValidationError("Invalid credentials")
    if not await verify_password(password, user.get("password", "")):
        raise ValidationError("Invalid credentials")
    return user


async def get_current_user(
    token: Optional[str] = Depends(oauth2_scheme),
    db: AsyncIOMotorDatabase = Depends(get_db),
) -> Dict[str, Any]:
    if not token:
        raise AuthenticationError("Authentication required")
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except JWTError:
        raise AuthenticationError("Invalid token")
    user_id = parse_object_id(payload.get("sub"))
    if user_id is None:
        raise AuthenticationError("Invalid token")
    user = await db[USERS].find_one({"_id": user_id}, {"password": 0})
    if not user:
        raise AuthenticationError("Invalid token")
    return user


def require_role(role: str) -> Callable:
    """Dependency that admits only users whose stored role matches."""

    async def checker(user: Dict[str, Any] = Depends(get_current_user)) -> Dict[str, Any]:
        if user.get("role") != role:
            raise AuthorizationError(f"Access denied. Must be {role}")
        return user

    return checker


get_current_instructor = require_role("instructor")
get_current_student = require_role("student")
