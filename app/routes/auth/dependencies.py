from typing import Annotated, Optional
from fastapi import Depends
from fastapi.security import OAuth2PasswordBearer
from motor.motor_asyncio import AsyncIOMotorDatabase

from app.database import Database
from app.services.auth.security import security_service

# OAuth2 scheme
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login", auto_error=False)

ADMIN_ROLE = "admin"


async def get_database():
    """Database dependency"""
    return Database.get_db()


async def get_current_user(
    token: Annotated[Optional[str], Depends(oauth2_scheme)],
    db: AsyncIOMotorDatabase = Depends(get_database)
) -> Optional[dict]:
    """Get current authenticated user (None when unauthenticated)"""
    token_data = security_service.verify_token(token, "access")
    if token_data is None or token_data.user_id is None:
        return None

    user = await db.users.find_one({"user_id": token_data.user_id})

    if user is None:
        return None

    if not user.get("is_active", True):
        return None

    return user


def is_admin(user: Optional[dict]) -> bool:
    return bool(user) and user.get("role") == ADMIN_ROLE
