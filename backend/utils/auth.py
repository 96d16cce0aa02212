"""
Authentication utilities
"""
from fastapi import Depends, Header, HTTPException
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from typing import Optional
import jwt
import os
import secrets
from datetime import datetime, timezone, timedelta

security = HTTPBearer()
JWT_SECRET = os.environ.get('JWT_SECRET', 'points-ledger-secret-key-change-in-production')
JWT_ALGORITHM = "HS256"


def create_token(user_id: str, email: str, is_admin: bool = False, account_type: str = "business") -> str:
    payload = {
        "sub": user_id,
        "email": email,
        "is_admin": is_admin,
        "account_type": account_type,
        "exp": datetime.now(timezone.utc) + timedelta(days=7)
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def decode_token(token: str) -> dict:
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")

    if not payload.get("sub"):
        raise HTTPException(status_code=401, detail="Invalid token")
    return payload


async def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security)):
    """Verify JWT token and return current user"""
    from database import db

    payload = decode_token(credentials.credentials)
    user = await db.users.find_one({"id": payload["sub"]}, {"_id": 0, "password": 0})
    if not user:
        raise HTTPException(status_code=401, detail="User not found")

    return user


async def get_current_business(user: dict = Depends(get_current_user)):
    """Current user, required to be a business account. Returns the business id."""
    if user.get("account_type") != "business":
        raise HTTPException(status_code=403, detail="Business account required")
    return user["id"]


async def get_admin_user(user: dict = Depends(get_current_user)):
    """Check if user is admin"""
    if not user.get("is_admin"):
        raise HTTPException(status_code=403, detail="Admin access required")
    return user


async def verify_internal_service(x_internal_token: Optional[str] = Header(None)):
    """Shared-secret check for service-to-service calls (redemption hook)."""
    expected = os.environ.get("INTERNAL_SERVICE_TOKEN", "")
    if not expected or not x_internal_token or not secrets.compare_digest(x_internal_token, expected):
        raise HTTPException(status_code=401, detail="Invalid internal service token")
    return True
