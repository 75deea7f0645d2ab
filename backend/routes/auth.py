"""
Trade Document Hub - Auth Router

Token issuing and the request-user dependency used by the workflow routes.
"""

from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from pydantic import BaseModel
import jwt as pyjwt

from services.workflow_config import (
    DEFAULT_USER_ID, JWT_ALGORITHM, JWT_SECRET, TOKEN_TTL_SECONDS
)

router = APIRouter(prefix="/auth", tags=["auth"])

# Test user (will be replaced with SSO)
TEST_USER = {
    "user_id": "demo-user",
    "username": "admin",
    "password": "admin",
    "display_name": "Hub Admin",
    "role": "administrator"
}


class LoginRequest(BaseModel):
    username: str
    password: str


def create_token(user_id: str) -> str:
    payload = {"sub": user_id, "exp": datetime.now(timezone.utc).timestamp() + TOKEN_TTL_SECONDS}
    return pyjwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


async def get_current_user_id(authorization: Optional[str] = Header(None)) -> str:
    """
    Resolve the requesting user from a bearer token.
    Requests without a token act as the default user.
    """
    if not authorization:
        return DEFAULT_USER_ID

    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(status_code=401, detail="Bearer token required")

    try:
        payload = pyjwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except pyjwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except pyjwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token")
    return user_id


@router.post("/login")
async def login(req: LoginRequest):
    """Authenticate user and return JWT token."""
    if req.username == TEST_USER["username"] and req.password == TEST_USER["password"]:
        token = create_token(TEST_USER["user_id"])
        return {
            "token": token,
            "user": {
                "user_id": TEST_USER["user_id"],
                "username": TEST_USER["username"],
                "display_name": TEST_USER["display_name"],
                "role": TEST_USER["role"]
            }
        }
    raise HTTPException(status_code=401, detail="Invalid credentials")


@router.get("/me")
async def get_me(user_id: str = Depends(get_current_user_id)):
    """Get the requesting user's id."""
    return {"user_id": user_id}
