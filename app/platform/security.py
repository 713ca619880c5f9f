import secrets

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.platform.config import settings

security = HTTPBearer()


def decode_access_token(token: str) -> dict:
    """Decode and verify a JWT access token issued by the identity provider"""
    try:
        return jwt.decode(token, settings.JWT_SECRET_KEY, algorithms=[settings.ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise ValueError("Token has expired")
    except jwt.PyJWTError:
        raise ValueError("Invalid token")


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_user_id(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> str:
    """
    Dependency returning the ``sub`` claim of the caller's access token.
    """
    try:
        payload = decode_access_token(credentials.credentials)
    except ValueError as e:
        raise _unauthorized(str(e)) from e

    user_id = payload.get("sub")
    if not user_id:
        raise _unauthorized("Invalid authentication credentials")
    return str(user_id)


async def get_current_admin(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> dict:
    try:
        payload = decode_access_token(credentials.credentials)
    except ValueError as e:
        raise _unauthorized(str(e)) from e

    admin_id = payload.get("sub")
    if admin_id is None:
        raise _unauthorized("Could not validate credentials")
    if not payload.get("is_admin", False):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")

    return {"id": str(admin_id), "email": payload.get("email")}


async def verify_render_worker(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> None:
    """Callback endpoints accept only the shared render worker token."""
    if not secrets.compare_digest(credentials.credentials, settings.RENDER_CALLBACK_TOKEN):
        raise _unauthorized("Invalid render worker token")


async def verify_crawler_webhook(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> None:
    if not secrets.compare_digest(credentials.credentials, settings.CRAWLER_WEBHOOK_TOKEN):
        raise _unauthorized("Invalid crawler webhook token")
