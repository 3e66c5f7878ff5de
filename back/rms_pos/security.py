from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Annotated

from fastapi import Depends, Request
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt

from .errors import UnauthorizedError
from .settings import settings

# Tokens are issued by the platform's auth service; the URL is informational
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="token", auto_error=False)


@dataclass(frozen=True)
class TenantContext:
    """Verified caller identity: which tenant, and in which role"""
    tenant_id: str
    role: str | None = None
    subject: str | None = None


def create_access_token(data: dict, expires_delta: timedelta | None = None) -> str:
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=15)
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.secret_key, algorithm=settings.algorithm)


def decode_access_token(token: str) -> TenantContext:
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
    except JWTError:
        raise UnauthorizedError("Could not validate credentials")

    tenant_id = payload.get("tenant_id")
    if tenant_id is None or tenant_id == "":
        raise UnauthorizedError("Token carries no tenant")
    return TenantContext(
        tenant_id=str(tenant_id),
        role=payload.get("role"),
        subject=payload.get("sub"),
    )


async def get_token(
    request: Request,
    token: Annotated[str | None, Depends(oauth2_scheme)],
) -> str:
    """
    Get token from Authorization header (primary) or cookie (fallback).
    """
    if token:
        return token
    cookie_token = request.cookies.get("access_token")
    if cookie_token:
        return cookie_token
    raise UnauthorizedError("Not authenticated")


async def get_tenant_context(token: Annotated[str, Depends(get_token)]) -> TenantContext:
    return decode_access_token(token)
