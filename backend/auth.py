from datetime import datetime, timedelta
from typing import Optional
from jose import JWTError, jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer

from config import settings
from context import ActorContext
from models import ActorRole

# Tokens are issued by the session service; this API only decodes them
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="auth/login")


def create_access_token(
    actor_id: int,
    role: ActorRole,
    tenant_id: int,
    branch_id: Optional[int] = None,
    expires_delta: Optional[timedelta] = None
) -> str:
    """Create a JWT access token carrying the actor context"""
    if expires_delta:
        expire = datetime.utcnow() + expires_delta
    else:
        expire = datetime.utcnow() + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)

    to_encode = {
        "sub": str(actor_id),
        "role": role.value,
        "tenant_id": tenant_id,
        "branch_id": branch_id,  # None for owners
        "exp": expire,
    }
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def decode_actor(token: str) -> ActorContext:
    """Turn a bearer token into an ActorContext, or raise 401"""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
        actor_id = payload.get("sub")
        tenant_id = payload.get("tenant_id")
        role = ActorRole(payload.get("role"))
    except (JWTError, ValueError):
        raise credentials_exception

    if actor_id is None or tenant_id is None:
        raise credentials_exception

    branch_id = payload.get("branch_id")
    # Staff always act within a single branch
    if role == ActorRole.STAFF and branch_id is None:
        raise credentials_exception

    return ActorContext(
        tenant_id=int(tenant_id),
        actor_id=int(actor_id),
        role=role,
        branch_id=int(branch_id) if branch_id is not None else None
    )


async def get_current_actor(token: str = Depends(oauth2_scheme)) -> ActorContext:
    """FastAPI dependency: the authenticated actor for this request"""
    return decode_actor(token)
