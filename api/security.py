# api/security.py
# Verifies the bearer JWT issued by the auth service and exposes FastAPI dependencies.
from datetime import datetime, timedelta, timezone

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from pydantic import ValidationError

from models.user import UserIdentity, UserRole
from services.order_service import OrderService
from utils.config import settings

bearer_scheme = HTTPBearer(auto_error=False)


def create_access_token(
    subject: str,
    role: str = UserRole.USER.value,
    expires_delta: timedelta | None = None,
    **claims,
) -> str:
    """Creates a token with the claims this service reads. Used by tests and local tooling."""
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=60))
    to_encode = {"sub": str(subject), "role": role, "exp": expire, **claims}
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def decode_access_token(token: str) -> UserIdentity:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
        user_id = payload.get("sub")
        if user_id is None:
            raise credentials_exception
        return UserIdentity(
            id=str(user_id),
            email=payload.get("email"),
            name=payload.get("name"),
            phone=payload.get("phone"),
            role=payload.get("role") or UserRole.USER,
        )
    except (JWTError, ValidationError):
        raise credentials_exception


def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> UserIdentity:
    """Returns the caller's identity or raises 401."""
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return decode_access_token(credentials.credentials)


def require_admin(current_user: UserIdentity = Depends(get_current_user)) -> UserIdentity:
    if not current_user.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient privileges")
    return current_user


def get_order_service(request: Request) -> OrderService:
    service = getattr(request.app.state, "order_service", None)
    if service is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Order service unavailable")
    return service
