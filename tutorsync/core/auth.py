"""Authentication and authorization for the session API.

Implements JWT bearer authentication with role-based access control.
Password login and identity providers live outside this service; tokens are
issued by ``create_access_token`` for principals that already exist in the
``users`` directory.
"""
from datetime import datetime, timedelta, timezone
from typing import List, Optional
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
import jwt

from tutorsync.core.logging import get_logger
from tutorsync.core.config import settings
from tutorsync.domain.user import TokenData, User
from tutorsync.infrastructure.store import doc_key, get_document_store

logger = get_logger(__name__)

SECRET_KEY = settings.jwt_secret_key
ALGORITHM = settings.jwt_algorithm
ACCESS_TOKEN_EXPIRE_MINUTES = settings.access_token_expire_minutes

# The placeholder secret is rejected in production by Settings.validate_required_settings
if settings.environment == "production" and len(SECRET_KEY) < 32:
    logger.warning("JWT_SECRET_KEY should be at least 32 characters")

security = HTTPBearer()


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def create_access_token(
    user: User,
    expires_delta: Optional[timedelta] = None
) -> str:
    """Create JWT access token for user.

    Args:
        user: User object
        expires_delta: Token expiration time (default: 24 hours)

    Returns:
        Encoded JWT token

    Example:
        >>> user = User(id="teacher-1", email="teacher@school.com", role="teacher")
        >>> token = create_access_token(user)
    """
    if expires_delta is None:
        expires_delta = timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)

    now = datetime.now(timezone.utc)
    expire = now + expires_delta

    payload = {
        "sub": user.user_id,
        "email": user.email,
        "role": user.role,
        "exp": expire,
        "iat": now,
    }

    token = jwt.encode(payload, SECRET_KEY, algorithm=ALGORITHM)

    logger.info(
        f"Access token created for user {user.email}",
        extra={"user_id": user.user_id, "role": user.role}
    )

    return token


def decode_token(token: str) -> TokenData:
    """Decode and validate JWT token.

    Raises:
        HTTPException: If token is invalid or expired
    """
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM], options={"require": ["sub", "exp"]})

        return TokenData(
            sub=payload.get("sub"),
            email=payload.get("email"),
            role=payload.get("role"),
            exp=datetime.fromtimestamp(payload.get("exp"), tz=timezone.utc),
            iat=datetime.fromtimestamp(payload["iat"], tz=timezone.utc) if payload.get("iat") else None,
        )

    except jwt.ExpiredSignatureError:
        logger.debug("Rejected expired token")
        raise _unauthorized("Token has expired")
    except jwt.InvalidTokenError as e:
        logger.warning(f"Rejected invalid token: {e}")
        raise _unauthorized("Invalid authentication token")


def resolve_user(token: str) -> User:
    """Resolve a bearer token to the principal stored in the user directory.

    Raises:
        HTTPException: 401 if the token is invalid or the user is unknown/inactive
    """
    token_data = decode_token(token)

    record = get_document_store().get(doc_key("users", token_data.sub))
    if record is None or not record.get("isActive", True):
        logger.warning("Token for unknown or inactive user", extra={"user_id": token_data.sub})
        raise _unauthorized("Unknown user")

    # The directory is authoritative for role and email
    record.setdefault("email", token_data.email)
    record.setdefault("role", token_data.role)
    return User.model_validate(record)


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security)
) -> User:
    """FastAPI dependency to get current authenticated user.

    Example:
        >>> @router.get("/protected")
        >>> def protected_route(user: User = Depends(get_current_user)):
        ...     return {"user": user.email}
    """
    user = resolve_user(credentials.credentials)
    logger.debug(f"User authenticated: {user.email}", extra={"user_id": user.user_id})
    return user


def require_role(allowed_roles: List[str]):
    """Dependency factory for role-based access control.

    Example:
        >>> @router.post("/sessions")
        >>> def start(user: User = Depends(require_role(["teacher", "admin"]))):
        ...     ...
    """
    async def role_checker(user: User = Depends(get_current_user)) -> User:
        if user.role not in allowed_roles:
            logger.warning(
                f"Insufficient permissions for {user.email}",
                extra={"user_id": user.user_id, "role": user.role}
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Insufficient permissions. Required role: {', '.join(allowed_roles)}"
            )
        return user

    return role_checker


def authenticate_websocket(token: Optional[str]) -> Optional[User]:
    """Resolve the ``token`` query parameter of a WebSocket handshake."""
    if not token:
        return None
    try:
        return resolve_user(token)
    except HTTPException:
        return None
