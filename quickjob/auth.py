"""Authentication utilities for the QuickJob backend."""

from datetime import datetime, timedelta, timezone
from typing import Annotated, Literal

import bcrypt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from .config import Settings, get_settings

security = HTTPBearer(auto_error=False)

Role = Literal["student", "client", "admin"]
ROLES = ("student", "client", "admin")


def hash_password(password: str) -> str:
    """Hash a password using bcrypt."""
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt()).decode()


def verify_password(plain: str, hashed: str | None) -> bool:
    """Verify a password against its bcrypt hash."""
    if not hashed:
        return False
    try:
        return bcrypt.checkpw(plain.encode(), hashed.encode())
    except ValueError:
        # Malformed hash stored for this user
        return False


def create_access_token(
    user_id: int | str,
    role: str,
    settings: Settings,
    email: str | None = None,
    expires_delta: timedelta | None = None,
) -> str:
    """Create a JWT access token carrying ``{sub, role, email}``."""
    now = datetime.now(timezone.utc)
    expire = now + (expires_delta or timedelta(minutes=settings.jwt_expire_minutes))
    to_encode = {
        "sub": str(user_id),
        "role": role,
        "email": email,
        "exp": expire,
        "iat": now,
    }
    return jwt.encode(to_encode, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str, settings: Settings) -> dict:
    """Decode and validate a JWT token."""
    try:
        return jwt.decode(
            token,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm],
        )
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )


class AuthContext:
    """Identity of the caller, taken from the token claims."""

    def __init__(self, user_id: int | str, role: str, email: str | None = None):
        self.user_id = user_id
        self.role = role
        self.email = email

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    def is_self_or_admin(self, user_id: str) -> bool:
        return self.is_admin or str(self.user_id) == str(user_id)


async def get_current_user(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> AuthContext:
    """Get the authenticated caller from the Bearer token."""
    if not credentials or not credentials.credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    payload = decode_token(credentials.credentials, settings)
    user_id = payload.get("sub")
    role = payload.get("role")
    if not user_id or role not in ROLES:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
            headers={"WWW-Authenticate": "Bearer"},
        )
    # Row ids are integers; keep the claim typed like the column it came from
    if isinstance(user_id, str) and user_id.isdigit():
        user_id = int(user_id)
    return AuthContext(user_id=user_id, role=role, email=payload.get("email"))


CurrentUser = Annotated[AuthContext, Depends(get_current_user)]


def require_role(*roles: str):
    """Build a dependency that only lets the given roles through (admins always pass)."""

    async def _dependency(auth: CurrentUser) -> AuthContext:
        if auth.role not in roles and not auth.is_admin:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient role for this action",
            )
        return auth

    return _dependency


AdminUser = Annotated[AuthContext, Depends(require_role("admin"))]
ClientUser = Annotated[AuthContext, Depends(require_role("client"))]
StudentUser = Annotated[AuthContext, Depends(require_role("student"))]


def ensure_self_or_admin(auth: AuthContext, user_id: str, detail: str = "Not allowed") -> None:
    """Raise 403 unless the caller is ``user_id`` or an admin."""
    if not auth.is_self_or_admin(user_id):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=detail)
