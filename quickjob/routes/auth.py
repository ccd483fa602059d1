"""Authentication routes."""

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Request, status

from ..auth import CurrentUser, create_access_token, hash_password, verify_password
from ..clock import CurrentClock
from ..config import Settings, get_settings
from ..database import (
    CLIENT_PROFILES_TABLE,
    STUDENT_PROFILES_TABLE,
    USERS_TABLE,
    Database,
    get_user,
    get_user_by_email,
    is_unique_violation,
)
from ..logging_config import get_logger, log_auth_event
from ..models import TokenResponse, UserInfo, UserLogin, UserRegister
from ..rate_limit import LOGIN_LIMIT, limiter

logger = get_logger("quickjob.auth")
router = APIRouter(prefix="/auth", tags=["auth"])


async def create_user(db, register: UserRegister, password_hash: str, now) -> dict | None:
    """Insert a user and the matching empty profile row."""
    result = (
        db.table(USERS_TABLE)
        .insert(
            {
                "email": register.email,
                "password_hash": password_hash,
                "role": register.role,
                "phone": register.phone,
                "created_at": now.isoformat(),
            }
        )
        .execute()
    )
    user = result.data[0] if result.data else None
    if not user:
        return None

    profile = {"id": user["id"], "first_name": register.first_name, "last_name": register.last_name}
    if register.role == "student":
        profile.update({"school_name": register.school_name, "verification_status": "pending"})
        db.table(STUDENT_PROFILES_TABLE).insert(profile).execute()
    else:
        profile["company_name"] = register.company_name
        db.table(CLIENT_PROFILES_TABLE).insert(profile).execute()
    return user


def to_user_info(user: dict) -> UserInfo:
    return UserInfo(id=user["id"], email=user["email"], role=user["role"], phone=user.get("phone"))


def token_response(user: dict, settings: Settings) -> TokenResponse:
    token = create_access_token(user["id"], user["role"], settings, email=user["email"])
    return TokenResponse(
        access_token=token,
        expires_in=settings.jwt_expire_minutes * 60,
        user=to_user_info(user),
    )


@router.post("/register", response_model=TokenResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit("5/minute")
async def register_user(
    request: Request,
    register_request: UserRegister,
    db: Database,
    clock: CurrentClock,
    settings: Annotated[Settings, Depends(get_settings)],
):
    """
    Register a student or client.

    Students start with verification status 'pending'. Admin accounts are
    not created through this endpoint.
    """
    logger.info(f"Registration attempt | role={register_request.role}")

    if await get_user_by_email(db, register_request.email):
        log_auth_event("register", register_request.email, False, "email taken")
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Email already registered")

    try:
        user = await create_user(db, register_request, hash_password(register_request.password), clock.now())
    except Exception as e:
        if is_unique_violation(e):
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Email already registered")
        raise

    if not user:
        log_auth_event("register", register_request.email, False, "database error")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to create user",
        )

    log_auth_event("register", register_request.email, True)
    return token_response(user, settings)


@router.post("/login", response_model=TokenResponse)
@limiter.limit(LOGIN_LIMIT)
async def login(
    request: Request,
    login_request: UserLogin,
    db: Database,
    settings: Annotated[Settings, Depends(get_settings)],
):
    """Exchange email and password for a JWT."""
    user = await get_user_by_email(db, login_request.email.strip())
    if not user or not verify_password(login_request.password, user.get("password_hash")):
        log_auth_event("login", login_request.email, False, "invalid credentials")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password",
            headers={"WWW-Authenticate": "Bearer"},
        )

    log_auth_event("login", login_request.email, True)
    return token_response(user, settings)


@router.get("/me", response_model=UserInfo)
async def get_me(auth: CurrentUser, db: Database):
    """Current user's account."""
    user = await get_user(db, auth.user_id)
    if not user:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return to_user_info(user)
