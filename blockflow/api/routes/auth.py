"""Authentication routes.

Provides user registration, login, and user info endpoints.
"""

import structlog
from fastapi import APIRouter, HTTPException, status
from sqlalchemy import select

from blockflow.api.deps import (
    CurrentUser,
    DBSession,
    create_access_token,
    hash_password,
    verify_password,
)
from blockflow.models.user import Token, User, UserCreate, UserLogin, UserRead

logger = structlog.get_logger()

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post(
    "/register",
    response_model=Token,
    status_code=status.HTTP_201_CREATED,
    summary="Register new user",
)
async def register(
    data: UserCreate,
    session: DBSession,
) -> Token:
    """Register a new user and return an access token.

    Raises:
        HTTPException 400: If username already exists
    """
    query = select(User).where(User.username == data.username)
    result = await session.execute(query)
    if result.scalar_one_or_none() is not None:
        logger.warning("registration_username_exists", username=data.username)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Username already registered",
        )

    user = User(
        username=data.username,
        email=data.email,
        hashed_password=hash_password(data.password),
    )
    session.add(user)
    await session.commit()
    await session.refresh(user)

    logger.info("user_registered", user_id=user.id, username=user.username)

    return Token(access_token=create_access_token(user.id, role=user.role))


@router.post(
    "/login",
    response_model=Token,
    summary="Login user",
)
async def login(
    data: UserLogin,
    session: DBSession,
) -> Token:
    """Authenticate and return an access token.

    Raises:
        HTTPException 401: If credentials are invalid
        HTTPException 403: If the account is disabled
    """
    query = select(User).where(User.username == data.username)
    result = await session.execute(query)
    user = result.scalar_one_or_none()

    if user is None or not verify_password(data.password, user.hashed_password):
        logger.warning("login_failed", username=data.username)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid username or password",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if not user.is_active:
        logger.warning("login_user_inactive", user_id=user.id)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User account is disabled",
        )

    logger.info("user_logged_in", user_id=user.id)

    return Token(access_token=create_access_token(user.id, role=user.role))


@router.get(
    "/me",
    response_model=UserRead,
    summary="Get current user",
)
async def get_current_user_info(user: CurrentUser) -> UserRead:
    return UserRead.model_validate(user, from_attributes=True)
