# routers/auth.py — Login, registration and current-user endpoints
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from auth import (
    AuthService, UserRegister, UserLogin, UserOut, TokenResponse,
    INVALID_LOGIN_MESSAGE, get_current_user, CurrentUser,
)
from database import get_db_session

router = APIRouter(prefix="/api/auth", tags=["Authentication"])


def _build_token_response(user_obj) -> TokenResponse:
    return TokenResponse(
        token=AuthService.create_token_for(user_obj),
        user=UserOut.model_validate(user_obj),
    )


@router.post("/login", response_model=TokenResponse)
async def login(
    credentials: UserLogin,
    db: AsyncSession = Depends(get_db_session),
):
    """Authenticate and receive a bearer token"""
    user = await AuthService.authenticate_user(credentials.email, credentials.password, db)
    if not user:
        raise HTTPException(status_code=401, detail=INVALID_LOGIN_MESSAGE)
    return _build_token_response(user)


@router.post("/register", response_model=TokenResponse, status_code=201)
async def register(
    user_data: UserRegister,
    db: AsyncSession = Depends(get_db_session),
):
    """Register a new admin account"""
    user = await AuthService.register_user(user_data, db)
    return _build_token_response(user)


@router.get("/user", response_model=UserOut)
async def get_current_user_info(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Profile of the authenticated user"""
    user_obj = await AuthService.get_user_by_id(user.id, db)
    if not user_obj:
        raise HTTPException(status_code=404, detail="User not found")
    return user_obj
