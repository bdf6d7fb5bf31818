from fastapi import APIRouter, Depends, Request
from sqlmodel import Session, select
from database import get_session
from models import User
from schemas import UserLogin, UserResponse, TokenResponse
from auth import verify_password, create_access_token
from dependencies import get_current_user
from exceptions import Unauthorized
from models import enum_value
from slowapi import Limiter
from slowapi.util import get_remote_address
import logging

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["Authentication"])
limiter = Limiter(key_func=get_remote_address)

@router.post("/login", response_model=TokenResponse)
@limiter.limit("5/minute")
def login(request: Request, credentials: UserLogin, session: Session = Depends(get_session)):
    """Login user"""
    user = session.exec(select(User).where(User.email == credentials.email)).first()
    if not user or not verify_password(credentials.password, user.password_hash):
        logger.info(f"Failed login for {credentials.email}")
        raise Unauthorized("Incorrect email or password")

    if not user.is_active:
        raise Unauthorized("Account is inactive")

    access_token = create_access_token(data={"sub": str(user.id), "role": enum_value(user.role)})

    return TokenResponse(
        access_token=access_token,
        user=UserResponse.model_validate(user)
    )

@router.get("/me", response_model=UserResponse)
def get_current_user_info(current_user: User = Depends(get_current_user)):
    """Get current user information"""
    return UserResponse.model_validate(current_user)
