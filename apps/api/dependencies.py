import hmac
import os
from typing import List, Optional, Tuple
from fastapi import Depends, Header, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlmodel import Session
from database import get_session
from models import DeliveryChannel, User, UserRole, enum_value
from auth import decode_token
from exceptions import PermissionDenied, Unauthorized
from services.connection_registry import ConnectionRegistry
from services.notification_dispatcher import NotificationDispatcher
from services.payment_lifecycle import PaymentLifecycleManager

security = HTTPBearer(auto_error=False)


def authenticate_token(token: Optional[str], session: Session) -> Tuple[User, dict]:
    """Resolve a bearer token to an active user and its decoded claims"""
    payload = decode_token(token) if token else None
    if not payload or payload.get("type") != "access":
        raise Unauthorized("Invalid authentication credentials")

    try:
        user = session.get(User, int(payload.get("sub")))
    except (TypeError, ValueError):
        user = None
    if not user:
        raise Unauthorized("User not found")
    if not user.is_active:
        raise Unauthorized("Inactive user")
    return user, payload


def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    session: Session = Depends(get_session)
) -> User:
    """Get current authenticated user"""
    if credentials is None:
        raise Unauthorized("Not authenticated")
    user, _ = authenticate_token(credentials.credentials, session)

    # Store user in request state for request logging middleware
    request.state.user = user

    return user


def require_roles(allowed_roles: List[UserRole]):
    """Dependency factory for role-based access control"""
    def role_checker(current_user: User = Depends(get_current_user)) -> User:
        if enum_value(current_user.role) not in [r.value for r in allowed_roles]:
            raise PermissionDenied(
                f"Access denied. Required roles: {', '.join([r.value for r in allowed_roles])}"
            )
        return current_user
    return role_checker


# Convenience dependency for billing staff
require_billing_staff = require_roles([UserRole.ADMIN, UserRole.MANAGER])


def require_job_secret(x_admin_secret: Optional[str] = Header(default=None)) -> None:
    """Maintenance endpoints additionally need the shared secret when one is configured"""
    expected = os.getenv("ADMIN_JOBS_SECRET", "")
    if expected and not hmac.compare_digest(expected, x_admin_secret or ""):
        raise PermissionDenied("Invalid admin secret")


def get_registry(request: Request) -> ConnectionRegistry:
    return request.app.state.registry


def get_dispatcher(
    request: Request,
    session: Session = Depends(get_session),
) -> NotificationDispatcher:
    return NotificationDispatcher(
        session,
        request.app.state.registry,
        channels=request.app.state.notification_channels,
    )


def get_payment_manager(
    request: Request,
    session: Session = Depends(get_session),
) -> PaymentLifecycleManager:
    sms = next(
        (c for c in request.app.state.notification_channels if c.kind == DeliveryChannel.SMS),
        None,
    )
    return PaymentLifecycleManager(session, request.app.state.payment_providers, channel=sms)
