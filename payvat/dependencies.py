"""
PayVAT - FastAPI Dependencies

Shared dependencies for authentication, database sessions and the external
collaborators (payment processor, AI assistant, VAT extractor, chat rate
limiter). Tests replace the collaborators through app.dependency_overrides.
"""

import uuid
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from payvat.database import get_async_session
from payvat.models.user import User
from payvat.services.ai_assistant import AIAssistant
from payvat.services.payment_provider import PaymentProcessor, StripeProvider
from payvat.services.rate_limiter import ChatRateLimiter, get_chat_rate_limiter
from payvat.services.vat_extraction import OpenAIVATExtractor, VATExtractor
from payvat.utils.error_handling import AuthenticationException
from payvat.utils.security import verify_access_token


# HTTP Bearer token security
security = HTTPBearer(auto_error=False)


def _extract_token(request: Request, credentials: Optional[HTTPAuthorizationCredentials]) -> Optional[str]:
    """Bearer header first, then the access_token cookie."""
    if credentials:
        return credentials.credentials

    token = request.cookies.get("access_token")
    if token and token.startswith("Bearer "):
        token = token[7:]
    return token or None


async def _resolve_user(token: Optional[str], db: AsyncSession) -> User:
    if not token:
        raise AuthenticationException("Not authenticated")

    payload = verify_access_token(token)
    if not payload:
        raise AuthenticationException("Invalid or expired token")

    user_id = payload.get("sub")
    if not user_id:
        raise AuthenticationException("Invalid token payload")

    try:
        user_uuid = uuid.UUID(user_id)
    except ValueError:
        raise AuthenticationException("Invalid user ID in token")

    result = await db.execute(select(User).where(User.id == user_uuid))
    user = result.scalar_one_or_none()

    if not user:
        raise AuthenticationException("User not found")

    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User account is deactivated",
        )

    return user


async def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: AsyncSession = Depends(get_async_session),
) -> User:
    """
    Get the current authenticated user from JWT token.

    Token can be provided via:
    1. Authorization: Bearer <token> header
    2. access_token cookie

    Raises:
        AuthenticationException: If token is invalid or user not found
        HTTPException: If the account is deactivated
    """
    return await _resolve_user(_extract_token(request, credentials), db)


async def get_optional_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: AsyncSession = Depends(get_async_session),
) -> Optional[User]:
    """
    Get current user if authenticated, otherwise return None.
    Used by the support chat, which also serves guests.
    """
    token = _extract_token(request, credentials)
    if not token:
        return None

    try:
        return await _resolve_user(token, db)
    except (AuthenticationException, HTTPException):
        return None


# ===========================================
# COLLABORATORS
# ===========================================

def get_payment_processor() -> PaymentProcessor:
    return StripeProvider()


def get_chat_assistant() -> AIAssistant:
    return AIAssistant()


def get_vat_extractor() -> VATExtractor:
    return OpenAIVATExtractor()


def get_rate_limiter() -> ChatRateLimiter:
    return get_chat_rate_limiter()
