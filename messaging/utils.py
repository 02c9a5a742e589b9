"""
Credential and timestamp helpers for the messaging service.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Mapping, Optional

import jwt

from messaging.config import settings

logger = logging.getLogger(__name__)


class AuthenticationError(Exception):
    """Raised when a credential is absent, malformed or expired."""

    def __init__(self, reason: str, code: str = "invalid_token"):
        super().__init__(reason)
        self.reason = reason
        self.code = code


@dataclass(frozen=True)
class TokenClaims:
    user_id: str
    email: Optional[str] = None


def utc_now_iso() -> str:
    """Server time as ISO-8601 UTC with microseconds and a Z suffix (sorts lexically)."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def create_access_token(user_id: str, email: Optional[str] = None, expires_in: int = 3600) -> str:
    """
    Issue a signed token in the format accepted by verify_access_token.

    Args:
        user_id: Subject user id (stored in the userId claim)
        email: Optional email claim
        expires_in: Lifetime in seconds; negative values produce an expired token

    Returns:
        Encoded JWT string
    """
    payload = {
        "userId": user_id,
        "exp": datetime.now(timezone.utc) + timedelta(seconds=expires_in),
    }
    if email is not None:
        payload["email"] = email
    return jwt.encode(payload, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def verify_access_token(token: str) -> TokenClaims:
    """
    Verify signature and expiry of a token and extract its subject.

    Args:
        token: Encoded JWT

    Returns:
        TokenClaims for the authenticated user

    Raises:
        AuthenticationError: token expired, malformed, badly signed or without userId
    """
    try:
        claims = jwt.decode(
            token,
            settings.JWT_SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM],
            options={"require": ["exp"]},
        )
    except jwt.ExpiredSignatureError:
        logger.info("Rejected expired token")
        raise AuthenticationError("Authentication token has expired", code="expired")
    except jwt.InvalidTokenError as e:
        logger.info(f"Rejected invalid token: {e}")
        raise AuthenticationError("Invalid authentication token")

    user_id = claims.get("userId")
    if not user_id or not isinstance(user_id, str):
        raise AuthenticationError("Invalid authentication token")

    return TokenClaims(user_id=user_id, email=claims.get("email"))


def extract_token(cookies: Optional[Mapping[str, str]]) -> str:
    """
    Pull the auth token out of the request cookies.

    Raises:
        AuthenticationError: no cookies at all, or no token cookie among them
    """
    if not cookies:
        raise AuthenticationError("Authentication cookie not provided", code="missing_cookie")

    token = cookies.get(settings.AUTH_COOKIE_NAME)
    if not token:
        raise AuthenticationError("Authentication token not found in cookies", code="missing_token")
    return token


def authenticate_cookies(cookies: Optional[Mapping[str, str]]) -> TokenClaims:
    """Extract and verify the auth token carried in cookies."""
    return verify_access_token(extract_token(cookies))
