"""
Identity provider JWT verification.

Handles:
- HS256 signature verification with the project secret (IDENTITY_JWT_SECRET)
- Audience validation ("authenticated" by default)
- Role extraction from app_metadata.role
- User identity for user-facing routes (Bearer token, or the X-User-Id
  header set by the identity gateway)

Testing:
- Use create_test_jwt() to mint tokens signed with the configured secret
"""
import time
from typing import Any, Dict, Optional

import jwt
from fastapi import Request

from fitbill.core.config import settings
from fitbill.core.errors import UnauthorizedError

ADMIN_ROLES = {"admin", "master"}


def verify_jwt_token(token: str) -> Dict[str, Any]:
    """
    Verify an identity provider JWT and return its claims.

    Raises jwt.PyJWTError on an invalid/expired token or when no secret is
    configured.
    """
    secret = settings.IDENTITY_JWT_SECRET
    if not secret:
        raise jwt.InvalidKeyError("IDENTITY_JWT_SECRET is not configured")

    audience = settings.IDENTITY_JWT_AUDIENCE
    return jwt.decode(
        token,
        secret,
        algorithms=["HS256"],
        audience=audience or None,
        options={"verify_signature": True, "verify_exp": True, "verify_aud": bool(audience)},
    )


def get_role(claims: Dict[str, Any]) -> Optional[str]:
    app_metadata = claims.get("app_metadata") or {}
    if isinstance(app_metadata, dict) and app_metadata.get("role"):
        return str(app_metadata["role"])
    return None


def is_admin_user(claims: Dict[str, Any]) -> bool:
    # user_metadata is user-editable, so only app_metadata counts
    role = get_role(claims)
    return role is not None and role.lower() in ADMIN_ROLES


def bearer_token(request: Request) -> Optional[str]:
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        return None
    return auth_header[7:].strip() or None


def require_user(request: Request) -> str:
    """
    FastAPI dependency: the calling user's id.

    A Bearer token wins over X-User-Id when both are present. X-User-Id is
    only honoured outside prod.
    """
    token = bearer_token(request)
    if token:
        try:
            claims = verify_jwt_token(token)
        except jwt.PyJWTError:
            raise UnauthorizedError("Invalid or expired token")
        user_id = claims.get("sub")
        if not user_id:
            raise UnauthorizedError("Token has no subject")
        return str(user_id)

    # Gateway-injected header; never trusted in prod where only tokens count
    if settings.ENVIRONMENT.lower() == "prod":
        raise UnauthorizedError("Missing bearer token")
    user_id = request.headers.get("X-User-Id", "").strip()
    if not user_id:
        raise UnauthorizedError("Missing user identity")
    return user_id


# ============================================================================
# Test helpers
# ============================================================================

def create_test_jwt(
    sub: str = "test_user_123",
    email: Optional[str] = "test@example.com",
    role: Optional[str] = None,
    exp_minutes: int = 60,
    secret: Optional[str] = None,
    audience: Optional[str] = None,
) -> str:
    """Mint an HS256 token shaped like the identity provider's."""
    now = int(time.time())
    payload = {
        "sub": sub,
        "email": email,
        "iat": now,
        "exp": now + (exp_minutes * 60),
        "aud": audience or settings.IDENTITY_JWT_AUDIENCE or "authenticated",
        "app_metadata": {},
    }
    if role:
        payload["app_metadata"]["role"] = role
    return jwt.encode(payload, secret or settings.IDENTITY_JWT_SECRET or "test-secret", algorithm="HS256")
