"""
Admin authentication for payment review and support operations.

Supports hybrid authentication:
- Identity provider JWT (preferred): Bearer token with admin role in app_metadata
- Legacy X-Admin-Key: shared secret (deprecated, feature-flagged)

Auth modes (ADMIN_AUTH_MODE):
- "jwt": only Bearer tokens
- "legacy": only X-Admin-Key
- "hybrid": both (default)

In prod (ENVIRONMENT=prod) the legacy key is refused unless the mode is
explicitly "legacy". The resolved actor id is what lands in the audit log.
"""
import hashlib
import hmac
import logging
from dataclasses import dataclass
from typing import Literal, Optional

import jwt
from fastapi import Request

from fitbill.core.config import settings
from fitbill.core.errors import AdminAuthUnavailableError, UnauthorizedError
from fitbill.core.identity_auth import bearer_token, is_admin_user, verify_jwt_token

logger = logging.getLogger("fitbill")


@dataclass
class AdminActor:
    actor_type: Literal["jwt", "legacy_key"]
    actor_id: str  # identity user id or "legacy:<hash>"
    actor_email: Optional[str] = None
    auth_mechanism: Literal["bearer_jwt", "x_admin_key"] = "bearer_jwt"


def verify_legacy_key(request: Request) -> Optional[AdminActor]:
    expected_key = settings.ADMIN_KEY
    if not expected_key:
        return None

    header_key = request.headers.get("X-Admin-Key", "").strip()
    if not header_key or not hmac.compare_digest(header_key.encode(), expected_key.encode()):
        return None

    key_hash = hashlib.sha256(header_key.encode()).hexdigest()[:16]
    return AdminActor(
        actor_type="legacy_key",
        actor_id=f"legacy:{key_hash}",
        auth_mechanism="x_admin_key",
    )


def verify_admin_jwt(request: Request) -> Optional[AdminActor]:
    token = bearer_token(request)
    if not token:
        return None
    try:
        claims = verify_jwt_token(token)
    except jwt.PyJWTError:
        logger.warning("admin_auth.invalid_token", extra={"error_code": "invalid_token"})
        return None
    if not is_admin_user(claims) or not claims.get("sub"):
        return None
    return AdminActor(
        actor_type="jwt",
        actor_id=str(claims["sub"]),
        actor_email=claims.get("email"),
    )


def get_admin_actor(request: Request) -> Optional[AdminActor]:
    """Resolve the admin actor, or None. JWT is tried before the legacy key."""
    mode = settings.ADMIN_AUTH_MODE.lower()
    env = settings.ENVIRONMENT.lower()

    if mode in {"jwt", "hybrid"}:
        actor = verify_admin_jwt(request)
        if actor:
            return actor

    if mode in {"legacy", "hybrid"}:
        if env == "prod" and mode != "legacy":
            return None
        return verify_legacy_key(request)

    return None


def require_admin(request: Request) -> AdminActor:
    """
    FastAPI dependency: require an authenticated admin.

    Usage:
        @router.post("/v1/admin/payments/{request_id}/approve")
        def approve(request_id: str, actor: AdminActor = Depends(require_admin)):
            ...
    """
    actor = get_admin_actor(request)
    if actor:
        return actor

    if not settings.IDENTITY_JWT_SECRET and not settings.ADMIN_KEY:
        raise AdminAuthUnavailableError("Admin authentication not configured")
    raise UnauthorizedError(
        f"Invalid or missing admin credentials (mode: {settings.ADMIN_AUTH_MODE.lower()})",
        code="admin_unauthorized",
    )
