"""Governance Auth - Callers, roles and partner credentials

Self-Explanatory: FastAPI dependencies resolving who is calling.
How:
- Users: 'Authorization: Bearer <JWT>' (HS256, claims sub/role/customer_id)
- Partners: 'Authorization: Bearer <apiToken>' + 'X-Partner-Id'
Roles: 'admin' (bank operator), 'customer' (own records only).
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

import structlog
from fastapi import Depends, Header, HTTPException, Request
from jose import JWTError, jwt

from consentbridge.config import Settings
from consentbridge.container import ServiceContainer, get_container
from consentbridge.errors import AuthenticationError
from consentbridge.models import Actor, ActorType, Partner
from consentbridge.security.crypto_primitives import sha256_hex

logger = structlog.get_logger()

# Role mappings per endpoint group
ALLOWED_ROLES = {
    "customers": ["admin"],
    "customer_self": ["customer"],
    "consent_create": ["admin", "customer"],
    "consent_read": ["admin", "customer"],
    "consent_revoke": ["admin", "customer"],
    "consent_admin": ["admin"],
    "partners": ["admin"],
    "audit": ["admin"],
    "audit_own": ["admin", "customer"],
}


def create_access_token(
    settings: Settings,
    user_id: str,
    role: str,
    customer_id: Optional[str] = None,
    expires_minutes: int = 60,
) -> str:
    claims = {
        "sub": user_id,
        "role": role,
        "exp": datetime.now(timezone.utc) + timedelta(minutes=expires_minutes),
    }
    if customer_id:
        claims["customer_id"] = customer_id
    return jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def _bearer_token(authorization: Optional[str]) -> str:
    if not authorization:
        raise AuthenticationError("Authorization header missing")
    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise AuthenticationError("Invalid authorization scheme")
    return parts[1]


def get_current_user(
    authorization: str = Header(None),
    container: ServiceContainer = Depends(get_container),
) -> Actor:
    """Resolve the user from a JWT bearer token

    Returns:
        Actor with role admin or customer

    Raises:
        401 if missing or invalid
    """
    try:
        token = _bearer_token(authorization)
        claims = jwt.decode(
            token,
            container.settings.jwt_secret,
            algorithms=[container.settings.jwt_algorithm],
        )
        role = claims.get("role")
        if not claims.get("sub") or role not in (ActorType.ADMIN.value, ActorType.CUSTOMER.value):
            raise AuthenticationError("Invalid user claims")
        actor = Actor(
            actor_type=ActorType(role),
            actor_id=claims["sub"],
            customer_id=claims.get("customer_id"),
        )
    except (AuthenticationError, JWTError) as e:
        logger.warning("Auth error", error=str(e))
        raise HTTPException(status_code=401, detail="Invalid authentication")

    logger.debug("User authenticated", user_id=actor.actor_id, role=role)
    return actor


def check_role(endpoint: str):
    """Dependency factory for role check based on endpoint

    Usage: Depends(check_role("partners"))
    """
    required_roles = ALLOWED_ROLES.get(endpoint, [])

    async def _check_role(user: Actor = Depends(get_current_user)):
        if user.actor_type.value not in required_roles:
            logger.warning(
                "Role denied",
                user_role=user.actor_type.value,
                required=required_roles,
                endpoint=endpoint,
            )
            raise HTTPException(status_code=403, detail="Insufficient permissions")
        return user
    return _check_role


def get_current_partner(
    authorization: str = Header(None),
    x_partner_id: str = Header(None),
    container: ServiceContainer = Depends(get_container),
) -> Partner:
    """Resolve the calling partner from its API token

    Raises:
        401 if credentials are missing or wrong
    """
    try:
        token = _bearer_token(authorization)
        return container.partner_registry.authenticate(x_partner_id, token)
    except AuthenticationError as e:
        raise HTTPException(status_code=401, detail=e.message)


def partner_actor(partner: Partner) -> Actor:
    return Actor(actor_type=ActorType.PARTNER, actor_id=partner.partner_id)


def client_ip_hash(request: Request) -> Optional[str]:
    """SHA-256 of the caller address; raw IPs are never stored"""
    if request.client and request.client.host:
        return sha256_hex(request.client.host)
    return None
