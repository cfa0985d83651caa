"""FastAPI dependencies shared across routes."""

import uuid
from dataclasses import dataclass

from fastapi import Depends, Request
from fastapi.security import OAuth2PasswordBearer

from exam_analytics.core.errors import Forbidden, Unauthorized
from exam_analytics.core.security import decode_access_token
from exam_analytics.db.models import RoleEnum
from exam_analytics.services.analytics_service import AnalyticsService

# Tokens come from the identity provider; the URL is only advertised in the OpenAPI docs.
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/v1/auth/login", auto_error=False)


@dataclass(frozen=True)
class Principal:
    id: uuid.UUID
    role: RoleEnum

    @property
    def is_admin(self) -> bool:
        return self.role == RoleEnum.ADMIN


def get_analytics_service(request: Request) -> AnalyticsService:
    """The engine is built once in the application lifespan."""
    return request.app.state.analytics


def get_principal(token: str | None = Depends(oauth2_scheme)) -> Principal:
    """Decode the bearer token into the calling principal, or 401."""
    if not token:
        raise Unauthorized("Not authenticated")
    payload = decode_access_token(token)
    if payload is None:
        raise Unauthorized("Invalid or expired token")
    try:
        return Principal(
            id=uuid.UUID(str(payload.get("sub"))),
            role=RoleEnum(str(payload.get("role", RoleEnum.STUDENT.value)).upper()),
        )
    except ValueError:
        raise Unauthorized("Invalid token payload")


def _deny(service: AnalyticsService, request: Request, principal: Principal, reason: str) -> Forbidden:
    service.recorder.anomaly(
        "auth",
        "security",
        reason=reason,
        principal_id=str(principal.id),
        role=principal.role.value,
        path=request.url.path,
    )
    return Forbidden(reason)


def require_admin(
    request: Request,
    principal: Principal = Depends(get_principal),
    service: AnalyticsService = Depends(get_analytics_service),
) -> Principal:
    """Raise 403 unless the caller is an admin."""
    if not principal.is_admin:
        raise _deny(service, request, principal, "Admin access required")
    return principal


def require_self_or_admin(
    user_id: uuid.UUID,
    request: Request,
    principal: Principal = Depends(get_principal),
    service: AnalyticsService = Depends(get_analytics_service),
) -> Principal:
    """Students may only read their own analytics."""
    if principal.id != user_id and not principal.is_admin:
        raise _deny(service, request, principal, "Cannot access another user's analytics")
    return principal
