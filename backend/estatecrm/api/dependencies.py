"""Shared API dependencies and utilities.

Authentication is delegated to Supabase: bearer tokens are Supabase access
tokens and the user id is the Supabase auth user id. Tenancy comes from the
caller's organization membership.
"""

from uuid import UUID

import httpx
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from estatecrm.config import settings
from estatecrm.database import get_db
from estatecrm.exceptions import (
    AuthenticationError,
    AuthorizationError,
    ErrorCode,
    SubscriptionRequiredError,
    ValidationError,
)
from estatecrm.models.organization import MemberRole, Organization, OrganizationMember

logger = structlog.get_logger()

bearer_scheme = HTTPBearer(auto_error=False)


class CurrentUser(BaseModel):
    """Authenticated Supabase user."""

    id: UUID
    email: str | None = None


class OrganizationContext:
    """Context object containing organization-related data for the current user."""

    def __init__(
        self,
        user: CurrentUser,
        organization: Organization,
        role: str = MemberRole.MEMBER.value,
    ):
        self.user = user
        self.organization = organization
        self.organization_id = organization.id
        self.role = role

    @property
    def is_admin(self) -> bool:
        return self.role in (MemberRole.ORGANIZER.value, MemberRole.ADMIN.value)


async def verify_supabase_token(token: str) -> dict | None:
    """Verify a Supabase JWT token and return user data."""
    if not settings.SUPABASE_URL:
        return None

    try:
        async with httpx.AsyncClient() as client:
            response = await client.get(
                f"{settings.SUPABASE_URL}/auth/v1/user",
                headers={
                    "Authorization": f"Bearer {token}",
                    "apikey": settings.SUPABASE_KEY,
                },
                timeout=10.0,
            )
    except httpx.HTTPError as e:
        logger.warning("Error verifying Supabase token", error=str(e))
        return None

    if response.status_code != 200:
        logger.debug("Supabase token verification failed", status=response.status_code)
        return None

    return response.json()


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> CurrentUser:
    """Resolve the bearer token to a Supabase user."""
    if credentials is None:
        raise AuthenticationError()

    supabase_user = await verify_supabase_token(credentials.credentials)
    if not supabase_user or not supabase_user.get("id"):
        raise AuthenticationError(
            message="Invalid or expired token",
            code=ErrorCode.TOKEN_INVALID,
        )

    return CurrentUser(id=supabase_user["id"], email=supabase_user.get("email"))


async def get_organization_context(
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> OrganizationContext:
    """
    Get organization context for the current user.

    Uses the organization the user joined first.

    Raises:
        ValidationError: If user has no organization membership
    """
    result = await db.execute(
        select(OrganizationMember, Organization)
        .join(Organization, OrganizationMember.organization_id == Organization.id)
        .where(OrganizationMember.user_id == current_user.id)
        .order_by(OrganizationMember.created_at)
        .limit(1)
    )
    row = result.first()

    if not row:
        raise ValidationError(
            message="User has no organization. Please complete onboarding.",
        )

    member, organization = row
    return OrganizationContext(user=current_user, organization=organization, role=member.role)


async def require_active_subscription(
    context: OrganizationContext = Depends(get_organization_context),
) -> OrganizationContext:
    """
    Require the caller's organization to have an active subscription.

    Raises:
        SubscriptionRequiredError: So the client can open the subscription dialog
    """
    if not context.organization.has_active_subscription:
        raise SubscriptionRequiredError(
            details={
                "organization_id": str(context.organization_id),
                "subscription_status": context.organization.subscription_status,
            }
        )

    return context


async def require_org_admin(
    context: OrganizationContext = Depends(get_organization_context),
) -> OrganizationContext:
    """
    Require the caller to be an organizer or admin of their organization.

    Raises:
        AuthorizationError: If the caller is a plain member
    """
    if not context.is_admin:
        raise AuthorizationError(
            message="Organizer or admin access required",
            details={"role": context.role},
        )

    return context
