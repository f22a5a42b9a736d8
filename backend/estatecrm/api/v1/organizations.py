"""Organization onboarding endpoints."""

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from estatecrm.api.dependencies import (
    CurrentUser,
    OrganizationContext,
    get_current_user,
    get_organization_context,
)
from estatecrm.database import get_db
from estatecrm.models.organization import (
    MemberRole,
    Organization,
    OrganizationMember,
    SubscriptionStatus,
)

logger = structlog.get_logger()

router = APIRouter()


# Schemas
class OrganizationCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: str | None = None


class OrganizationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    description: str | None
    subscription_status: str
    billing_cycle: str
    subscription_expires_at: datetime | None
    has_active_subscription: bool
    created_at: datetime | None


class OrganizationCreatedResponse(BaseModel):
    organization: OrganizationResponse
    role: str
    requires_subscription: bool


class CurrentOrganizationResponse(BaseModel):
    organization: OrganizationResponse
    role: str


# Endpoints
@router.post("", response_model=OrganizationCreatedResponse, status_code=status.HTTP_201_CREATED)
async def create_organization(
    org_data: OrganizationCreate,
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> OrganizationCreatedResponse:
    """
    Create an organization with the caller as its organizer.

    The organization starts in ``pending`` and only the billing webhook can
    activate it, so the response asks the client to start a subscription.
    """
    organization = Organization(
        name=org_data.name,
        description=org_data.description,
        created_by=current_user.id,
        subscription_status=SubscriptionStatus.PENDING.value,
    )
    db.add(organization)
    await db.flush()

    db.add(
        OrganizationMember(
            organization_id=organization.id,
            user_id=current_user.id,
            role=MemberRole.ORGANIZER.value,
        )
    )
    await db.commit()
    await db.refresh(organization)

    logger.info(
        "Organization created",
        organization_id=str(organization.id),
        user_id=str(current_user.id),
    )

    return OrganizationCreatedResponse(
        organization=OrganizationResponse.model_validate(organization),
        role=MemberRole.ORGANIZER.value,
        requires_subscription=True,
    )


@router.get("/current", response_model=CurrentOrganizationResponse)
async def get_current_organization(
    context: OrganizationContext = Depends(get_organization_context),
) -> CurrentOrganizationResponse:
    """Get the caller's organization and its subscription state."""
    return CurrentOrganizationResponse(
        organization=OrganizationResponse.model_validate(context.organization),
        role=context.role,
    )
