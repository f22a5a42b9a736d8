"""Team invitation endpoints.

Organizers and admins issue invitation codes; any signed-in user can redeem
a pending code to join that organization as a member.
"""

import secrets
import string
from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from estatecrm.api.dependencies import (
    CurrentUser,
    OrganizationContext,
    get_current_user,
    require_org_admin,
)
from estatecrm.api.v1.organizations import CurrentOrganizationResponse, OrganizationResponse
from estatecrm.database import get_db
from estatecrm.exceptions import AlreadyExistsError, ErrorResponse, NotFoundError
from estatecrm.models.organization import (
    Invitation,
    InvitationStatus,
    MemberRole,
    Organization,
    OrganizationMember,
)

logger = structlog.get_logger()

router = APIRouter()

INVITE_CODE_ALPHABET = string.ascii_lowercase + string.digits
INVITE_CODE_LENGTH = 26


def generate_invite_code() -> str:
    return "".join(secrets.choice(INVITE_CODE_ALPHABET) for _ in range(INVITE_CODE_LENGTH))


# Schemas
class InvitationCreate(BaseModel):
    email: str = Field(..., min_length=3, max_length=255, pattern=r"^[^@\s]+@[^@\s]+$")


class InvitationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    email: str
    code: str
    status: str
    created_by: UUID | None
    used_by: UUID | None
    created_at: datetime | None


class AcceptInvitationRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=64)


# Endpoints
@router.post(
    "",
    response_model=InvitationResponse,
    status_code=status.HTTP_201_CREATED,
    responses={403: {"model": ErrorResponse}},
)
async def create_invitation(
    invitation_data: InvitationCreate,
    context: OrganizationContext = Depends(require_org_admin),
    db: AsyncSession = Depends(get_db),
) -> InvitationResponse:
    """Issue an invitation code for the caller's organization."""
    invitation = Invitation(
        organization_id=context.organization_id,
        email=invitation_data.email.strip().lower(),
        code=generate_invite_code(),
        status=InvitationStatus.PENDING.value,
        created_by=context.user.id,
    )
    db.add(invitation)
    await db.commit()
    await db.refresh(invitation)

    logger.info(
        "Invitation created",
        invitation_id=str(invitation.id),
        organization_id=str(context.organization_id),
    )

    return InvitationResponse.model_validate(invitation)


@router.get("", response_model=list[InvitationResponse])
async def list_invitations(
    context: OrganizationContext = Depends(require_org_admin),
    db: AsyncSession = Depends(get_db),
) -> list[InvitationResponse]:
    """List the organization's invitations, newest first."""
    result = await db.execute(
        select(Invitation)
        .where(Invitation.organization_id == context.organization_id)
        .order_by(Invitation.created_at.desc(), Invitation.id)
    )
    return [InvitationResponse.model_validate(i) for i in result.scalars().all()]


@router.delete(
    "/{invitation_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={404: {"model": ErrorResponse}},
)
async def delete_invitation(
    invitation_id: UUID,
    context: OrganizationContext = Depends(require_org_admin),
    db: AsyncSession = Depends(get_db),
) -> None:
    """Withdraw an invitation."""
    result = await db.execute(
        select(Invitation).where(
            Invitation.id == invitation_id,
            Invitation.organization_id == context.organization_id,
        )
    )
    invitation = result.scalar_one_or_none()

    if not invitation:
        raise NotFoundError(
            message="Invitation not found",
            details={"invitation_id": str(invitation_id)},
        )

    await db.delete(invitation)
    await db.commit()


@router.post(
    "/accept",
    response_model=CurrentOrganizationResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def accept_invitation(
    accept_data: AcceptInvitationRequest,
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> CurrentOrganizationResponse:
    """
    Join an organization with an invitation code.

    The code must still be pending. Redeeming it adds the caller as a
    ``member`` and marks the invitation accepted, so a code works once.
    """
    result = await db.execute(
        select(Invitation, Organization)
        .join(Organization, Invitation.organization_id == Organization.id)
        .where(
            Invitation.code == accept_data.code.strip(),
            Invitation.status == InvitationStatus.PENDING.value,
        )
    )
    row = result.first()

    if not row:
        raise NotFoundError(message="Invalid or expired invitation code")

    invitation, organization = row

    existing = await db.execute(
        select(OrganizationMember.id).where(
            OrganizationMember.organization_id == organization.id,
            OrganizationMember.user_id == current_user.id,
        )
    )
    if existing.first():
        raise AlreadyExistsError(
            message="Already a member of this organization",
            details={"organization_id": str(organization.id)},
        )

    # Conditional on status so a code cannot be redeemed twice concurrently
    claimed = await db.execute(
        update(Invitation)
        .where(
            Invitation.id == invitation.id,
            Invitation.status == InvitationStatus.PENDING.value,
        )
        .values(status=InvitationStatus.ACCEPTED.value, used_by=current_user.id)
        .execution_options(synchronize_session=False)
    )
    if claimed.rowcount == 0:
        await db.rollback()
        raise NotFoundError(message="Invalid or expired invitation code")

    db.add(
        OrganizationMember(
            organization_id=organization.id,
            user_id=current_user.id,
            role=MemberRole.MEMBER.value,
        )
    )
    await db.commit()

    logger.info(
        "Invitation accepted",
        invitation_id=str(invitation.id),
        organization_id=str(organization.id),
        user_id=str(current_user.id),
    )

    return CurrentOrganizationResponse(
        organization=OrganizationResponse.model_validate(organization),
        role=MemberRole.MEMBER.value,
    )
