"""Development project endpoints."""

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from estatecrm.api.dependencies import (
    OrganizationContext,
    get_organization_context,
    require_active_subscription,
)
from estatecrm.database import get_db
from estatecrm.exceptions import ErrorResponse, NotFoundError
from estatecrm.models.property import Project, Property

logger = structlog.get_logger()

router = APIRouter()


# Schemas
class ProjectCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    developer: str | None = Field(None, max_length=255)
    location: str | None = Field(None, max_length=255)
    total_units: int | None = Field(None, ge=0)
    description: str | None = None


class ProjectUpdate(BaseModel):
    name: str | None = Field(None, min_length=1, max_length=255)
    developer: str | None = None
    location: str | None = None
    total_units: int | None = Field(None, ge=0)
    description: str | None = None


class ProjectResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    developer: str | None
    location: str | None
    total_units: int | None
    description: str | None
    property_count: int = 0
    created_at: datetime | None
    updated_at: datetime | None


def _property_counts():
    return (
        select(Property.project_id, func.count(Property.id).label("property_count"))
        .where(Property.project_id.is_not(None))
        .group_by(Property.project_id)
        .subquery()
    )


async def _get_project(db: AsyncSession, project_id: UUID, organization_id: UUID) -> Project:
    result = await db.execute(
        select(Project).where(
            Project.id == project_id,
            Project.organization_id == organization_id,
        )
    )
    project = result.scalar_one_or_none()

    if not project:
        raise NotFoundError(
            message="Project not found",
            details={"project_id": str(project_id)},
        )

    return project


async def _count_properties(db: AsyncSession, project_id: UUID) -> int:
    result = await db.execute(
        select(func.count(Property.id)).where(Property.project_id == project_id)
    )
    return result.scalar() or 0


def _to_response(project: Project, property_count: int) -> ProjectResponse:
    response = ProjectResponse.model_validate(project)
    response.property_count = property_count
    return response


# Endpoints
@router.get("", response_model=list[ProjectResponse])
async def list_projects(
    context: OrganizationContext = Depends(get_organization_context),
    db: AsyncSession = Depends(get_db),
) -> list[ProjectResponse]:
    """List the organization's projects with their listing counts, newest first."""
    counts = _property_counts()
    result = await db.execute(
        select(Project, func.coalesce(counts.c.property_count, 0))
        .outerjoin(counts, counts.c.project_id == Project.id)
        .where(Project.organization_id == context.organization_id)
        .order_by(Project.created_at.desc(), Project.name)
    )
    return [_to_response(project, count) for project, count in result.all()]


@router.post(
    "",
    response_model=ProjectResponse,
    status_code=status.HTTP_201_CREATED,
    responses={402: {"model": ErrorResponse, "description": "Active subscription required"}},
)
async def create_project(
    project_data: ProjectCreate,
    context: OrganizationContext = Depends(require_active_subscription),
    db: AsyncSession = Depends(get_db),
) -> ProjectResponse:
    """Create a project. Requires an active subscription."""
    project = Project(
        organization_id=context.organization_id,
        created_by=context.user.id,
        **project_data.model_dump(),
    )
    db.add(project)
    await db.commit()
    await db.refresh(project)

    logger.info(
        "Project created",
        project_id=str(project.id),
        organization_id=str(context.organization_id),
    )

    return _to_response(project, 0)


@router.get("/{project_id}", response_model=ProjectResponse)
async def get_project(
    project_id: UUID,
    context: OrganizationContext = Depends(get_organization_context),
    db: AsyncSession = Depends(get_db),
) -> ProjectResponse:
    project = await _get_project(db, project_id, context.organization_id)
    return _to_response(project, await _count_properties(db, project.id))


@router.patch("/{project_id}", response_model=ProjectResponse)
async def update_project(
    project_id: UUID,
    project_data: ProjectUpdate,
    context: OrganizationContext = Depends(get_organization_context),
    db: AsyncSession = Depends(get_db),
) -> ProjectResponse:
    project = await _get_project(db, project_id, context.organization_id)

    for field, value in project_data.model_dump(exclude_unset=True).items():
        setattr(project, field, value)

    await db.commit()
    await db.refresh(project)

    return _to_response(project, await _count_properties(db, project.id))


@router.delete("/{project_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_project(
    project_id: UUID,
    context: OrganizationContext = Depends(get_organization_context),
    db: AsyncSession = Depends(get_db),
) -> None:
    """Delete a project. Its listings are kept and lose the project link."""
    project = await _get_project(db, project_id, context.organization_id)

    await db.execute(
        update(Property)
        .where(Property.project_id == project.id)
        .values(project_id=None)
        .execution_options(synchronize_session=False)
    )
    await db.execute(
        delete(Project)
        .where(Project.id == project.id)
        .execution_options(synchronize_session=False)
    )
    await db.commit()

    logger.info(
        "Project deleted",
        project_id=str(project_id),
        organization_id=str(context.organization_id),
    )
