"""API endpoints for projects, environments, members and environment secrets."""

import logging
from typing import List, Union

from fastapi import APIRouter, Depends, HTTPException, Response, status
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from keywarden.api.resources import pending_response
from keywarden.dependencies import get_access_service, get_current_user, get_project_service
from keywarden.models.project import Environment, Project, ProjectMember
from keywarden.schemas.approval import PendingAccessResponse
from keywarden.schemas.project import (
    EnvironmentCreate,
    EnvironmentResponse,
    MemberAdd,
    MemberResponse,
    ProjectCreate,
    ProjectResponse,
    SecretsBody,
    SecretsResponse,
)
from keywarden.services.access import AccessService
from keywarden.services.projects import ProjectService
from keywarden.utils.error_handling import safe_error_response
from keywarden.utils.validators import ValidationError

logger = logging.getLogger(__name__)

router = APIRouter()


def project_response(project: Project, role: str) -> ProjectResponse:
    return ProjectResponse(
        id=project.id,
        name=project.name,
        description=project.description,
        owner_id=project.owner_id,
        role=role,
        created_at=project.created_at,
        updated_at=project.updated_at,
    )


def environment_response(environment: Environment) -> EnvironmentResponse:
    return EnvironmentResponse(
        id=environment.id,
        project_id=environment.project_id,
        name=environment.name,
        slug=environment.slug,
        resource_id=environment.resource_id,
        created_at=environment.created_at,
    )


def member_response(member: ProjectMember) -> MemberResponse:
    return MemberResponse(
        user_id=member.user_id, role=member.role, added_by=member.added_by,
        created_at=member.created_at,
    )


# ============================================================================
# Projects
# ============================================================================


@router.post("/projects", response_model=ProjectResponse, status_code=status.HTTP_201_CREATED)
async def create_project(
    body: ProjectCreate,
    user_id: str = Depends(get_current_user),
    projects: ProjectService = Depends(get_project_service),
) -> ProjectResponse:
    """Create a project owned by the caller."""
    try:
        project = await projects.create_project(body.name, user_id, body.description)
    except SQLAlchemyError as e:
        safe_error_response(logger, e, "Failed to create project")
    return project_response(project, "OWNER")


@router.get("/projects", response_model=List[ProjectResponse])
async def list_projects(
    user_id: str = Depends(get_current_user),
    projects: ProjectService = Depends(get_project_service),
) -> List[ProjectResponse]:
    """Projects the caller owns or is a member of."""
    return [project_response(p, role) for p, role in await projects.list_projects(user_id)]


@router.get("/projects/{project_id}", response_model=ProjectResponse)
async def get_project(
    project_id: str,
    user_id: str = Depends(get_current_user),
    projects: ProjectService = Depends(get_project_service),
) -> ProjectResponse:
    project, role = await projects.view_project(project_id, user_id)
    return project_response(project, role)


# ============================================================================
# Environments
# ============================================================================


@router.post(
    "/projects/{project_id}/environments",
    response_model=EnvironmentResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_environment(
    project_id: str,
    body: EnvironmentCreate,
    user_id: str = Depends(get_current_user),
    projects: ProjectService = Depends(get_project_service),
) -> EnvironmentResponse:
    """Add an environment (owner or writers).

    Raises:
        403: Caller is a reader or outsider
        409: Slug already used in this project
    """
    environment = await projects.create_environment(project_id, body.name, body.slug, user_id)
    return environment_response(environment)


@router.get("/projects/{project_id}/environments", response_model=List[EnvironmentResponse])
async def list_environments(
    project_id: str,
    user_id: str = Depends(get_current_user),
    projects: ProjectService = Depends(get_project_service),
) -> List[EnvironmentResponse]:
    return [environment_response(e) for e in await projects.list_environments(project_id, user_id)]


@router.get(
    "/projects/{project_id}/environments/{environment_id}/secrets",
    response_model=SecretsResponse,
    responses={202: {"model": PendingAccessResponse}},
)
async def pull_secrets(
    project_id: str,
    environment_id: str,
    user_id: str = Depends(get_current_user),
    projects: ProjectService = Depends(get_project_service),
    access: AccessService = Depends(get_access_service),
) -> Union[SecretsResponse, JSONResponse]:
    """All secrets of an environment.

    Guardians of the environment get them directly; other project members
    get 202 with an approval request ID, like a single field read.

    Raises:
        403: Caller cannot view the project
        429: Rate limited
    """
    environment = await projects.get_environment(project_id, environment_id, user_id)
    outcome = await access.read_all_fields(environment.resource_id, user_id)
    if outcome.pending:
        return pending_response(outcome)
    return SecretsResponse(secrets=outcome.value)


@router.put(
    "/projects/{project_id}/environments/{environment_id}/secrets",
    response_model=List[str],
)
async def push_secrets(
    project_id: str,
    environment_id: str,
    body: SecretsBody,
    user_id: str = Depends(get_current_user),
    projects: ProjectService = Depends(get_project_service),
) -> List[str]:
    """Store secrets in an environment (its guardians only). Returns the field names."""
    environment = await projects.get_environment(project_id, environment_id, user_id)
    resources = projects.resources
    try:
        for name, value in body.secrets.items():
            await resources.upsert_field(environment.resource_id, name, value, user_id)
    except SQLAlchemyError as e:
        safe_error_response(logger, e, "Failed to store secrets")
    return await resources.list_field_names(environment.resource_id, user_id)


# ============================================================================
# Members
# ============================================================================


@router.get("/projects/{project_id}/members", response_model=List[MemberResponse])
async def list_members(
    project_id: str,
    user_id: str = Depends(get_current_user),
    projects: ProjectService = Depends(get_project_service),
) -> List[MemberResponse]:
    return [member_response(m) for m in await projects.list_members(project_id, user_id)]


@router.post(
    "/projects/{project_id}/members",
    response_model=MemberResponse,
    status_code=status.HTTP_201_CREATED,
)
async def add_member(
    project_id: str,
    body: MemberAdd,
    user_id: str = Depends(get_current_user),
    projects: ProjectService = Depends(get_project_service),
) -> MemberResponse:
    """Add a member or change their role (owner only)."""
    try:
        member = await projects.add_member(project_id, body.user_id, body.role, user_id)
    except (ValidationError, ValueError) as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return member_response(member)


@router.delete(
    "/projects/{project_id}/members/{member_user_id}",
    status_code=status.HTTP_204_NO_CONTENT,
)
async def remove_member(
    project_id: str,
    member_user_id: str,
    user_id: str = Depends(get_current_user),
    projects: ProjectService = Depends(get_project_service),
) -> Response:
    await projects.remove_member(project_id, member_user_id, user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
