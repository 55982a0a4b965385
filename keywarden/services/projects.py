"""Projects, their environments and members.

Each environment is backed by a resource named ``"<project>:<environment>"``
and owned by the project owner. Project roles only decide who sees the
project and who may add environments; reading an environment's secrets is
gated by the backing resource's guardians like any other resource.
"""

import logging
from typing import List, Optional, Tuple

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from keywarden.exceptions import DuplicateError, PermissionDeniedError, ResourceNotFoundError
from keywarden.models.project import MEMBER_ROLES, Environment, Project, ProjectMember
from keywarden.models.resource import Resource
from keywarden.services.resources import ResourceService
from keywarden.utils.encryption import EnvelopeCipher
from keywarden.utils.security import sanitize_log_message
from keywarden.utils.validators import validate_user_id

logger = logging.getLogger(__name__)

OWNER = "OWNER"


class ProjectService:
    def __init__(self, db: AsyncSession, cipher: Optional[EnvelopeCipher] = None) -> None:
        self.db = db
        self.resources = ResourceService(db, cipher)

    # ------------------------------------------------------------------
    # Projects
    # ------------------------------------------------------------------

    async def create_project(
        self, name: str, owner_id: str, description: Optional[str] = None
    ) -> Project:
        project = Project(name=name, description=description, owner_id=validate_user_id(owner_id))
        self.db.add(project)
        await self.db.commit()
        await self.db.refresh(project)

        logger.info(
            "Created project %s (%s) owned by %s",
            project.id, sanitize_log_message(name), sanitize_log_message(owner_id),
        )
        return project

    async def get_project(self, project_id: str) -> Project:
        project = await self.db.get(Project, project_id)
        if project is None:
            raise ResourceNotFoundError(f"Project not found: {project_id}")
        return project

    async def get_role(self, project: Project, user_id: str) -> Optional[str]:
        """``OWNER``, the member role, or None for outsiders."""
        if project.owner_id == user_id:
            return OWNER
        result = await self.db.execute(
            select(ProjectMember.role).where(
                ProjectMember.project_id == project.id, ProjectMember.user_id == user_id
            )
        )
        return result.scalar_one_or_none()

    async def _require_role(
        self, project_id: str, user_id: str, allowed: Tuple[str, ...]
    ) -> Tuple[Project, str]:
        project = await self.get_project(project_id)
        role = await self.get_role(project, user_id)
        if role not in allowed:
            raise PermissionDeniedError()
        return project, role

    async def view_project(self, project_id: str, user_id: str) -> Tuple[Project, str]:
        """The project and the caller's role on it.

        Raises:
            ResourceNotFoundError: Unknown project
            PermissionDeniedError: Caller is neither owner nor member
        """
        return await self._require_role(project_id, user_id, (OWNER,) + MEMBER_ROLES)

    async def list_projects(self, user_id: str) -> List[Tuple[Project, str]]:
        """Projects the user owns or is a member of, with their role on each."""
        member_of = select(ProjectMember.project_id).where(ProjectMember.user_id == user_id)
        result = await self.db.execute(
            select(Project)
            .where(or_(Project.owner_id == user_id, Project.id.in_(member_of)))
            .order_by(Project.name)
        )
        projects = list(result.scalars().all())

        roles = await self.db.execute(
            select(ProjectMember.project_id, ProjectMember.role).where(
                ProjectMember.user_id == user_id
            )
        )
        member_roles = dict(roles.all())
        return [
            (p, OWNER if p.owner_id == user_id else member_roles[p.id]) for p in projects
        ]

    # ------------------------------------------------------------------
    # Environments
    # ------------------------------------------------------------------

    async def _find_environment(self, project_id: str, slug: str) -> Optional[Environment]:
        result = await self.db.execute(
            select(Environment).where(
                Environment.project_id == project_id, Environment.slug == slug
            )
        )
        return result.scalar_one_or_none()

    async def create_environment(
        self, project_id: str, name: str, slug: str, actor_id: str
    ) -> Environment:
        """Add an environment and its backing resource (owner or writers).

        A writer who is not the owner also becomes a guardian of the new
        resource so they can store its secrets.

        Raises:
            ResourceNotFoundError: Unknown project
            PermissionDeniedError: Caller is not the owner or a writer
            DuplicateError: Slug already used in this project
        """
        project, role = await self._require_role(project_id, actor_id, (OWNER, "WRITER"))
        if await self._find_environment(project_id, slug) is not None:
            raise DuplicateError(f"Environment '{slug}' already exists in this project")

        resource, _ = await self.resources.create_resource(
            f"{project.name}:{name}", project.owner_id
        )
        if role != OWNER:
            await self.resources.add_guardian(resource.id, actor_id, project.owner_id)

        environment = Environment(
            project_id=project_id, name=name, slug=slug, resource_id=resource.id
        )
        self.db.add(environment)
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            # Lost a race on the slug; drop the resource created for it
            await self.db.delete(await self.db.get(Resource, resource.id))
            await self.db.commit()
            raise DuplicateError(f"Environment '{slug}' already exists in this project")
        await self.db.refresh(environment)

        logger.info(
            "Created environment %s (%s) in project %s",
            environment.id, sanitize_log_message(slug), project_id,
        )
        return environment

    async def list_environments(self, project_id: str, user_id: str) -> List[Environment]:
        await self.view_project(project_id, user_id)
        result = await self.db.execute(
            select(Environment)
            .where(Environment.project_id == project_id)
            .order_by(Environment.slug)
        )
        return list(result.scalars().all())

    async def get_environment(
        self, project_id: str, environment_id: str, user_id: str
    ) -> Environment:
        """An environment of a project the caller can view.

        Raises:
            ResourceNotFoundError: Unknown project, or environment not in it
            PermissionDeniedError: Caller is neither owner nor member
        """
        await self.view_project(project_id, user_id)
        environment = await self.db.get(Environment, environment_id)
        if environment is None or environment.project_id != project_id:
            raise ResourceNotFoundError(f"Environment not found: {environment_id}")
        return environment

    # ------------------------------------------------------------------
    # Members
    # ------------------------------------------------------------------

    async def add_member(
        self, project_id: str, user_id: str, role: str, actor_id: str
    ) -> ProjectMember:
        """Add a member, or change the role of an existing one (owner only).

        Raises:
            ResourceNotFoundError: Unknown project
            PermissionDeniedError: Caller is not the owner
            ValueError: Unknown role, or the user is the owner
        """
        if role not in MEMBER_ROLES:
            raise ValueError(f"Invalid member role: {role}")
        project, _ = await self._require_role(project_id, actor_id, (OWNER,))
        user_id = validate_user_id(user_id)
        if user_id == project.owner_id:
            raise ValueError("The project owner cannot be added as a member")

        result = await self.db.execute(
            select(ProjectMember).where(
                ProjectMember.project_id == project_id, ProjectMember.user_id == user_id
            )
        )
        member = result.scalar_one_or_none()
        if member is None:
            member = ProjectMember(
                project_id=project_id, user_id=user_id, role=role, added_by=actor_id
            )
            self.db.add(member)
        else:
            member.role = role
        await self.db.commit()
        await self.db.refresh(member)

        logger.info(
            "Project %s member %s now has role %s",
            project_id, sanitize_log_message(user_id), role,
        )
        return member

    async def list_members(self, project_id: str, user_id: str) -> List[ProjectMember]:
        await self.view_project(project_id, user_id)
        result = await self.db.execute(
            select(ProjectMember)
            .where(ProjectMember.project_id == project_id)
            .order_by(ProjectMember.user_id)
        )
        return list(result.scalars().all())

    async def remove_member(self, project_id: str, user_id: str, actor_id: str) -> None:
        await self._require_role(project_id, actor_id, (OWNER,))
        result = await self.db.execute(
            select(ProjectMember).where(
                ProjectMember.project_id == project_id, ProjectMember.user_id == user_id
            )
        )
        member = result.scalar_one_or_none()
        if member is None:
            raise ResourceNotFoundError("Member not found")
        await self.db.delete(member)
        await self.db.commit()
        logger.info(
            "Removed member %s from project %s", sanitize_log_message(user_id), project_id
        )
