"""Resource management: resources, guardians, encrypted fields and linked 2FA."""

import logging
from typing import Dict, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from keywarden.exceptions import (
    DuplicateError,
    PermissionDeniedError,
    ResourceNotFoundError,
)
from keywarden.models.resource import APPROVAL_MODES, Guardian, Resource
from keywarden.models.resource_field import ResourceField
from keywarden.models.totp_credential import TOTPCredential
from keywarden.services import audit
from keywarden.services.audit import AuditService
from keywarden.services.policy import can_manage_guardians, guardian_role
from keywarden.services.totp import parse_otpauth_uri
from keywarden.utils.encryption import EnvelopeCipher
from keywarden.utils.security import (
    constant_time_equals,
    generate_api_key,
    mask_sensitive,
    sanitize_log_message,
)
from keywarden.utils.validators import sanitize_base32_secret, validate_user_id

logger = logging.getLogger(__name__)


class ResourceService:
    """CRUD for resources and everything hanging off them.

    Field values and TOTP secrets are encrypted with ``cipher`` before they
    are stored; plaintext only exists in memory for the duration of a call.
    """

    def __init__(self, db: AsyncSession, cipher: Optional[EnvelopeCipher] = None) -> None:
        self.db = db
        self.cipher = cipher

    def _require_cipher(self) -> EnvelopeCipher:
        if self.cipher is None:
            raise RuntimeError("ResourceService needs a cipher for encrypted values")
        return self.cipher

    # ------------------------------------------------------------------
    # Resources
    # ------------------------------------------------------------------

    async def create_resource(
        self, name: str, owner_id: str, mode: str = "ONE_OF_N"
    ) -> Tuple[Resource, Guardian]:
        """Create a resource with a fresh API key; the creator becomes ``OWNER``."""
        if mode not in APPROVAL_MODES:
            raise ValueError(f"Invalid approval mode: {mode}")
        owner_id = validate_user_id(owner_id)

        resource = Resource(name=name, mode=mode, api_key=generate_api_key())
        self.db.add(resource)
        await self.db.flush()

        owner = Guardian(resource_id=resource.id, user_id=owner_id, role="OWNER")
        self.db.add(owner)
        await self.db.commit()
        await self.db.refresh(resource)
        await self.db.refresh(owner)

        logger.info(
            "Created resource %s (%s) owned by %s",
            resource.id, sanitize_log_message(name), sanitize_log_message(owner_id),
        )
        return resource, owner

    async def get_resource(self, resource_id: str) -> Resource:
        resource = await self.db.get(Resource, resource_id)
        if resource is None:
            raise ResourceNotFoundError(f"Resource not found: {resource_id}")
        return resource

    async def list_for_user(self, user_id: str) -> List[Tuple[Resource, str]]:
        """Resources the user guards, with their role on each."""
        result = await self.db.execute(
            select(Resource, Guardian.role)
            .join(Guardian, Guardian.resource_id == Resource.id)
            .where(Guardian.user_id == user_id)
            .order_by(Resource.name)
        )
        return [(row[0], row[1]) for row in result.all()]

    async def verify_api_key(self, resource_id: str, api_key: str) -> Resource:
        """Authenticate a machine caller against a resource's API key.

        Raises:
            PermissionDeniedError: Unknown resource or wrong key (indistinguishable)
        """
        resource = await self.db.get(Resource, resource_id)
        if resource is None or not api_key or not constant_time_equals(resource.api_key, api_key):
            logger.warning(
                "Rejected API key %s for resource %s",
                mask_sensitive(api_key), sanitize_log_message(resource_id),
            )
            await AuditService.log(
                self.db, audit.API_KEY_REJECTED, audit.DENIED,
                resource_id=resource.id if resource else None,
            )
            raise PermissionDeniedError()
        return resource

    async def rotate_api_key(self, resource_id: str, actor_id: str) -> str:
        """Issue a new API key. The previous key stops working immediately."""
        resource = await self.get_resource(resource_id)
        await self._require_owner(resource_id, actor_id)

        resource.api_key = generate_api_key()
        await self.db.commit()
        await AuditService.log(
            self.db, audit.API_KEY_ROTATED, audit.SUCCESS,
            resource_id=resource_id, actor_id=actor_id,
        )
        logger.info("Rotated API key for resource %s", resource_id)
        return resource.api_key

    # ------------------------------------------------------------------
    # Guardians
    # ------------------------------------------------------------------

    async def list_guardians(self, resource_id: str) -> List[Guardian]:
        result = await self.db.execute(
            select(Guardian).where(Guardian.resource_id == resource_id).order_by(Guardian.created_at)
        )
        return list(result.scalars().all())

    async def is_guardian(self, resource_id: str, user_id: str) -> bool:
        result = await self.db.execute(
            select(Guardian.id).where(Guardian.resource_id == resource_id, Guardian.user_id == user_id)
        )
        return result.scalar_one_or_none() is not None

    async def _require_owner(self, resource_id: str, actor_id: str) -> List[Guardian]:
        guardians = await self.list_guardians(resource_id)
        if not can_manage_guardians(guardians, actor_id):
            raise PermissionDeniedError()
        return guardians

    async def _require_guardian(self, resource_id: str, actor_id: str) -> None:
        guardians = await self.list_guardians(resource_id)
        if guardian_role(guardians, actor_id) is None:
            raise PermissionDeniedError()

    async def add_guardian(self, resource_id: str, user_id: str, actor_id: str) -> Guardian:
        """Add a ``GUARDIAN``. Only owners may do this.

        Raises:
            ResourceNotFoundError: Unknown resource
            PermissionDeniedError: Actor is not an owner
            DuplicateError: User already guards the resource
        """
        await self.get_resource(resource_id)
        guardians = await self._require_owner(resource_id, actor_id)
        user_id = validate_user_id(user_id)

        if any(g.user_id == user_id for g in guardians):
            raise DuplicateError("User is already a guardian for this resource")

        guardian = Guardian(resource_id=resource_id, user_id=user_id, role="GUARDIAN")
        self.db.add(guardian)
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            raise DuplicateError("User is already a guardian for this resource")
        await self.db.refresh(guardian)

        await AuditService.log(
            self.db, audit.GUARDIAN_ADDED, audit.SUCCESS,
            resource_id=resource_id, actor_id=actor_id, context={"guardian_id": user_id},
        )
        logger.info(
            "Added guardian %s to resource %s", sanitize_log_message(user_id), resource_id
        )
        return guardian

    async def remove_guardian(self, resource_id: str, user_id: str, actor_id: str) -> None:
        """Remove a guardian. Owners cannot be removed.

        Raises:
            ResourceNotFoundError: Unknown resource or user is not a guardian
            PermissionDeniedError: Actor is not an owner, or target is an owner
        """
        await self.get_resource(resource_id)
        guardians = await self._require_owner(resource_id, actor_id)

        target = next((g for g in guardians if g.user_id == user_id), None)
        if target is None:
            raise ResourceNotFoundError("Guardian not found")
        if target.role == "OWNER":
            raise PermissionDeniedError("The resource owner cannot be removed")

        await self.db.delete(target)
        await self.db.commit()

        await AuditService.log(
            self.db, audit.GUARDIAN_REMOVED, audit.SUCCESS,
            resource_id=resource_id, actor_id=actor_id, context={"guardian_id": user_id},
        )
        logger.info(
            "Removed guardian %s from resource %s", sanitize_log_message(user_id), resource_id
        )

    # ------------------------------------------------------------------
    # Fields
    # ------------------------------------------------------------------

    async def _find_field(self, resource_id: str, name: str) -> Optional[ResourceField]:
        result = await self.db.execute(
            select(ResourceField).where(
                ResourceField.resource_id == resource_id, ResourceField.name == name
            )
        )
        return result.scalar_one_or_none()

    async def upsert_field(
        self, resource_id: str, name: str, value: str, actor_id: str
    ) -> ResourceField:
        """Create or replace a field value (guardians only)."""
        await self.get_resource(resource_id)
        await self._require_guardian(resource_id, actor_id)
        ciphertext = self._require_cipher().encrypt(value)

        field = await self._find_field(resource_id, name)
        created = field is None
        if created:
            field = ResourceField(resource_id=resource_id, name=name, value=ciphertext)
            self.db.add(field)
        else:
            field.value = ciphertext
        await self.db.commit()
        await self.db.refresh(field)

        await AuditService.log(
            self.db, audit.FIELD_UPDATED, audit.SUCCESS,
            resource_id=resource_id, actor_id=actor_id,
            context={"field_name": name, "created": created},
        )

        logger.info(
            "Stored field %s on resource %s", sanitize_log_message(name), resource_id
        )
        return field

    async def get_field(self, resource_id: str, name: str) -> str:
        """Decrypted field value. Access control is the caller's job.

        Raises:
            ResourceNotFoundError: Unknown field
            DecryptionError: Stored value cannot be decrypted with the current key
        """
        field = await self._find_field(resource_id, name)
        if field is None:
            raise ResourceNotFoundError("Field not found")
        return self._require_cipher().decrypt(field.value)

    async def get_all_fields(self, resource_id: str) -> Dict[str, str]:
        """Every decrypted field of a resource, by name. Access control is the caller's job."""
        result = await self.db.execute(
            select(ResourceField.name, ResourceField.value)
            .where(ResourceField.resource_id == resource_id)
            .order_by(ResourceField.name)
        )
        cipher = self._require_cipher()
        return {name: cipher.decrypt(value) for name, value in result.all()}

    async def field_exists(self, resource_id: str, name: str) -> bool:
        return await self._find_field(resource_id, name) is not None

    async def list_field_names(self, resource_id: str, actor_id: str) -> List[str]:
        await self.get_resource(resource_id)
        await self._require_guardian(resource_id, actor_id)
        result = await self.db.execute(
            select(ResourceField.name)
            .where(ResourceField.resource_id == resource_id)
            .order_by(ResourceField.name)
        )
        return list(result.scalars().all())

    async def delete_field(self, resource_id: str, name: str, actor_id: str) -> None:
        await self.get_resource(resource_id)
        await self._require_guardian(resource_id, actor_id)
        field = await self._find_field(resource_id, name)
        if field is None:
            raise ResourceNotFoundError("Field not found")
        await self.db.delete(field)
        await self.db.commit()
        await AuditService.log(
            self.db, audit.FIELD_DELETED, audit.SUCCESS,
            resource_id=resource_id, actor_id=actor_id, context={"field_name": name},
        )
        logger.info(
            "Deleted field %s from resource %s", sanitize_log_message(name), resource_id
        )

    # ------------------------------------------------------------------
    # TOTP
    # ------------------------------------------------------------------

    async def create_totp_credential(
        self,
        owner_id: str,
        uri: Optional[str] = None,
        account_name: Optional[str] = None,
        secret: Optional[str] = None,
        issuer: Optional[str] = None,
        backup_key: Optional[str] = None,
        shared: bool = False,
    ) -> TOTPCredential:
        """Store a TOTP credential from an otpauth URI or a raw base32 secret.

        Raises:
            ValidationError: Bad URI or secret
            ValueError: Neither a URI nor an account name and secret given
        """
        if uri:
            parsed = parse_otpauth_uri(uri)
            account_name, secret, issuer = parsed.account_name, parsed.secret, parsed.issuer
        elif account_name and secret:
            secret = sanitize_base32_secret(secret)
        else:
            raise ValueError("Provide an otpauth URI, or an account name and secret")

        cipher = self._require_cipher()
        credential = TOTPCredential(
            owner_user_id=validate_user_id(owner_id),
            account_name=account_name,
            issuer=issuer,
            secret=cipher.encrypt(secret),
            backup_key=cipher.encrypt(backup_key) if backup_key else None,
            shared=shared,
        )
        self.db.add(credential)
        await self.db.commit()
        await self.db.refresh(credential)

        logger.info(
            "Created TOTP credential %s for %s", credential.id, sanitize_log_message(owner_id)
        )
        return credential

    async def link_totp(self, resource_id: str, totp_credential_id: str, actor_id: str) -> Resource:
        """Attach a TOTP credential to a resource (owner only).

        The credential must belong to the actor or be shared.

        Raises:
            DuplicateError: Resource already has a different credential linked,
                or the credential is linked elsewhere
        """
        resource = await self.get_resource(resource_id)
        await self._require_owner(resource_id, actor_id)

        credential = await self.db.get(TOTPCredential, totp_credential_id)
        if credential is None or (credential.owner_user_id != actor_id and not credential.shared):
            raise ResourceNotFoundError(f"TOTP account not found: {totp_credential_id}")

        if resource.totp_credential_id and resource.totp_credential_id != totp_credential_id:
            raise DuplicateError("Resource already has a linked 2FA account. Unlink it first.")

        resource.totp_credential_id = totp_credential_id
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            raise DuplicateError("2FA account is already linked to another resource")

        await AuditService.log(
            self.db, audit.TOTP_LINKED, audit.SUCCESS,
            resource_id=resource_id, actor_id=actor_id,
            context={"totp_credential_id": totp_credential_id},
        )
        logger.info("Linked TOTP credential %s to resource %s", totp_credential_id, resource_id)
        return resource

    async def unlink_totp(self, resource_id: str, actor_id: str) -> None:
        resource = await self.get_resource(resource_id)
        await self._require_owner(resource_id, actor_id)
        previous = resource.totp_credential_id
        resource.totp_credential_id = None
        await self.db.commit()
        await AuditService.log(
            self.db, audit.TOTP_UNLINKED, audit.SUCCESS,
            resource_id=resource_id, actor_id=actor_id,
            context={"totp_credential_id": previous},
        )
        logger.info("Unlinked TOTP credential from resource %s", resource_id)

    async def get_linked_totp(self, resource_id: str) -> Optional[TOTPCredential]:
        resource = await self.db.get(Resource, resource_id)
        if resource is None or not resource.totp_credential_id:
            return None
        return await self.db.get(TOTPCredential, resource.totp_credential_id)
