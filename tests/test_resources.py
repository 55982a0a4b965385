"""Tests for resource management (keywarden/services/resources.py)."""

import pytest
from sqlalchemy import select

from keywarden.exceptions import DuplicateError, PermissionDeniedError, ResourceNotFoundError
from keywarden.models.resource_field import ResourceField
from keywarden.models.totp_credential import TOTPCredential
from keywarden.services import audit
from keywarden.services.audit import AuditService
from keywarden.utils.validators import ValidationError

SECRET = "JBSWY3DPEHPK3PXP"


class TestResources:
    """Test suite for resource creation and API keys."""

    async def test_create_resource_makes_owner(self, resources):
        resource, owner = await resources.create_resource("prod-db", "alice")

        assert resource.mode == "ONE_OF_N"
        assert len(resource.api_key) == 64
        assert owner.user_id == "alice"
        assert owner.role == "OWNER"

    async def test_create_resource_rejects_bad_mode(self, resources):
        with pytest.raises(ValueError):
            await resources.create_resource("x", "alice", "MAJORITY")

    async def test_create_resource_rejects_bad_owner(self, resources):
        with pytest.raises(ValidationError):
            await resources.create_resource("x", "bad\nuser")

    async def test_list_for_user(self, resources, make_resource):
        await make_resource(name="b-res", guardians=["bob"])
        await make_resource(name="a-res", owner="bob")
        await make_resource(name="c-res", owner="carol")

        listed = [(r.name, role) for r, role in await resources.list_for_user("bob")]

        assert listed == [("a-res", "OWNER"), ("b-res", "GUARDIAN")]

    async def test_verify_api_key(self, resources, make_resource):
        resource = await make_resource()
        assert (await resources.verify_api_key(resource.id, resource.api_key)).id == resource.id

    async def test_wrong_api_key_rejected_and_audited(self, resources, make_resource, db):
        resource = await make_resource()

        with pytest.raises(PermissionDeniedError):
            await resources.verify_api_key(resource.id, "0" * 64)

        events = await AuditService.list_for_resource(db, resource.id)
        assert (events[0].action, events[0].status) == (audit.API_KEY_REJECTED, audit.DENIED)

    async def test_unknown_resource_key_check_looks_like_wrong_key(self, resources):
        with pytest.raises(PermissionDeniedError):
            await resources.verify_api_key("missing", "anything")

    async def test_rotate_api_key(self, resources, make_resource):
        resource = await make_resource()
        old_key = resource.api_key

        new_key = await resources.rotate_api_key(resource.id, "alice")

        assert new_key != old_key
        with pytest.raises(PermissionDeniedError):
            await resources.verify_api_key(resource.id, old_key)
        await resources.verify_api_key(resource.id, new_key)

    async def test_only_owner_rotates_api_key(self, resources, make_resource):
        resource = await make_resource(guardians=["bob"])
        with pytest.raises(PermissionDeniedError):
            await resources.rotate_api_key(resource.id, "bob")


class TestGuardians:
    """Test suite for guardian management."""

    async def test_owner_adds_guardian(self, resources, make_resource, db):
        resource = await make_resource()

        guardian = await resources.add_guardian(resource.id, "bob", "alice")

        assert guardian.role == "GUARDIAN"
        assert await resources.is_guardian(resource.id, "bob") is True
        events = await AuditService.list_for_resource(db, resource.id)
        assert events[0].action == audit.GUARDIAN_ADDED
        assert events[0].context == {"guardian_id": "bob"}

    async def test_guardian_cannot_add_guardians(self, resources, make_resource):
        resource = await make_resource(guardians=["bob"])
        with pytest.raises(PermissionDeniedError):
            await resources.add_guardian(resource.id, "carol", "bob")

    async def test_duplicate_guardian(self, resources, make_resource):
        resource = await make_resource(guardians=["bob"])
        with pytest.raises(DuplicateError):
            await resources.add_guardian(resource.id, "bob", "alice")

    async def test_add_guardian_unknown_resource(self, resources):
        with pytest.raises(ResourceNotFoundError):
            await resources.add_guardian("missing", "bob", "alice")

    async def test_remove_guardian(self, resources, make_resource):
        resource = await make_resource(guardians=["bob"])

        await resources.remove_guardian(resource.id, "bob", "alice")

        assert await resources.is_guardian(resource.id, "bob") is False

    async def test_owner_cannot_be_removed(self, resources, make_resource):
        resource = await make_resource()
        with pytest.raises(PermissionDeniedError):
            await resources.remove_guardian(resource.id, "alice", "alice")

    async def test_remove_unknown_guardian(self, resources, make_resource):
        resource = await make_resource()
        with pytest.raises(ResourceNotFoundError):
            await resources.remove_guardian(resource.id, "nobody", "alice")


class TestFields:
    """Test suite for encrypted fields."""

    async def test_values_encrypted_at_rest(self, resources, make_resource, db, cipher):
        resource = await make_resource(fields={"password": "s3cret"})

        stored = (await db.execute(select(ResourceField.value))).scalar_one()

        assert stored != "s3cret"
        assert stored.startswith("v1:")
        assert cipher.decrypt(stored) == "s3cret"
        assert await resources.get_field(resource.id, "password") == "s3cret"

    async def test_upsert_replaces_value(self, resources, make_resource):
        resource = await make_resource(fields={"password": "old"})

        await resources.upsert_field(resource.id, "password", "new", "alice")

        assert await resources.get_field(resource.id, "password") == "new"
        assert await resources.list_field_names(resource.id, "alice") == ["password"]

    async def test_list_field_names_sorted(self, resources, make_resource):
        resource = await make_resource(fields={"username": "u", "password": "p"})
        assert await resources.list_field_names(resource.id, "alice") == ["password", "username"]

    async def test_non_guardian_cannot_write_or_list(self, resources, make_resource):
        resource = await make_resource()
        with pytest.raises(PermissionDeniedError):
            await resources.upsert_field(resource.id, "password", "x", "mallory")
        with pytest.raises(PermissionDeniedError):
            await resources.list_field_names(resource.id, "mallory")

    async def test_delete_field(self, resources, make_resource):
        resource = await make_resource(fields={"password": "p"})

        await resources.delete_field(resource.id, "password", "alice")

        assert await resources.field_exists(resource.id, "password") is False
        with pytest.raises(ResourceNotFoundError):
            await resources.delete_field(resource.id, "password", "alice")

    async def test_field_writes_are_audited(self, resources, make_resource, db):
        resource = await make_resource(fields={"password": "old"})
        await resources.upsert_field(resource.id, "password", "new", "alice")
        await resources.delete_field(resource.id, "password", "alice")

        events = await AuditService.list_for_resource(db, resource.id)
        field_events = [
            (e.action, e.actor_id, e.context)
            for e in events
            if e.action in (audit.FIELD_UPDATED, audit.FIELD_DELETED)
        ]
        assert field_events == [
            (audit.FIELD_DELETED, "alice", {"field_name": "password"}),
            (audit.FIELD_UPDATED, "alice", {"field_name": "password", "created": False}),
            (audit.FIELD_UPDATED, "alice", {"field_name": "password", "created": True}),
        ]
        assert all("old" not in str(e.context) and "new" not in str(e.context) for e in events)

    async def test_get_missing_field(self, resources, make_resource):
        resource = await make_resource()
        with pytest.raises(ResourceNotFoundError):
            await resources.get_field(resource.id, "password")


class TestTotpCredentials:
    """Test suite for TOTP credentials and resource links."""

    async def test_create_from_uri(self, resources, db, cipher):
        uri = "otpauth://totp/Example:alice@example.com?secret=JBSWY3DPEHPK3PXP&issuer=Example"

        credential = await resources.create_totp_credential("alice", uri=uri)

        assert credential.account_name == "alice@example.com"
        assert credential.issuer == "Example"
        assert credential.secret.startswith("v1:")
        assert cipher.decrypt(credential.secret) == SECRET

    async def test_create_from_raw_secret(self, resources, cipher):
        credential = await resources.create_totp_credential(
            "alice", account_name="github", secret="jbsw y3dp ehpk 3pxp", backup_key="RECOVERY-1"
        )
        assert cipher.decrypt(credential.secret) == SECRET
        assert cipher.decrypt(credential.backup_key) == "RECOVERY-1"

    async def test_create_requires_input(self, resources):
        with pytest.raises(ValueError):
            await resources.create_totp_credential("alice", account_name="github")

    async def test_create_rejects_bad_secret(self, resources):
        with pytest.raises(ValidationError):
            await resources.create_totp_credential("alice", account_name="github", secret="not base32!")

    async def test_link_and_unlink(self, resources, make_resource, db):
        resource = await make_resource()
        credential = await resources.create_totp_credential("alice", account_name="gh", secret=SECRET)

        await resources.link_totp(resource.id, credential.id, "alice")
        assert (await resources.get_linked_totp(resource.id)).id == credential.id

        await resources.unlink_totp(resource.id, "alice")
        assert await resources.get_linked_totp(resource.id) is None

        events = await AuditService.list_for_resource(db, resource.id)
        assert [(e.action, e.context) for e in events[:2]] == [
            (audit.TOTP_UNLINKED, {"totp_credential_id": credential.id}),
            (audit.TOTP_LINKED, {"totp_credential_id": credential.id}),
        ]

    async def test_cannot_link_someone_elses_private_credential(self, resources, make_resource):
        resource = await make_resource()
        credential = await resources.create_totp_credential("bob", account_name="gh", secret=SECRET)

        with pytest.raises(ResourceNotFoundError):
            await resources.link_totp(resource.id, credential.id, "alice")

    async def test_shared_credential_can_be_linked(self, resources, make_resource):
        resource = await make_resource()
        credential = await resources.create_totp_credential(
            "bob", account_name="gh", secret=SECRET, shared=True
        )
        await resources.link_totp(resource.id, credential.id, "alice")
        assert (await resources.get_linked_totp(resource.id)).id == credential.id

    async def test_second_link_rejected(self, resources, make_resource, db):
        resource = await make_resource()
        first = await resources.create_totp_credential("alice", account_name="a", secret=SECRET)
        second = await resources.create_totp_credential("alice", account_name="b", secret=SECRET)
        await resources.link_totp(resource.id, first.id, "alice")

        with pytest.raises(DuplicateError):
            await resources.link_totp(resource.id, second.id, "alice")

        assert len((await db.execute(select(TOTPCredential))).scalars().all()) == 2

    async def test_only_owner_links(self, resources, make_resource):
        resource = await make_resource(guardians=["bob"])
        credential = await resources.create_totp_credential("bob", account_name="gh", secret=SECRET)
        with pytest.raises(PermissionDeniedError):
            await resources.link_totp(resource.id, credential.id, "bob")
