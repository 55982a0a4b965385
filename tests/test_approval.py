"""Tests for the approval state machine (keywarden/services/approval.py).

Covers:
- Request creation and the no-guardians edge case
- ONE_OF_N and REQUIRE_ALL quorum
- Exactly-once terminal transitions
- Lazy expiry, persisted on a late decision
- Audit rows for accepted and rejected decisions
- Grant window lookup used by gated reads
"""

from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import select, update

from keywarden.exceptions import (
    AlreadyResolvedError,
    DuplicateError,
    NoGuardiansError,
    NotGuardianError,
    RequestExpiredError,
    RequestNotFoundError,
    ResourceNotFoundError,
)
from keywarden.models.approval_request import (
    APPROVED,
    DENIED,
    EXPIRED,
    PENDING,
    ApprovalDecision,
    ApprovalRequest,
)
from keywarden.models.resource import Guardian
from keywarden.schemas.approval import AccessRequestContext
from keywarden.services import audit
from keywarden.services.approval import APPROVE, DENY, ApprovalService
from keywarden.services.audit import AuditService


@pytest.fixture
def approvals(db):
    return ApprovalService(db)


def context(requester="mallory", **kwargs):
    return AccessRequestContext(type="FIELD_ACCESS", requester_id=requester, **kwargs)


async def expire(db, request):
    request.expires_at = datetime.now(UTC) - timedelta(seconds=1)
    await db.commit()


class TestCreateRequest:
    """Test suite for ApprovalService.create_request."""

    async def test_creates_pending_request(self, approvals, make_resource):
        resource = await make_resource(guardians=["bob"])

        created = await approvals.create_request(
            resource.id, context(field_name="password"), expires_in=timedelta(minutes=15)
        )

        request = created.request
        assert request.status == PENDING
        assert request.requester_id == "mallory"
        assert request.context["field_name"] == "password"
        assert request.expires_at is not None
        assert {g.user_id for g in created.guardians} == {"alice", "bob"}
        assert created.resource.id == resource.id

    async def test_accepts_dict_context(self, approvals, make_resource):
        resource = await make_resource()
        created = await approvals.create_request(
            resource.id, {"type": "API_REQUEST", "reason": "deploy"}
        )
        assert created.request.context == {"type": "API_REQUEST", "reason": "deploy"}
        assert created.request.expires_at is None

    async def test_unknown_resource(self, approvals):
        with pytest.raises(ResourceNotFoundError):
            await approvals.create_request("missing", context())

    async def test_resource_without_guardians(self, approvals, make_resource, db):
        resource = await make_resource()
        for guardian in (await db.execute(select(Guardian))).scalars().all():
            await db.delete(guardian)
        await db.commit()

        with pytest.raises(NoGuardiansError):
            await approvals.create_request(resource.id, context())


class TestOneOfN:
    """Test suite for ONE_OF_N decisions."""

    async def test_first_approval_is_terminal(self, approvals, make_resource):
        resource = await make_resource(guardians=["bob"])
        created = await approvals.create_request(resource.id, context())

        result = await approvals.record_decision(created.request.id, APPROVE, "bob")

        assert result.terminal is True
        assert result.request.status == APPROVED
        assert result.request.resolved_by == "bob"
        assert result.request.resolved_at is not None
        assert (result.approvals, result.required) == (1, 1)

    async def test_denial_is_terminal(self, approvals, make_resource):
        resource = await make_resource(guardians=["bob"])
        created = await approvals.create_request(resource.id, context())

        result = await approvals.record_decision(created.request.id, DENY, "alice")

        assert result.terminal is True
        assert result.request.status == DENIED

    async def test_second_decision_rejected(self, approvals, make_resource):
        """Once resolved, a request never changes again."""
        resource = await make_resource(guardians=["bob"])
        created = await approvals.create_request(resource.id, context())
        await approvals.record_decision(created.request.id, APPROVE, "bob")

        with pytest.raises(AlreadyResolvedError) as exc_info:
            await approvals.record_decision(created.request.id, DENY, "alice")

        assert exc_info.value.status == APPROVED
        request = await approvals.get_request(created.request.id)
        assert request.status == APPROVED
        assert request.resolved_by == "bob"

    async def test_conditional_transition_matches_once(self, approvals, make_resource, db):
        """The terminal update only matches a pending row, so a racing decision loses."""
        resource = await make_resource(guardians=["bob"])
        created = await approvals.create_request(resource.id, context())
        request = created.request

        assert await approvals._transition(request, APPROVED, "bob") is True
        assert await approvals._transition(request, DENIED, "alice") is False
        await db.commit()
        await db.refresh(request)

        assert request.status == APPROVED
        assert request.resolved_by == "bob"

    async def test_non_guardian_rejected(self, approvals, make_resource):
        resource = await make_resource(guardians=["bob"])
        created = await approvals.create_request(resource.id, context())

        with pytest.raises(NotGuardianError):
            await approvals.record_decision(created.request.id, APPROVE, "mallory")

        assert (await approvals.get_request(created.request.id)).status == PENDING

    async def test_unknown_request(self, approvals):
        with pytest.raises(RequestNotFoundError):
            await approvals.record_decision("missing", APPROVE, "bob")

    async def test_invalid_decision(self, approvals, make_resource):
        resource = await make_resource()
        created = await approvals.create_request(resource.id, context())
        with pytest.raises(ValueError):
            await approvals.record_decision(created.request.id, "MAYBE", "alice")


class TestRequireAll:
    """Test suite for REQUIRE_ALL quorum."""

    async def test_needs_every_guardian(self, approvals, make_resource):
        resource = await make_resource(mode="REQUIRE_ALL", guardians=["bob", "carol"])
        created = await approvals.create_request(resource.id, context())
        request_id = created.request.id

        first = await approvals.record_decision(request_id, APPROVE, "alice")
        assert first.terminal is False
        assert first.request.status == PENDING
        assert (first.approvals, first.required) == (1, 3)

        second = await approvals.record_decision(request_id, APPROVE, "bob")
        assert second.terminal is False
        assert second.approvals == 2

        last = await approvals.record_decision(request_id, APPROVE, "carol")
        assert last.terminal is True
        assert last.request.status == APPROVED
        assert last.request.resolved_by == "carol"

    async def test_single_denial_is_terminal(self, approvals, make_resource):
        resource = await make_resource(mode="REQUIRE_ALL", guardians=["bob"])
        created = await approvals.create_request(resource.id, context())

        await approvals.record_decision(created.request.id, APPROVE, "alice")
        result = await approvals.record_decision(created.request.id, DENY, "bob")

        assert result.terminal is True
        assert result.request.status == DENIED

    async def test_duplicate_vote_rejected(self, approvals, make_resource, db):
        resource = await make_resource(mode="REQUIRE_ALL", guardians=["bob"])
        created = await approvals.create_request(resource.id, context())
        await approvals.record_decision(created.request.id, APPROVE, "alice")

        with pytest.raises(DuplicateError):
            await approvals.record_decision(created.request.id, APPROVE, "alice")

        votes = (await db.execute(select(ApprovalDecision))).scalars().all()
        assert len(votes) == 1


class TestExpiry:
    """Test suite for lazy expiry."""

    async def test_effective_status_reads_expired(self, approvals, make_resource, db):
        resource = await make_resource()
        created = await approvals.create_request(
            resource.id, context(), expires_in=timedelta(minutes=5)
        )
        await expire(db, created.request)

        request = await approvals.get_request(created.request.id)
        assert request.status == PENDING
        assert request.effective_status() == EXPIRED

    async def test_late_decision_persists_expired(self, approvals, make_resource, db):
        resource = await make_resource(guardians=["bob"])
        created = await approvals.create_request(
            resource.id, context(), expires_in=timedelta(minutes=5)
        )
        await expire(db, created.request)

        with pytest.raises(RequestExpiredError):
            await approvals.record_decision(created.request.id, APPROVE, "bob")

        stored = (
            await db.execute(
                select(ApprovalRequest.status).where(ApprovalRequest.id == created.request.id)
            )
        ).scalar_one()
        assert stored == EXPIRED

        with pytest.raises(AlreadyResolvedError):
            await approvals.record_decision(created.request.id, APPROVE, "bob")

    async def test_no_expiry_never_expires(self, approvals, make_resource):
        resource = await make_resource()
        created = await approvals.create_request(resource.id, context())
        assert created.request.is_expired(datetime.now(UTC) + timedelta(days=365)) is False


class TestFindActiveRequest:
    """Test suite for reuse and grant-window lookup."""

    async def test_returns_pending_request(self, approvals, make_resource):
        resource = await make_resource()
        created = await approvals.create_request(
            resource.id, context(), expires_in=timedelta(minutes=15)
        )
        active = await approvals.find_active_request(resource.id, "mallory")
        assert active.id == created.request.id

    async def test_ignores_other_requesters(self, approvals, make_resource):
        resource = await make_resource()
        await approvals.create_request(resource.id, context(), expires_in=timedelta(minutes=15))
        assert await approvals.find_active_request(resource.id, "eve") is None

    async def test_ignores_expired_pending(self, approvals, make_resource, db):
        resource = await make_resource()
        created = await approvals.create_request(
            resource.id, context(), expires_in=timedelta(minutes=15)
        )
        await expire(db, created.request)
        assert await approvals.find_active_request(resource.id, "mallory") is None

    async def test_approved_within_grant_window(self, approvals, make_resource):
        resource = await make_resource(guardians=["bob"])
        created = await approvals.create_request(resource.id, context())
        await approvals.record_decision(created.request.id, APPROVE, "bob")

        active = await approvals.find_active_request(resource.id, "mallory")
        assert active.status == APPROVED

    async def test_approved_grant_lapses(self, make_resource, db):
        approvals = ApprovalService(db, grant_ttl=timedelta(0))
        resource = await make_resource(guardians=["bob"])
        created = await approvals.create_request(resource.id, context())
        await approvals.record_decision(created.request.id, APPROVE, "bob")

        assert await approvals.find_active_request(resource.id, "mallory") is None

    async def test_denied_is_not_active(self, approvals, make_resource):
        resource = await make_resource()
        created = await approvals.create_request(resource.id, context())
        await approvals.record_decision(created.request.id, DENY, "alice")
        assert await approvals.find_active_request(resource.id, "mallory") is None


class TestListPending:
    """Test suite for list_pending_for_guardian."""

    async def test_lists_only_guarded_pending(self, approvals, make_resource):
        guarded = await make_resource(name="guarded", guardians=["bob"])
        other = await make_resource(name="other", owner="carol")
        mine = await approvals.create_request(guarded.id, context())
        await approvals.create_request(other.id, context())
        resolved = await approvals.create_request(guarded.id, context(requester="eve"))
        await approvals.record_decision(resolved.request.id, DENY, "bob")

        pending = await approvals.list_pending_for_guardian("bob")

        assert [r.id for r in pending] == [mine.request.id]


class TestDecisionAudit:
    """Every decision leaves an audit row, whether or not it was accepted."""

    async def decision_events(self, db, resource_id):
        events = await AuditService.list_for_resource(db, resource_id)
        return [e for e in events if e.action == audit.APPROVAL_DECISION]

    async def test_accepted_decision(self, approvals, make_resource, db):
        resource = await make_resource(guardians=["bob"])
        created = await approvals.create_request(resource.id, context())

        await approvals.record_decision(created.request.id, APPROVE, "bob")

        [event] = await self.decision_events(db, resource.id)
        assert event.status == audit.SUCCESS
        assert event.resolver_id == "bob"
        assert event.actor_id == "mallory"
        assert event.context["status"] == APPROVED

    async def test_non_guardian_vote_audited_as_denied(self, approvals, make_resource, db):
        resource = await make_resource(guardians=["bob"])
        created = await approvals.create_request(resource.id, context())

        with pytest.raises(NotGuardianError):
            await approvals.record_decision(created.request.id, APPROVE, "eve")

        [event] = await self.decision_events(db, resource.id)
        assert event.status == audit.DENIED
        assert event.resolver_id == "eve"
        assert event.context == {
            "request_id": created.request.id,
            "decision": APPROVE,
            "reason": "NotGuardianError",
        }

    async def test_duplicate_vote_audited_as_denied(self, approvals, make_resource, db):
        resource = await make_resource(mode="REQUIRE_ALL", guardians=["bob"])
        created = await approvals.create_request(resource.id, context())
        await approvals.record_decision(created.request.id, APPROVE, "alice")

        with pytest.raises(DuplicateError):
            await approvals.record_decision(created.request.id, APPROVE, "alice")

        statuses = [e.status for e in await self.decision_events(db, resource.id)]
        assert statuses == [audit.DENIED, audit.SUCCESS]


class TestDecisionLocking:
    """Decisions take the request row before counting votes."""

    async def test_lock_only_matches_pending(self, approvals, make_resource, db):
        resource = await make_resource(guardians=["bob"])
        created = await approvals.create_request(resource.id, context())

        assert await approvals._lock_pending(created.request) is True
        await approvals.record_decision(created.request.id, DENY, "bob")
        assert await approvals._lock_pending(created.request) is False

    async def test_resolved_under_us_writes_no_vote(self, approvals, make_resource, db):
        """A request resolved by another writer after we loaded it takes no vote."""
        resource = await make_resource(mode="REQUIRE_ALL", guardians=["bob"])
        created = await approvals.create_request(resource.id, context())
        request_id = created.request.id

        # Another writer resolves the row; our loaded copy still says PENDING
        await db.execute(
            update(ApprovalRequest)
            .where(ApprovalRequest.id == request_id)
            .values(status=DENIED, resolved_by="bob")
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        assert created.request.status == PENDING

        with pytest.raises(AlreadyResolvedError) as exc_info:
            await approvals.record_decision(request_id, APPROVE, "alice")

        assert exc_info.value.status == DENIED
        votes = (await db.execute(select(ApprovalDecision))).scalars().all()
        assert votes == []
