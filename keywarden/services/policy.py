"""Access policy for sensitive resource values (fields, TOTP codes).

Pure functions: no I/O, no persistence. Callers load the guardian list and
pass it in.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional, Protocol


class AccessDecision(str, Enum):
    ALLOW_DIRECT = "allow_direct"
    REQUIRE_APPROVAL = "require_approval"
    DENY = "deny"


class AccessAction(str, Enum):
    FIELD_READ = "field_read"
    TOTP_READ = "totp_read"


class GuardianLike(Protocol):
    user_id: str
    role: str


@dataclass(frozen=True)
class AccessPolicyResult:
    decision: AccessDecision
    reason: str
    role: Optional[str] = None

    @property
    def allowed(self) -> bool:
        return self.decision is AccessDecision.ALLOW_DIRECT

    @property
    def requires_approval(self) -> bool:
        return self.decision is AccessDecision.REQUIRE_APPROVAL


def guardian_role(guardians: Iterable[GuardianLike], actor_id: str) -> Optional[str]:
    """Return the actor's role on the resource, or None."""
    for guardian in guardians:
        if guardian.user_id == actor_id:
            return guardian.role
    return None


def is_guardian(guardians: Iterable[GuardianLike], actor_id: str) -> bool:
    return guardian_role(guardians, actor_id) is not None


def can_manage_guardians(guardians: Iterable[GuardianLike], actor_id: str) -> bool:
    """Only owners may add or remove guardians."""
    return guardian_role(guardians, actor_id) == "OWNER"


def evaluate_access(
    actor_id: Optional[str],
    guardians: Iterable[GuardianLike],
    action: AccessAction = AccessAction.FIELD_READ,
) -> AccessPolicyResult:
    """Decide how an actor may access a resource.

    Owners and guardians get direct access. Every other authenticated
    identity must go through approval; it is never denied outright because
    it can always ask. Only an anonymous actor is denied.
    """
    if not actor_id:
        return AccessPolicyResult(AccessDecision.DENY, "Unauthenticated")

    role = guardian_role(guardians, actor_id)
    if role is not None:
        return AccessPolicyResult(
            AccessDecision.ALLOW_DIRECT, f"User is {role.lower()} of the resource", role
        )

    return AccessPolicyResult(AccessDecision.REQUIRE_APPROVAL, "User is not a guardian")
