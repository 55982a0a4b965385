"""Database models for KeyWarden."""

from keywarden.models.totp_credential import TOTPCredential
from keywarden.models.resource import Resource, Guardian
from keywarden.models.resource_field import ResourceField
from keywarden.models.approval_request import ApprovalRequest, ApprovalDecision
from keywarden.models.audit_event import AuditEvent
from keywarden.models.device_auth import DeviceAuthSession, ApiToken
from keywarden.models.project import Project, Environment, ProjectMember

__all__ = [
    "TOTPCredential",
    "Resource",
    "Guardian",
    "ResourceField",
    "ApprovalRequest",
    "ApprovalDecision",
    "AuditEvent",
    "DeviceAuthSession",
    "ApiToken",
    "Project",
    "Environment",
    "ProjectMember",
]
