"""
Central constants for the lifecycle engine.
"""
from __future__ import annotations

# Document.issue_status
ISSUE_DRAFT = "draft"
ISSUE_ISSUED = "issued"
ISSUE_SUPERSEDED = "superseded"
ISSUE_STATUSES = frozenset({ISSUE_DRAFT, ISSUE_ISSUED, ISSUE_SUPERSEDED})

# Document.approval_status (independent of issue_status)
APPROVAL_NOT_REQUIRED = "not_required"
APPROVAL_PENDING = "pending"
APPROVAL_APPROVED = "approved"
APPROVAL_REJECTED = "rejected"
APPROVAL_STATUSES = frozenset({APPROVAL_NOT_REQUIRED, APPROVAL_PENDING, APPROVAL_APPROVED, APPROVAL_REJECTED})

# Action.status
ACTION_OPEN = "open"
ACTION_IN_PROGRESS = "in_progress"
ACTION_CLOSED = "closed"
ACTION_DEFERRED = "deferred"
ACTION_STATUSES = frozenset({ACTION_OPEN, ACTION_IN_PROGRESS, ACTION_CLOSED, ACTION_DEFERRED})

# AuditEvent.event_type
EVENT_ISSUED = "issued"
EVENT_REVISION_CREATED = "revision_created"
EVENT_ACTION_CLOSED = "action_closed"
EVENT_ACTION_REOPENED = "action_reopened"
EVENT_TYPES = frozenset({EVENT_ISSUED, EVENT_REVISION_CREATED, EVENT_ACTION_CLOSED, EVENT_ACTION_REOPENED})

# User.role
ROLE_PLATFORM_ADMIN = "platform_admin"
ROLE_ORG_ADMIN = "org_admin"
ROLE_SURVEYOR = "surveyor"
ROLE_VIEWER = "viewer"
ROLES = frozenset({ROLE_PLATFORM_ADMIN, ROLE_ORG_ADMIN, ROLE_SURVEYOR, ROLE_VIEWER})
ELEVATED_ROLES = frozenset({ROLE_ORG_ADMIN, ROLE_PLATFORM_ADMIN})

# Document fields that are frozen once a document leaves draft.
CONTENT_FIELDS = ("title", "document_type", "scope_description", "limitations_assumptions", "standards")

PRIORITY_BANDS = ("P1", "P2", "P3", "P4")

# Operational channel for alerts (invariant violations, audit write failures).
OPS_LOGGER = "riskdocs.ops"
