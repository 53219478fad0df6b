"""
Central constants for the document portal: roles, lifecycle values and their display labels.
"""
from __future__ import annotations

# System-wide role on app_users
SYSTEM_ROLE_NORMAL = "NORMAL"
SYSTEM_ROLE_SITE_ADMIN = "SITE_ADMIN"
SYSTEM_ROLES = (SYSTEM_ROLE_NORMAL, SYSTEM_ROLE_SITE_ADMIN)

# Per-company role on user_companies
ROLE_COLABORADOR = "COLABORADOR"
ROLE_PUBLICADOR = "PUBLICADOR"
ROLE_GESTOR_QUALIDADE = "GESTOR_QUALIDADE"
COMPANY_ROLES = (ROLE_COLABORADOR, ROLE_PUBLICADOR, ROLE_GESTOR_QUALIDADE)

COMPANY_ROLE_LABELS = {
    ROLE_COLABORADOR: "Contributor",
    ROLE_PUBLICADOR: "Publisher",
    ROLE_GESTOR_QUALIDADE: "Quality Manager",
}
COMPANY_ROLE_COLORS = {
    ROLE_COLABORADOR: "secondary",
    ROLE_PUBLICADOR: "primary",
    ROLE_GESTOR_QUALIDADE: "success",
}

# Capabilities granted by a company role. Site admins get the *_or_admin ones on top.
CAP_LIBRARY = "library.view"
CAP_PUBLISH = "publisher.submit"
CAP_QUALITY = "quality.review"
CAP_DOC_TYPES = "doc_types.manage"
CAP_ARCHIVE = "archive.manage"
CAP_SITE_ADMIN = "site.admin"

ROLE_CAPABILITIES = {
    ROLE_COLABORADOR: frozenset({CAP_LIBRARY}),
    ROLE_PUBLICADOR: frozenset({CAP_LIBRARY, CAP_PUBLISH}),
    ROLE_GESTOR_QUALIDADE: frozenset({CAP_LIBRARY, CAP_PUBLISH, CAP_QUALITY, CAP_DOC_TYPES, CAP_ARCHIVE}),
}
SITE_ADMIN_CAPABILITIES = frozenset({CAP_DOC_TYPES, CAP_ARCHIVE, CAP_SITE_ADMIN})

# documents.status
STATUS_DRAFT = "DRAFT"
STATUS_IN_REVIEW = "IN_REVIEW"
STATUS_PUBLISHED = "PUBLISHED"
STATUS_ARCHIVED = "ARCHIVED"
DOCUMENT_STATUSES = (STATUS_DRAFT, STATUS_IN_REVIEW, STATUS_PUBLISHED, STATUS_ARCHIVED)

DOCUMENT_STATUS_LABELS = {
    STATUS_DRAFT: "Draft",
    STATUS_IN_REVIEW: "In quality review",
    STATUS_PUBLISHED: "Published",
    STATUS_ARCHIVED: "Archived",
}

# document_versions.stage
STAGE_SUBMITTED = "SUBMITTED"
STAGE_UNDER_REVIEW = "UNDER_REVIEW"
STAGE_NEEDS_CHANGES = "NEEDS_CHANGES"
STAGE_EDITED_BY_QUALITY = "EDITED_BY_QUALITY"
STAGE_READY_TO_PUBLISH = "READY_TO_PUBLISH"
STAGE_PUBLISHED = "PUBLISHED"
VERSION_STAGES = (
    STAGE_SUBMITTED,
    STAGE_UNDER_REVIEW,
    STAGE_NEEDS_CHANGES,
    STAGE_EDITED_BY_QUALITY,
    STAGE_READY_TO_PUBLISH,
    STAGE_PUBLISHED,
)

VERSION_STAGE_LABELS = {
    STAGE_SUBMITTED: "Submitted",
    STAGE_UNDER_REVIEW: "Under review",
    STAGE_NEEDS_CHANGES: "Needs changes",
    STAGE_EDITED_BY_QUALITY: "Edited by Quality",
    STAGE_READY_TO_PUBLISH: "Ready to publish",
    STAGE_PUBLISHED: "Published",
}
VERSION_STAGE_COLORS = {
    STAGE_SUBMITTED: "primary",
    STAGE_UNDER_REVIEW: "info",
    STAGE_NEEDS_CHANGES: "warning",
    STAGE_EDITED_BY_QUALITY: "dark",
    STAGE_READY_TO_PUBLISH: "info",
    STAGE_PUBLISHED: "success",
}

# documents.risk_level
RISK_LOW = "LOW"
RISK_HIGH = "HIGH"
RISK_LEVELS = (RISK_LOW, RISK_HIGH)

# document_actions.action
ACTION_SUBMITTED = "SUBMITTED"
ACTION_RESUBMITTED = "RESUBMITTED"
ACTION_REVIEW_STARTED = "REVIEW_STARTED"
ACTION_CHANGES_REQUESTED = "CHANGES_REQUESTED"
ACTION_VERSION_UPLOADED = "VERSION_UPLOADED"
ACTION_MARKED_READY = "MARKED_READY"
ACTION_PUBLISHED = "PUBLISHED"
ACTION_SENT_BACK_TO_REVIEW = "SENT_BACK_TO_REVIEW"
ACTION_ARCHIVED = "ARCHIVED"
ACTION_UNARCHIVED = "UNARCHIVED"
ACTION_DELETED = "DELETED"

DOCUMENT_ACTION_LABELS = {
    ACTION_SUBMITTED: "Submitted",
    ACTION_RESUBMITTED: "Resubmitted",
    ACTION_REVIEW_STARTED: "Review started",
    ACTION_CHANGES_REQUESTED: "Changes requested",
    ACTION_VERSION_UPLOADED: "New version by Quality",
    ACTION_MARKED_READY: "Ready to publish",
    ACTION_PUBLISHED: "Published",
    ACTION_SENT_BACK_TO_REVIEW: "Sent back to review",
    ACTION_ARCHIVED: "Archived",
    ACTION_UNARCHIVED: "Unarchived",
    ACTION_DELETED: "Deleted",
}
DOCUMENT_ACTION_COLORS = {
    ACTION_PUBLISHED: "success",
    ACTION_SENT_BACK_TO_REVIEW: "primary",
    ACTION_ARCHIVED: "secondary",
    ACTION_UNARCHIVED: "info",
    ACTION_DELETED: "danger",
    ACTION_CHANGES_REQUESTED: "warning",
}

OFFICE_EXTENSIONS = (".doc", ".docx", ".xls", ".xlsx", ".ppt", ".pptx")
