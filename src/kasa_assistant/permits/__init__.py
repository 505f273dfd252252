"""Signage permit application module."""

from kasa_assistant.permits.models import (
    ApplicationForm,
    ApplicationStats,
    ApplicationStatus,
    CurrentUser,
    SignageApplication,
    SignageType,
)
from kasa_assistant.permits.service import (
    ApplicationNotFound,
    PermissionDenied,
    PermitError,
    PermitService,
    RecordStore,
    build_status_patch,
    filter_applications,
    generate_application_id,
    summarize,
)

__all__ = [
    "ApplicationForm",
    "ApplicationNotFound",
    "ApplicationStats",
    "ApplicationStatus",
    "CurrentUser",
    "PermissionDenied",
    "PermitError",
    "PermitService",
    "RecordStore",
    "SignageApplication",
    "SignageType",
    "build_status_patch",
    "filter_applications",
    "generate_application_id",
    "summarize",
]
