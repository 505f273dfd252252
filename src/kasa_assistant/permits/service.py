"""Permit application workflow on top of the hosted record store."""

from __future__ import annotations

import secrets
import string
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta, timezone
from typing import Any, Protocol

import structlog

from kasa_assistant.permits.models import (
    ApplicationForm,
    ApplicationStats,
    ApplicationStatus,
    CurrentUser,
    SignageApplication,
)

logger = structlog.get_logger()

TABLE = "signage_applications"

_BASE36 = string.digits + string.ascii_uppercase
_RANDOM_PART_LENGTH = 6


class PermitError(Exception):
    """Base error for permit operations."""


class ApplicationNotFound(PermitError):
    pass


class PermissionDenied(PermitError):
    pass


class RecordStore(Protocol):
    """Hosted datastore used by the permit workflow."""

    async def insert(self, table: str, record: dict[str, Any]) -> str: ...

    async def query(self, table: str, filters: dict[str, Any]) -> list[dict[str, Any]]: ...

    async def update(self, table: str, record_id: str, patch: dict[str, Any]) -> None: ...

    def subscribe(
        self,
        table: str,
        filters: dict[str, Any],
        on_change: Callable[[dict[str, Any]], None],
    ) -> Callable[[], None]: ...


def _to_base36(number: int) -> str:
    if number == 0:
        return "0"
    digits = []
    while number:
        number, remainder = divmod(number, 36)
        digits.append(_BASE36[remainder])
    return "".join(reversed(digits))


def generate_application_id(prefix: str = "KASA", now: datetime | None = None) -> str:
    """Create a human-shareable application ID like ``KASA-LZ3K8F2A-7QX1PB``.

    The middle part is the creation time in epoch milliseconds (base 36),
    the last part six random base-36 characters.
    """
    now = now or datetime.now(timezone.utc)
    timestamp = _to_base36(int(now.timestamp() * 1000))
    random_part = "".join(secrets.choice(_BASE36) for _ in range(_RANDOM_PART_LENGTH))
    return f"{prefix}-{timestamp}-{random_part}"


def build_status_patch(
    application: SignageApplication,
    new_status: ApplicationStatus,
    now: datetime,
    validity_days: int = 365,
) -> dict[str, Any]:
    """Fields to write when an admin moves an application to ``new_status``.

    Marking paid records the full amount due as paid. Approving issues the
    permit for ``validity_days`` from now.
    """
    patch: dict[str, Any] = {"status": new_status.value}
    if new_status is ApplicationStatus.PAID:
        patch["amount_paid"] = application.amount_due
        patch["payment_date"] = now.isoformat()
    if new_status is ApplicationStatus.APPROVED:
        patch["issued_date"] = now.isoformat()
        patch["expiry_date"] = (now + timedelta(days=validity_days)).isoformat()
    return patch


def filter_applications(
    applications: Iterable[SignageApplication],
    search: str = "",
    status: ApplicationStatus | str | None = None,
) -> list[SignageApplication]:
    """Admin table filter: free-text search plus an optional status.

    Search is a case-insensitive substring match on business name,
    application ID, and email. A status of None or "all" matches any; an
    unknown status matches nothing.
    """
    term = search.strip().lower()
    wanted = None
    if status not in (None, "all"):
        try:
            wanted = ApplicationStatus(status)
        except ValueError:
            return []

    matches = []
    for app in applications:
        if term and not any(
            term in field.lower()
            for field in (app.business_name, app.application_id, app.email)
        ):
            continue
        if wanted is not None and app.status is not wanted:
            continue
        matches.append(app)
    return matches


def summarize(applications: Iterable[SignageApplication]) -> ApplicationStats:
    stats = ApplicationStats()
    for app in applications:
        stats.total += 1
        if app.status is ApplicationStatus.PENDING_PAYMENT:
            stats.pending += 1
        elif app.status is ApplicationStatus.PAID:
            stats.paid += 1
        elif app.status is ApplicationStatus.APPROVED:
            stats.approved += 1
    return stats


def _created_sort_key(application: SignageApplication) -> datetime:
    created = application.created_at
    if created is None:
        return datetime.min.replace(tzinfo=timezone.utc)
    # Rows without an offset are stored in UTC.
    if created.tzinfo is None:
        return created.replace(tzinfo=timezone.utc)
    return created


def _require_admin(user: CurrentUser | None) -> CurrentUser:
    if user is None or not user.is_admin:
        raise PermissionDenied("Admin access required")
    return user


class PermitService:
    """Submit, look up, and administer signage permit applications."""

    def __init__(
        self,
        store: RecordStore,
        id_prefix: str = "KASA",
        validity_days: int = 365,
    ) -> None:
        self._store = store
        self._id_prefix = id_prefix
        self._validity_days = validity_days

    async def submit(self, form: ApplicationForm) -> SignageApplication:
        """Store a new application and return it with its shareable ID."""
        application = SignageApplication(
            application_id=generate_application_id(self._id_prefix),
            **form.model_dump(),
        )
        record = application.model_dump(
            mode="json",
            include={
                "application_id", "business_name", "email", "phone",
                "signage_type", "location", "description",
            },
        )
        record_id = await self._store.insert(TABLE, record)
        application.id = record_id

        logger.info(
            "permit_application_submitted",
            application_id=application.application_id,
            signage_type=application.signage_type.value,
        )
        return application

    async def lookup(self, application_id: str) -> SignageApplication | None:
        """Find an application by its shareable ID (status verification)."""
        application_id = application_id.strip()
        if not application_id:
            return None

        rows = await self._store.query(TABLE, {"application_id": application_id})
        if not rows:
            logger.info("permit_lookup_miss", application_id=application_id)
            return None
        return SignageApplication.model_validate(rows[0])

    async def list_applications(
        self,
        user: CurrentUser | None,
        search: str = "",
        status: ApplicationStatus | str | None = None,
    ) -> list[SignageApplication]:
        """All applications for the admin table, newest first."""
        _require_admin(user)
        rows = await self._store.query(TABLE, {})
        applications = [SignageApplication.model_validate(row) for row in rows]
        applications.sort(key=_created_sort_key, reverse=True)
        return filter_applications(applications, search=search, status=status)

    async def update_status(
        self,
        user: CurrentUser | None,
        record_id: str,
        new_status: ApplicationStatus | str,
    ) -> SignageApplication:
        admin = _require_admin(user)
        new_status = ApplicationStatus(new_status)

        rows = await self._store.query(TABLE, {"id": record_id})
        if not rows:
            raise ApplicationNotFound(f"No application with id {record_id}")
        application = SignageApplication.model_validate(rows[0])

        patch = build_status_patch(
            application,
            new_status,
            now=datetime.now(timezone.utc),
            validity_days=self._validity_days,
        )
        await self._store.update(TABLE, record_id, patch)

        logger.info(
            "permit_status_updated",
            application_id=application.application_id,
            old_status=application.status.value,
            new_status=new_status.value,
            admin_id=admin.id,
        )
        return SignageApplication.model_validate({**application.model_dump(), **patch})

    def watch(
        self,
        application_id: str,
        on_change: Callable[[SignageApplication], None],
    ) -> Callable[[], None]:
        """Follow live status changes of one application.

        Returns a function that cancels the subscription.
        """
        def deliver(row: dict[str, Any]) -> None:
            on_change(SignageApplication.model_validate(row))

        return self._store.subscribe(
            TABLE, {"application_id": application_id.strip()}, deliver
        )
