from __future__ import annotations

import logging

from django.db import IntegrityError, transaction
from django.db.models import F
from django.utils import timezone

from attendees.errors import IdentityAlreadyInitialized, IdentityNotFound, StaleRecord
from attendees.models import AttendeeRecord


logger = logging.getLogger(__name__)

MUTABLE_FIELDS = ("attendance_count", "tier", "last_event_id", "last_timestamp")


class AttendeeStore:
    def create(self, owner: str) -> AttendeeRecord:
        try:
            with transaction.atomic():
                return AttendeeRecord.objects.create(owner=owner)
        except IntegrityError as exc:
            if AttendeeRecord.objects.filter(owner=owner).exists():
                raise IdentityAlreadyInitialized() from exc
            raise

    def load(self, owner: str, *, for_update: bool = False) -> AttendeeRecord:
        queryset = AttendeeRecord.objects.all()
        if for_update:
            queryset = queryset.select_for_update()
        record = queryset.filter(owner=owner).first()
        if record is None:
            raise IdentityNotFound()
        return record

    def save(self, record: AttendeeRecord) -> AttendeeRecord:
        expected_version = record.version
        values = {field: getattr(record, field) for field in MUTABLE_FIELDS}
        values["updated_at"] = timezone.now()
        updated = AttendeeRecord.objects.filter(owner=record.owner, version=expected_version).update(
            version=F("version") + 1,
            **values,
        )
        if updated != 1:
            logger.warning(
                "Attendee record save rejected, stale version",
                extra={"owner": record.owner, "expected_version": expected_version},
            )
            raise StaleRecord()
        record.version = expected_version + 1
        record.updated_at = values["updated_at"]
        return record
