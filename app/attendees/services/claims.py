from __future__ import annotations

import logging
from typing import Callable

from django.db import OperationalError, transaction
from django.utils import timezone

from attendees.errors import AlreadyClaimed, AttendanceError, CounterOverflow, InvalidEventId, StaleRecord
from attendees.models import MAX_ATTENDANCE_COUNT, MAX_EVENT_ID_BYTES, AttendeeRecord
from attendees.services.credentials import verify_credential
from attendees.services.notifications import ClaimEventEmitter, ClaimRecorded
from attendees.services.store import AttendeeStore
from attendees.tiers import calculate_tier


logger = logging.getLogger(__name__)


def _unix_now() -> int:
    return int(timezone.now().timestamp())


def _is_lock_conflict(exc: OperationalError) -> bool:
    message = str(exc).lower()
    return "locked" in message or "deadlock" in message


def validate_event_id(event_id) -> str:
    if not isinstance(event_id, str) or not event_id:
        raise InvalidEventId()
    if len(event_id.encode("utf-8")) > MAX_EVENT_ID_BYTES:
        raise InvalidEventId()
    return event_id


class ClaimProcessor:
    def __init__(
        self,
        store: AttendeeStore | None = None,
        emitter: ClaimEventEmitter | None = None,
        verifier: Callable[[str, str, str | bytes], bytes] | None = verify_credential,
        clock: Callable[[], int] = _unix_now,
    ):
        self.store = store or AttendeeStore()
        self.emitter = emitter or ClaimEventEmitter()
        self.verifier = verifier
        self.clock = clock

    def initialize_attendee(self, owner: str) -> AttendeeRecord:
        record = self.store.create(owner)
        logger.info("Attendee initialized", extra={"owner": owner})
        return record

    def process_claim(self, owner: str, event_id: str, credential: str | bytes) -> ClaimRecorded:
        try:
            validate_event_id(event_id)
            if self.verifier is not None:
                self.verifier(owner, event_id, credential)

            try:
                with transaction.atomic():
                    record = self.store.load(owner, for_update=True)
                    if record.last_event_id == event_id:
                        raise AlreadyClaimed()
                    if record.attendance_count >= MAX_ATTENDANCE_COUNT:
                        raise CounterOverflow()

                    record.attendance_count += 1
                    record.tier = calculate_tier(record.attendance_count)
                    record.last_event_id = event_id
                    record.last_timestamp = self.clock()
                    self.store.save(record)

                    recorded = ClaimRecorded(
                        owner=record.owner,
                        event_id=record.last_event_id,
                        tier=record.tier,
                        attendance_count=record.attendance_count,
                        timestamp=record.last_timestamp,
                    )
                    self.emitter.emit(recorded)
            except OperationalError as exc:
                if not _is_lock_conflict(exc):
                    raise
                raise StaleRecord() from exc
        except AttendanceError as exc:
            logger.warning(
                "Attendance claim rejected",
                extra={"owner": owner, "event_id": event_id, "code": exc.code},
            )
            raise

        logger.info(
            "Attendance claim recorded",
            extra={"owner": owner, "event_id": event_id, "tier": recorded.tier, "attendance_count": recorded.attendance_count},
        )
        return recorded


def initialize_attendee(owner: str) -> AttendeeRecord:
    return ClaimProcessor().initialize_attendee(owner)


def record_claim(owner: str, event_id: str, credential: str | bytes) -> ClaimRecorded:
    return ClaimProcessor().process_claim(owner, event_id, credential)
