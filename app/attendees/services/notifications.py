from __future__ import annotations

import logging
from dataclasses import dataclass

import requests
from django.conf import settings
from django.db import transaction
from django.utils import timezone

from attendees.client import IndexerClient
from attendees.models import ClaimNotification


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClaimRecorded:
    owner: str
    event_id: str
    tier: int
    attendance_count: int
    timestamp: int

    def as_payload(self) -> dict:
        return {
            "owner": self.owner,
            "eventId": self.event_id,
            "newTier": self.tier,
            "totalAttendance": self.attendance_count,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_notification(cls, notification: ClaimNotification) -> "ClaimRecorded":
        return cls(
            owner=notification.owner,
            event_id=notification.event_id,
            tier=notification.tier,
            attendance_count=notification.attendance_count,
            timestamp=notification.timestamp,
        )


def _default_client() -> IndexerClient | None:
    url = getattr(settings, "ATTENDANCE_INDEXER_URL", "")
    if not url:
        return None
    return IndexerClient(
        url,
        token=getattr(settings, "ATTENDANCE_INDEXER_TOKEN", ""),
        timeout=getattr(settings, "ATTENDANCE_INDEXER_TIMEOUT", 10),
    )


class ClaimEventEmitter:
    def __init__(self, client: IndexerClient | None = None):
        self._client = client

    @property
    def client(self) -> IndexerClient | None:
        return self._client if self._client is not None else _default_client()

    def emit(self, recorded: ClaimRecorded) -> ClaimNotification:
        notification = ClaimNotification.objects.create(
            owner=recorded.owner,
            event_id=recorded.event_id,
            tier=recorded.tier,
            attendance_count=recorded.attendance_count,
            timestamp=recorded.timestamp,
        )
        transaction.on_commit(lambda: self.deliver(notification), robust=True)
        return notification

    def deliver(self, notification: ClaimNotification) -> bool:
        payload = ClaimRecorded.from_notification(notification).as_payload()
        client = self.client

        if client is None:
            logger.info("ClaimRecorded", extra={"notification_id": notification.id, **payload})
        else:
            try:
                client.publish(payload)
            except requests.RequestException as exc:
                logger.exception(
                    "Unable to publish claim notification",
                    extra={"notification_id": notification.id, "owner": notification.owner},
                )
                notification.attempts += 1
                notification.last_error = str(exc)
                notification.save(update_fields=["attempts", "last_error"])
                return False

        notification.attempts += 1
        notification.last_error = ""
        notification.delivered_at = timezone.now()
        notification.save(update_fields=["attempts", "last_error", "delivered_at"])
        return True

    def deliver_pending(self, limit: int | None = None) -> int:
        pending = ClaimNotification.objects.filter(delivered_at__isnull=True).order_by("id")
        if limit:
            pending = pending[:limit]

        delivered = 0
        for notification in pending.iterator():
            if self.deliver(notification):
                delivered += 1
        return delivered
