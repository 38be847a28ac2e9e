from django.db import models

from attendees.tiers import MAX_TIER, MIN_TIER


MAX_ATTENDANCE_COUNT = 65535
MAX_EVENT_ID_BYTES = 64


class AttendeeRecord(models.Model):
    owner = models.CharField(max_length=64, unique=True)
    attendance_count = models.PositiveIntegerField(default=0)
    tier = models.PositiveSmallIntegerField(default=MIN_TIER)
    last_event_id = models.CharField(max_length=MAX_EVENT_ID_BYTES, blank=True, default="")
    last_timestamp = models.BigIntegerField(default=0)
    version = models.PositiveIntegerField(default=0)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        constraints = [
            models.CheckConstraint(
                condition=models.Q(attendance_count__lte=MAX_ATTENDANCE_COUNT),
                name="ck_attendee_count_range",
            ),
            models.CheckConstraint(
                condition=models.Q(tier__gte=MIN_TIER, tier__lte=MAX_TIER),
                name="ck_attendee_tier_range",
            ),
        ]
        indexes = [models.Index(fields=["attendance_count"], name="idx_attendee_count")]

    def __str__(self):
        return f"{self.owner} (tier {self.tier}, {self.attendance_count} events)"


class ClaimNotification(models.Model):
    owner = models.CharField(max_length=64)
    event_id = models.CharField(max_length=MAX_EVENT_ID_BYTES)
    tier = models.PositiveSmallIntegerField()
    attendance_count = models.PositiveIntegerField()
    timestamp = models.BigIntegerField()
    delivered_at = models.DateTimeField(null=True, blank=True)
    attempts = models.PositiveIntegerField(default=0)
    last_error = models.TextField(blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        indexes = [
            models.Index(fields=["delivered_at", "id"], name="idx_notification_pending"),
            models.Index(fields=["owner", "event_id"], name="idx_notification_owner_event"),
        ]

    def __str__(self):
        return f"ClaimNotification<{self.owner}:{self.event_id}>"
