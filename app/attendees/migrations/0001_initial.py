from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="AttendeeRecord",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("owner", models.CharField(max_length=64, unique=True)),
                ("attendance_count", models.PositiveIntegerField(default=0)),
                ("tier", models.PositiveSmallIntegerField(default=1)),
                ("last_event_id", models.CharField(blank=True, default="", max_length=64)),
                ("last_timestamp", models.BigIntegerField(default=0)),
                ("version", models.PositiveIntegerField(default=0)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "indexes": [models.Index(fields=["attendance_count"], name="idx_attendee_count")],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(attendance_count__lte=65535),
                        name="ck_attendee_count_range",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(tier__gte=1, tier__lte=10),
                        name="ck_attendee_tier_range",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="ClaimNotification",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("owner", models.CharField(max_length=64)),
                ("event_id", models.CharField(max_length=64)),
                ("tier", models.PositiveSmallIntegerField()),
                ("attendance_count", models.PositiveIntegerField()),
                ("timestamp", models.BigIntegerField()),
                ("delivered_at", models.DateTimeField(blank=True, null=True)),
                ("attempts", models.PositiveIntegerField(default=0)),
                ("last_error", models.TextField(blank=True, default="")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
            ],
            options={
                "indexes": [
                    models.Index(fields=["delivered_at", "id"], name="idx_notification_pending"),
                    models.Index(fields=["owner", "event_id"], name="idx_notification_owner_event"),
                ],
            },
        ),
    ]
