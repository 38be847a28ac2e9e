from rest_framework import serializers

from .models import AttendeeRecord
from .tiers import tier_label


class AttendeeRecordSerializer(serializers.ModelSerializer):
    tier_label = serializers.SerializerMethodField()

    class Meta:
        model = AttendeeRecord
        fields = [
            'owner',
            'attendance_count',
            'tier',
            'tier_label',
            'last_event_id',
            'last_timestamp',
            'created_at',
            'updated_at',
        ]
        read_only_fields = [field for field in fields if field != 'tier_label']

    def get_tier_label(self, obj):
        return tier_label(obj.tier)


RESERVED_OWNERS = {'leaderboard'}


class AttendeeInitSerializer(serializers.Serializer):
    owner = serializers.CharField(max_length=64)

    def validate_owner(self, value):
        if value.lower() in RESERVED_OWNERS:
            raise serializers.ValidationError(f"'{value}' is a reserved name.")
        if '/' in value:
            raise serializers.ValidationError('Owner must not contain "/".')
        return value


class ClaimRequestSerializer(serializers.Serializer):
    event_id = serializers.CharField(allow_blank=True, trim_whitespace=False)
    credential = serializers.CharField()


class LeaderboardEntrySerializer(serializers.ModelSerializer):
    rank = serializers.IntegerField(read_only=True)

    class Meta:
        model = AttendeeRecord
        fields = ['rank', 'owner', 'attendance_count', 'tier']
