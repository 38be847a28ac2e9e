from __future__ import annotations

from rest_framework import mixins, status, viewsets
from rest_framework.decorators import action
from rest_framework.response import Response

from attendees.errors import AttendanceError
from attendees.models import AttendeeRecord
from attendees.serializers import (
    AttendeeInitSerializer,
    AttendeeRecordSerializer,
    ClaimRequestSerializer,
    LeaderboardEntrySerializer,
)
from attendees.services.claims import ClaimProcessor


DEFAULT_LEADERBOARD_LIMIT = 50
MAX_LEADERBOARD_LIMIT = 100


def _error_response(exc: AttendanceError) -> Response:
    return Response(exc.as_dict(), status=exc.status_code)


class AttendeeRecordViewSet(mixins.ListModelMixin, mixins.RetrieveModelMixin, viewsets.GenericViewSet):
    queryset = AttendeeRecord.objects.all().order_by('-id')
    serializer_class = AttendeeRecordSerializer
    lookup_field = 'owner'
    lookup_value_regex = '[^/]+'

    def get_processor(self) -> ClaimProcessor:
        return ClaimProcessor()

    def create(self, request, *args, **kwargs):
        serializer = AttendeeInitSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        try:
            record = self.get_processor().initialize_attendee(serializer.validated_data['owner'])
        except AttendanceError as exc:
            return _error_response(exc)

        return Response(AttendeeRecordSerializer(record).data, status=status.HTTP_201_CREATED)

    @action(detail=True, methods=['post'])
    def claims(self, request, owner=None):
        serializer = ClaimRequestSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        try:
            recorded = self.get_processor().process_claim(
                owner,
                serializer.validated_data['event_id'],
                serializer.validated_data['credential'],
            )
        except AttendanceError as exc:
            return _error_response(exc)

        return Response(recorded.as_payload(), status=status.HTTP_201_CREATED)

    @action(detail=False, methods=['get'])
    def leaderboard(self, request):
        try:
            limit = int(request.query_params.get('limit', DEFAULT_LEADERBOARD_LIMIT))
        except ValueError:
            return Response({'detail': 'limit must be an integer'}, status=status.HTTP_400_BAD_REQUEST)
        limit = max(1, min(limit, MAX_LEADERBOARD_LIMIT))

        records = list(AttendeeRecord.objects.order_by('-attendance_count', 'last_timestamp', 'id')[:limit])
        for rank, record in enumerate(records, start=1):
            record.rank = rank

        return Response(LeaderboardEntrySerializer(records, many=True).data)
