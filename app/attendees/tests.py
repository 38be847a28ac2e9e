import threading
from io import StringIO
from unittest.mock import patch

import requests
from django.contrib.auth import get_user_model
from django.core.management import call_command
from django.db import connection
from django.test import TestCase, TransactionTestCase, override_settings
from rest_framework import status
from rest_framework.test import APITestCase

from attendees.errors import (
    AlreadyClaimed,
    CounterOverflow,
    IdentityAlreadyInitialized,
    IdentityNotFound,
    InvalidEventId,
    InvalidSignature,
    StaleRecord,
)
from attendees.models import AttendeeRecord, ClaimNotification
from attendees.services.claims import ClaimProcessor, initialize_attendee, record_claim
from attendees.services.credentials import sign_credential
from attendees.services.notifications import ClaimEventEmitter, ClaimRecorded
from attendees.services.store import AttendeeStore
from attendees.tiers import calculate_tier, tier_label


OWNER = "7xKXtg2CW87d97TXJSDpbD5jBkheTqA83TZRuJosgAsU"
CREDENTIAL = "00" * 64


class FixedClock:
    def __init__(self, start=1_700_000_000):
        self.now = start

    def __call__(self):
        self.now += 60
        return self.now


class TierCalculatorTests(TestCase):
    def test_tier_table_over_full_counter_range(self):
        for count in range(0, 65536):
            if count <= 1:
                expected = 1
            elif count <= 4:
                expected = 2
            elif count <= 6:
                expected = 5
            elif count <= 9:
                expected = 7
            else:
                expected = 10
            self.assertEqual(calculate_tier(count), expected, count)

    def test_tier_boundaries(self):
        self.assertEqual([calculate_tier(n) for n in (0, 1, 2, 4, 5, 6, 7, 9, 10, 11)], [1, 1, 2, 2, 5, 5, 7, 7, 10, 10])

    def test_tier_labels(self):
        self.assertEqual(tier_label(1), "Vibe Check")
        self.assertEqual(tier_label(10), "GΛRO Family")
        self.assertEqual(tier_label(7), "Tier 7")


class AttendeeStoreTests(TestCase):
    def setUp(self):
        self.store = AttendeeStore()

    def test_create_uses_default_values(self):
        record = self.store.create(OWNER)

        self.assertEqual(record.owner, OWNER)
        self.assertEqual(record.attendance_count, 0)
        self.assertEqual(record.tier, 1)
        self.assertEqual(record.last_event_id, "")
        self.assertEqual(record.last_timestamp, 0)

    def test_create_twice_fails_and_keeps_existing_record(self):
        record = self.store.create(OWNER)
        AttendeeRecord.objects.filter(pk=record.pk).update(attendance_count=3, tier=2, last_event_id="evt3")

        with self.assertRaises(IdentityAlreadyInitialized):
            self.store.create(OWNER)

        stored = AttendeeRecord.objects.get(owner=OWNER)
        self.assertEqual(AttendeeRecord.objects.count(), 1)
        self.assertEqual(stored.attendance_count, 3)
        self.assertEqual(stored.last_event_id, "evt3")

    def test_load_unknown_identity(self):
        with self.assertRaises(IdentityNotFound):
            self.store.load("unknown-owner")

    def test_save_bumps_version(self):
        record = self.store.create(OWNER)
        record.attendance_count = 1
        self.store.save(record)

        stored = self.store.load(OWNER)
        self.assertEqual(stored.attendance_count, 1)
        self.assertEqual(stored.version, 1)
        self.assertEqual(record.version, 1)

    def test_save_rejects_stale_read(self):
        self.store.create(OWNER)
        first = self.store.load(OWNER)
        second = self.store.load(OWNER)

        first.attendance_count = 1
        self.store.save(first)

        second.attendance_count = 1
        second.last_event_id = "lost-update"
        with self.assertRaises(StaleRecord):
            self.store.save(second)

        stored = self.store.load(OWNER)
        self.assertEqual(stored.attendance_count, 1)
        self.assertEqual(stored.last_event_id, "")


class StaleSnapshotStore(AttendeeStore):
    def __init__(self, snapshot):
        self.snapshot = snapshot

    def load(self, owner, *, for_update=False):
        return self.snapshot


class ClaimProcessorTests(TestCase):
    def setUp(self):
        self.clock = FixedClock()
        self.processor = ClaimProcessor(clock=self.clock)
        self.processor.initialize_attendee(OWNER)

    def claim(self, event_id):
        return self.processor.process_claim(OWNER, event_id, CREDENTIAL)

    def record(self):
        return AttendeeRecord.objects.get(owner=OWNER)

    def test_full_scenario(self):
        recorded = self.claim("evt1")
        self.assertEqual((recorded.attendance_count, recorded.tier), (1, 1))

        recorded = self.claim("evt2")
        self.assertEqual((recorded.attendance_count, recorded.tier), (2, 2))

        with self.assertRaises(AlreadyClaimed):
            self.claim("evt2")
        self.assertEqual(self.record().attendance_count, 2)

        for event_id in ("evt3", "evt4", "evt5", "evt6"):
            recorded = self.claim(event_id)
        self.assertEqual((recorded.attendance_count, recorded.tier), (6, 5))

        recorded = self.claim("evt7")
        self.assertEqual((recorded.attendance_count, recorded.tier), (7, 7))

        for event_id in ("evt8", "evt9", "evt10"):
            recorded = self.claim(event_id)
        self.assertEqual((recorded.attendance_count, recorded.tier), (10, 10))

        record = self.record()
        self.assertEqual(record.attendance_count, 10)
        self.assertEqual(record.tier, 10)
        self.assertEqual(record.last_event_id, "evt10")

    def test_new_event_increments_and_overwrites_last_claim(self):
        first = self.claim("evt1")
        second = self.claim("evt2")

        record = self.record()
        self.assertEqual(record.attendance_count, 2)
        self.assertEqual(record.last_event_id, "evt2")
        self.assertEqual(record.last_timestamp, second.timestamp)
        self.assertGreater(second.timestamp, first.timestamp)

    def test_repeated_event_leaves_record_unchanged(self):
        self.claim("evt1")
        before = self.record()

        with self.assertRaises(AlreadyClaimed):
            self.claim("evt1")

        after = self.record()
        self.assertEqual(after.attendance_count, before.attendance_count)
        self.assertEqual(after.tier, before.tier)
        self.assertEqual(after.last_timestamp, before.last_timestamp)
        self.assertEqual(after.version, before.version)
        self.assertEqual(ClaimNotification.objects.count(), 1)

    def test_older_event_can_be_claimed_again_after_newer_one(self):
        self.claim("A")
        self.claim("B")
        recorded = self.claim("A")

        self.assertEqual(recorded.attendance_count, 3)
        self.assertEqual(self.record().last_event_id, "A")

    def test_claim_for_unknown_identity(self):
        with self.assertRaises(IdentityNotFound):
            self.processor.process_claim("nobody", "evt1", CREDENTIAL)

    def test_counter_overflow(self):
        AttendeeRecord.objects.filter(owner=OWNER).update(attendance_count=65535, tier=10, last_event_id="evt-last")

        with self.assertRaises(CounterOverflow):
            self.claim("evt-next")

        record = self.record()
        self.assertEqual(record.attendance_count, 65535)
        self.assertEqual(record.last_event_id, "evt-last")

    def test_event_id_validation(self):
        for event_id in ("", "x" * 65, "é" * 33, None):
            with self.assertRaises(InvalidEventId):
                self.claim(event_id)

        recorded = self.claim("é" * 32)
        self.assertEqual(recorded.attendance_count, 1)

    def test_malformed_credential_rejected_before_state_is_touched(self):
        for credential in ("00" * 63, "zz" * 64, b"\x00" * 65):
            with self.assertRaises(InvalidSignature):
                self.processor.process_claim(OWNER, "evt1", credential)

        self.assertEqual(self.record().attendance_count, 0)
        self.assertEqual(ClaimNotification.objects.count(), 0)

    @override_settings(ATTENDANCE_CREDENTIAL_SECRET="qr-secret")
    def test_signed_credential_is_verified(self):
        signed = sign_credential("qr-secret", OWNER, "evt1").hex()
        other_event = sign_credential("qr-secret", OWNER, "evt2").hex()

        with self.assertRaises(InvalidSignature):
            self.processor.process_claim(OWNER, "evt1", other_event)
        self.assertEqual(self.record().attendance_count, 0)

        recorded = self.processor.process_claim(OWNER, "evt1", signed)
        self.assertEqual(recorded.attendance_count, 1)

    def test_failed_emit_rolls_back_claim(self):
        with patch.object(ClaimEventEmitter, "emit", side_effect=RuntimeError("outbox down")):
            with self.assertRaises(RuntimeError):
                self.claim("evt1")

        record = self.record()
        self.assertEqual(record.attendance_count, 0)
        self.assertEqual(record.last_event_id, "")
        self.assertEqual(record.version, 0)

    def test_claim_against_stale_read_never_commits(self):
        snapshot = AttendeeStore().load(OWNER)
        self.claim("evt1")

        racing = ClaimProcessor(store=StaleSnapshotStore(snapshot), clock=self.clock)
        with self.assertRaises(StaleRecord):
            racing.process_claim(OWNER, "evt2", CREDENTIAL)

        record = self.record()
        self.assertEqual(record.attendance_count, 1)
        self.assertEqual(record.last_event_id, "evt1")
        self.assertEqual(ClaimNotification.objects.count(), 1)

    def test_module_helpers(self):
        initialize_attendee("second-owner")
        recorded = record_claim("second-owner", "evt1", CREDENTIAL)

        self.assertEqual(recorded.owner, "second-owner")
        self.assertEqual(recorded.attendance_count, 1)


class ClaimEventEmitterTests(TestCase):
    def setUp(self):
        self.processor = ClaimProcessor(clock=lambda: 1_700_000_000)
        self.processor.initialize_attendee(OWNER)

    def test_payload_schema(self):
        recorded = ClaimRecorded(owner=OWNER, event_id="evt1", tier=1, attendance_count=1, timestamp=42)

        self.assertEqual(
            recorded.as_payload(),
            {"owner": OWNER, "eventId": "evt1", "newTier": 1, "totalAttendance": 1, "timestamp": 42},
        )

    def test_without_indexer_notification_is_logged_and_marked_delivered(self):
        with self.assertLogs("attendees.services.notifications", level="INFO"):
            with self.captureOnCommitCallbacks(execute=True):
                self.processor.process_claim(OWNER, "evt1", CREDENTIAL)

        notification = ClaimNotification.objects.get()
        self.assertIsNotNone(notification.delivered_at)
        self.assertEqual(notification.attempts, 1)

    @override_settings(ATTENDANCE_INDEXER_URL="https://indexer.local/claims", ATTENDANCE_INDEXER_TOKEN="tok")
    @patch("attendees.client.requests.post")
    def test_delivered_to_indexer_after_commit(self, mock_post):
        mock_post.return_value.content = b""

        with self.captureOnCommitCallbacks(execute=False) as callbacks:
            self.processor.process_claim(OWNER, "evt1", CREDENTIAL)
        mock_post.assert_not_called()

        for callback in callbacks:
            callback()

        mock_post.assert_called_once()
        self.assertEqual(mock_post.call_args.args[0], "https://indexer.local/claims")
        self.assertEqual(mock_post.call_args.kwargs["json"]["eventId"], "evt1")
        self.assertEqual(mock_post.call_args.kwargs["json"]["totalAttendance"], 1)
        self.assertEqual(mock_post.call_args.kwargs["headers"]["X-INDEXER-TOKEN"], "tok")
        self.assertIsNotNone(ClaimNotification.objects.get().delivered_at)

    @override_settings(ATTENDANCE_INDEXER_URL="https://indexer.local/claims")
    @patch("attendees.client.IndexerClient.publish")
    def test_failed_delivery_stays_pending_and_is_redelivered(self, mock_publish):
        mock_publish.side_effect = requests.ConnectionError("indexer unreachable")

        with self.captureOnCommitCallbacks(execute=True):
            recorded = self.processor.process_claim(OWNER, "evt1", CREDENTIAL)

        notification = ClaimNotification.objects.get()
        self.assertIsNone(notification.delivered_at)
        self.assertEqual(notification.attempts, 1)
        self.assertIn("indexer unreachable", notification.last_error)
        self.assertEqual(AttendeeRecord.objects.get(owner=OWNER).attendance_count, 1)

        mock_publish.side_effect = None
        mock_publish.return_value = {}
        stdout = StringIO()
        call_command("deliver_claim_notifications", stdout=stdout)

        self.assertIn("Delivered 1 claim notifications", stdout.getvalue())
        mock_publish.assert_called_with(recorded.as_payload())
        notification.refresh_from_db()
        self.assertIsNotNone(notification.delivered_at)
        self.assertEqual(notification.attempts, 2)
        self.assertEqual(notification.last_error, "")

    def test_deliver_pending_skips_delivered_notifications(self):
        with self.captureOnCommitCallbacks(execute=True):
            self.processor.process_claim(OWNER, "evt1", CREDENTIAL)

        self.assertEqual(ClaimEventEmitter().deliver_pending(), 0)

    @override_settings(ATTENDANCE_INDEXER_URL="https://indexer.local/claims")
    @patch("attendees.client.requests.post")
    def test_plain_text_success_response_counts_as_delivered(self, mock_post):
        response = requests.Response()
        response.status_code = 200
        response._content = b"OK"
        mock_post.return_value = response

        with self.captureOnCommitCallbacks(execute=True):
            self.processor.process_claim(OWNER, "evt1", CREDENTIAL)

        notification = ClaimNotification.objects.get()
        self.assertIsNotNone(notification.delivered_at)
        self.assertEqual(notification.last_error, "")
        self.assertEqual(ClaimEventEmitter().deliver_pending(), 0)
        mock_post.assert_called_once()


class BarrierStore(AttendeeStore):
    def __init__(self, barrier):
        self.barrier = barrier

    def load(self, owner, *, for_update=False):
        record = super().load(owner, for_update=for_update)
        try:
            self.barrier.wait(timeout=2)
        except threading.BrokenBarrierError:
            pass
        return record


class ConcurrentClaimTests(TransactionTestCase):
    def setUp(self):
        ClaimProcessor().initialize_attendee(OWNER)

    def test_concurrent_claims_never_lose_an_increment(self):
        processor = ClaimProcessor(store=BarrierStore(threading.Barrier(2)))
        successes = []
        failures = []

        def claim(event_id):
            try:
                successes.append(processor.process_claim(OWNER, event_id, CREDENTIAL))
            except Exception as exc:  # noqa: BLE001
                failures.append(exc)
            finally:
                connection.close()

        threads = [threading.Thread(target=claim, args=(f"evt{index}",)) for index in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        self.assertTrue(successes)
        for exc in failures:
            self.assertIsInstance(exc, StaleRecord)
        record = AttendeeRecord.objects.get(owner=OWNER)
        self.assertEqual(record.attendance_count, len(successes))
        self.assertEqual(record.version, len(successes))

    def test_delivery_error_after_commit_does_not_fail_the_claim(self):
        with patch.object(ClaimEventEmitter, "deliver", side_effect=RuntimeError("bookkeeping failed")):
            recorded = ClaimProcessor().process_claim(OWNER, "evt1", CREDENTIAL)

        self.assertEqual(recorded.attendance_count, 1)
        self.assertEqual(AttendeeRecord.objects.get(owner=OWNER).attendance_count, 1)
        self.assertIsNone(ClaimNotification.objects.get().delivered_at)


User = get_user_model()


class AttendeeApiTests(APITestCase):
    def setUp(self):
        self.user = User.objects.create_user(username='door', password='pwd12345')
        self.client.force_authenticate(self.user)

    def init(self, owner=OWNER):
        return self.client.post('/api/attendees/', {'owner': owner}, format='json')

    def claim(self, event_id, owner=OWNER, credential=CREDENTIAL):
        return self.client.post(
            f'/api/attendees/{owner}/claims/',
            {'event_id': event_id, 'credential': credential},
            format='json',
        )

    def test_requires_authentication(self):
        self.client.force_authenticate(None)

        response = self.init()

        self.assertEqual(response.status_code, status.HTTP_401_UNAUTHORIZED)
        self.assertEqual(AttendeeRecord.objects.count(), 0)

    def test_initialize_attendee(self):
        response = self.init()

        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.data['owner'], OWNER)
        self.assertEqual(response.data['attendance_count'], 0)
        self.assertEqual(response.data['tier'], 1)
        self.assertEqual(response.data['last_event_id'], '')
        self.assertEqual(response.data['last_timestamp'], 0)

    def test_initialize_rejects_reserved_owner(self):
        response = self.init('leaderboard')

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertIn('owner', response.data)
        self.assertEqual(AttendeeRecord.objects.count(), 0)

    def test_initialize_twice_returns_conflict(self):
        self.init()
        response = self.init()

        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(response.data['code'], 'IdentityAlreadyInitialized')
        self.assertEqual(AttendeeRecord.objects.count(), 1)

    def test_claim_returns_notification_payload(self):
        self.init()

        response = self.claim('ROOF_SESSION_001')

        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.data['owner'], OWNER)
        self.assertEqual(response.data['eventId'], 'ROOF_SESSION_001')
        self.assertEqual(response.data['newTier'], 1)
        self.assertEqual(response.data['totalAttendance'], 1)
        self.assertGreater(response.data['timestamp'], 0)

    def test_repeated_claim_returns_already_claimed(self):
        self.init()
        self.claim('ROOF_SESSION_001')

        response = self.claim('ROOF_SESSION_001')

        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(response.data['code'], 'AlreadyClaimed')
        self.assertEqual(AttendeeRecord.objects.get(owner=OWNER).attendance_count, 1)

    def test_claim_error_codes(self):
        response = self.claim('evt1', owner='nobody')
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)
        self.assertEqual(response.data['code'], 'IdentityNotFound')

        self.init()

        response = self.claim('evt1', credential='abcd')
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)
        self.assertEqual(response.data['code'], 'InvalidSignature')

        response = self.claim('')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data['code'], 'InvalidEventId')

        self.assertEqual(AttendeeRecord.objects.get(owner=OWNER).attendance_count, 0)

    def test_retrieve_attendee(self):
        self.init()
        self.claim('evt1')
        self.claim('evt2')

        response = self.client.get(f'/api/attendees/{OWNER}/')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['attendance_count'], 2)
        self.assertEqual(response.data['tier'], 2)
        self.assertEqual(response.data['last_event_id'], 'evt2')

    def test_leaderboard_ranks_by_attendance(self):
        for owner, events in (('alice', 3), ('bob', 5), ('carol', 1)):
            self.init(owner)
            for index in range(events):
                self.claim(f'evt{index}', owner=owner)

        response = self.client.get('/api/attendees/leaderboard/?limit=2')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(len(response.data), 2)
        self.assertEqual(response.data[0]['owner'], 'bob')
        self.assertEqual(response.data[0]['rank'], 1)
        self.assertEqual(response.data[0]['tier'], 5)
        self.assertEqual(response.data[1]['owner'], 'alice')
        self.assertEqual(response.data[1]['rank'], 2)

    def test_leaderboard_rejects_invalid_limit(self):
        response = self.client.get('/api/attendees/leaderboard/?limit=abc')

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
