from datetime import timedelta
from unittest import mock

from django.utils import timezone
from rest_framework.test import APITestCase

from clinic.models import AuditEvent, User, Visit
from clinic.services import auto_sync, google_calendar
from clinic.tests.factories import link_assistant, make_patient, make_user, make_visit


class VisitApiTests(APITestCase):
    def setUp(self) -> None:
        self.diet = make_user()
        self.other = make_user()
        self.patient = make_patient(self.diet)
        self.foreign = make_patient(self.other)
        self.client.force_authenticate(user=self.diet)

    def test_create_defaults_dietitian_to_requester(self):
        when = (timezone.now() + timedelta(days=2)).replace(microsecond=0)
        r = self.client.post('/api/visits', {
            'patient_id': self.patient.id, 'visit_date': when.isoformat(), 'visit_type': 'Bilan',
        }, format='json')
        self.assertEqual(r.status_code, 201, r.data)
        self.assertEqual(r.data['data']['dietitianId'], self.diet.id)
        self.assertEqual(r.data['data']['durationMinutes'], 60)
        self.assertEqual(r.data['data']['status'], 'SCHEDULED')
        self.assertEqual(r.data['data']['syncStatus'], Visit.SYNC_PENDING)
        self.assertTrue(AuditEvent.objects.filter(action='visit_create').exists())

    def test_cannot_create_for_foreign_patient(self):
        r = self.client.post('/api/visits', {
            'patient_id': self.foreign.id, 'visit_date': timezone.now().isoformat(),
        }, format='json')
        self.assertEqual(r.status_code, 403)
        self.assertEqual(r.data['error']['code'], 'NOT_ASSIGNED_PATIENT')

    def test_cannot_schedule_for_other_dietitian(self):
        r = self.client.post('/api/visits', {
            'patient_id': self.patient.id, 'visit_date': timezone.now().isoformat(), 'dietitian_id': self.other.id,
        }, format='json')
        self.assertEqual(r.status_code, 403)
        self.assertEqual(r.data['error']['code'], 'FORBIDDEN_DIETITIAN')

    def test_duration_bounds(self):
        r = self.client.post('/api/visits', {
            'patient_id': self.patient.id, 'visit_date': timezone.now().isoformat(), 'duration_minutes': 1,
        }, format='json')
        self.assertEqual(r.status_code, 400)

    def test_list_is_scoped_and_filterable(self):
        mine = make_visit(self.patient)
        done = make_visit(self.patient, days=-3, status=Visit.STATUS_COMPLETED)
        make_visit(self.foreign)
        r = self.client.get('/api/visits')
        self.assertEqual({v['id'] for v in r.data['data']}, {mine.id, done.id})
        r = self.client.get('/api/visits?status=completed')
        self.assertEqual([v['id'] for v in r.data['data']], [done.id])

    def test_list_range_must_be_ordered(self):
        r = self.client.get('/api/visits?start=2026-02-01T00:00:00Z&end=2026-01-01T00:00:00Z')
        self.assertEqual(r.status_code, 400)

    def test_update_marks_synced_visit_pending(self):
        visit = make_visit(self.patient, google_event_id='evt-1', sync_status=Visit.SYNC_SYNCED)
        r = self.client.patch(f'/api/visits/{visit.id}', {'notes': 'RAS'}, format='json')
        self.assertEqual(r.status_code, 200, r.data)
        visit.refresh_from_db()
        self.assertEqual(visit.notes, 'RAS')
        self.assertEqual(visit.sync_status, Visit.SYNC_PENDING)

    def test_delete_cancels_visit(self):
        visit = make_visit(self.patient)
        r = self.client.delete(f'/api/visits/{visit.id}')
        self.assertEqual(r.status_code, 200)
        self.assertEqual(r.data['data']['status'], 'CANCELLED')
        self.assertTrue(Visit.objects.filter(id=visit.id).exists())

    def test_foreign_visit_detail_is_forbidden(self):
        visit = make_visit(self.foreign)
        r = self.client.get(f'/api/visits/{visit.id}')
        self.assertEqual(r.status_code, 403)

    def test_missing_visit_is_404(self):
        r = self.client.get('/api/visits/424242')
        self.assertEqual(r.status_code, 404)
        self.assertEqual(r.data['error']['code'], 'VISIT_NOT_FOUND')

    def test_agenda_defaults_to_coming_week(self):
        soon = make_visit(self.patient, days=2)
        make_visit(self.patient, days=20)
        r = self.client.get('/api/visits/agenda')
        self.assertEqual(r.status_code, 200)
        self.assertEqual([v['id'] for v in r.data['data']], [soon.id])
        self.assertIn('start', r.data['range'])


class AssistantVisitTests(APITestCase):
    def test_assistant_schedules_for_linked_dietitian(self):
        diet = make_user()
        assistant = make_user(User.ROLE_ASSISTANT)
        link_assistant(assistant, diet)
        patient = make_patient(diet)
        self.client.force_authenticate(user=assistant)
        r = self.client.post('/api/visits', {
            'patient_id': patient.id, 'visit_date': timezone.now().isoformat(),
        }, format='json')
        self.assertEqual(r.status_code, 201, r.data)
        # falls back to the patient's dietitian
        self.assertEqual(r.data['data']['dietitianId'], diet.id)


class VisitCalendarSyncTests(APITestCase):
    def setUp(self) -> None:
        self.diet = make_user(google_access_token='token', google_calendar_sync_enabled=True)
        self.patient = make_patient(self.diet)
        self.client.force_authenticate(user=self.diet)

    def _create(self):
        return self.client.post('/api/visits', {
            'patient_id': self.patient.id, 'visit_date': (timezone.now() + timedelta(days=1)).isoformat(),
        }, format='json')

    def test_changes_trigger_auto_sync_after_commit(self):
        with mock.patch.object(auto_sync, 'auto_sync_after_visit_change') as hook:
            with self.captureOnCommitCallbacks(execute=True):
                r = self._create()
            self.assertEqual(r.status_code, 201, r.data)
            visit = Visit.objects.get(id=r.data['data']['id'])
            hook.assert_called_once_with(self.diet, visit, 'create')

            with self.captureOnCommitCallbacks(execute=True):
                self.client.patch(f'/api/visits/{visit.id}', {'notes': 'RAS'}, format='json')
            self.assertEqual(hook.call_args[0][2], 'update')

    def test_failing_sync_does_not_fail_the_request(self):
        with mock.patch.object(google_calendar, 'sync_visits_to_calendar', side_effect=RuntimeError('boom')) as push:
            with self.captureOnCommitCallbacks(execute=True):
                r = self._create()
            self.assertEqual(r.status_code, 201, r.data)
            with self.captureOnCommitCallbacks(execute=True):
                r = self.client.patch(f'/api/visits/{r.data["data"]["id"]}', {'notes': 'RAS'}, format='json')
            self.assertEqual(r.status_code, 200, r.data)
        # the second change falls inside the cooldown
        self.assertEqual(push.call_count, 1)
        self.assertEqual(Visit.objects.get().notes, 'RAS')
