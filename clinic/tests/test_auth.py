from datetime import date, timedelta
from io import StringIO
from types import SimpleNamespace

import pytest
from django.core.management import call_command
from django.utils import timezone
from rest_framework.test import APIClient

from clinic.models import AssistantLink, EmailCampaign, EmailCampaignRecipient, EmailTemplate, Invoice, User, Visit
from clinic.permissions import IsAdminRole, IsPatientRole, IsStaffRole
from clinic.services import messaging
from clinic.tests.factories import make_campaign, make_invoice, make_patient, make_user, make_visit

pytestmark = pytest.mark.django_db

PASSWORD = 'P@ssw0rd-123'


def login(client, username, password=PASSWORD, **extra):
    return client.post('/api/auth/login', {'username': username, 'password': password, **extra}, format='json')


def test_login_returns_jwt_and_legacy_token():
    u = make_user()
    r = login(APIClient(), u.username)
    assert r.status_code == 200
    assert r.data['jwt_access'] and r.data['jwt_refresh'] and r.data['token']
    assert r.data['user']['id'] == u.id


def test_no_role_bypass_in_login():
    u = make_user(User.ROLE_ASSISTANT)
    r = login(APIClient(), u.username, role='ADMIN')
    assert r.status_code == 200
    assert r.data['role'] == User.ROLE_ASSISTANT
    u.refresh_from_db()
    assert u.role == User.ROLE_ASSISTANT


def test_invalid_credentials():
    u = make_user()
    r = login(APIClient(), u.username, 'wrong')
    assert r.status_code == 401
    assert r.data['error']['code'] == 'INVALID_CREDENTIALS'
    r = login(APIClient(), '', 'x')
    assert r.status_code == 400


def test_both_token_kinds_authenticate():
    u = make_user(User.ROLE_ASSISTANT)
    data = login(APIClient(), u.username).data
    for header in (f'Token {data["token"]}', f'Bearer {data["jwt_access"]}'):
        client = APIClient()
        client.credentials(HTTP_AUTHORIZATION=header)
        r = client.get('/api/auth/me')
        assert r.status_code == 200
        assert r.data['data']['username'] == u.username
        assert r.data['data']['dietitianIds'] == []


def test_refresh_then_logout_blacklists():
    u = make_user()
    client = APIClient()
    data = login(client, u.username).data
    r = client.post('/api/auth/refresh', {'refresh': data['jwt_refresh']}, format='json')
    assert r.status_code == 200
    assert r.data['jwt_access']

    client.credentials(HTTP_AUTHORIZATION=f'Bearer {data["jwt_access"]}')
    r = client.post('/api/auth/logout', {'refresh': data['jwt_refresh']}, format='json')
    assert r.data == {'ok': True, 'blacklisted': 1}
    r = APIClient().post('/api/auth/refresh', {'refresh': data['jwt_refresh']}, format='json')
    assert r.status_code == 401


def test_change_password():
    u = make_user()
    client = APIClient()
    client.force_authenticate(user=u)
    r = client.post('/api/auth/change-password', {'old_password': 'nope', 'new_password': 'Xq7!long-enough'},
                    format='json')
    assert r.data['error']['code'] == 'INVALID_PASSWORD'
    r = client.post('/api/auth/change-password', {'old_password': PASSWORD, 'new_password': 'password'},
                    format='json')
    assert r.data['error']['code'] == 'WEAK_PASSWORD'
    r = client.post('/api/auth/change-password', {'old_password': PASSWORD, 'new_password': 'Xq7!long-enough'},
                    format='json')
    assert r.status_code == 200
    assert login(APIClient(), u.username, 'Xq7!long-enough').status_code == 200


def test_patient_account_cannot_use_staff_endpoints():
    portal = make_user(User.ROLE_PATIENT)
    patient = make_patient(make_user(), user=portal)
    client = APIClient()
    client.force_authenticate(user=portal)
    assert client.get('/api/auth/me').data['data']['patientId'] == patient.id
    for path in ('/api/dashboard', '/api/patients', '/api/invoices', '/api/campaigns'):
        assert client.get(path).status_code == 403, path


class TestUserAdmin:
    def test_only_admin_manages_users(self):
        client = APIClient()
        client.force_authenticate(user=make_user())
        assert client.get('/api/users').status_code == 403

        client.force_authenticate(user=make_user(User.ROLE_ADMIN))
        r = client.post('/api/users', {'username': 'newbie', 'password': 'Xq7!long-enough',
                                       'role': 'ASSISTANT'}, format='json')
        assert r.status_code == 201
        assert r.data['data']['role'] == User.ROLE_ASSISTANT
        r = client.post('/api/users', {'username': 'newbie', 'password': 'Xq7!long-enough'}, format='json')
        assert r.status_code == 409
        r = client.get('/api/users?role=assistant')
        assert [u['username'] for u in r.data['data']] == ['newbie']

    def test_admin_cannot_demote_self(self):
        admin = make_user(User.ROLE_ADMIN)
        client = APIClient()
        client.force_authenticate(user=admin)
        r = client.patch(f'/api/users/{admin.id}', {'role': 'DIETITIAN'}, format='json')
        assert r.data['error']['code'] == 'SELF_UPDATE_FORBIDDEN'
        other = make_user()
        r = client.patch(f'/api/users/{other.id}', {'is_active': False}, format='json')
        assert r.data['data']['isActive'] is False

    def test_assistant_links(self):
        client = APIClient()
        client.force_authenticate(user=make_user(User.ROLE_ADMIN))
        assistant, diet = make_user(User.ROLE_ASSISTANT), make_user()
        r = client.post('/api/assistant-links', {'assistant_id': assistant.id, 'dietitian_id': diet.id},
                        format='json')
        assert r.status_code == 201
        link_id = r.data['data']['id']
        r = client.post('/api/assistant-links', {'assistant_id': assistant.id, 'dietitian_id': diet.id},
                        format='json')
        assert r.data['error']['code'] == 'LINK_EXISTS'
        r = client.post('/api/assistant-links', {'assistant_id': diet.id, 'dietitian_id': diet.id}, format='json')
        assert r.data['error']['code'] == 'INVALID_ROLE'
        assert client.get('/api/assistant-links').data['data'][0]['dietitianId'] == diet.id
        assert client.delete(f'/api/assistant-links/{link_id}').status_code == 200
        assert client.delete(f'/api/assistant-links/{link_id}').status_code == 404

    def test_dietitian_picker_is_open_to_staff(self):
        make_user(User.ROLE_ASSISTANT)
        diet = make_user()
        client = APIClient()
        client.force_authenticate(user=make_user(User.ROLE_ASSISTANT))
        ids = [d['id'] for d in client.get('/api/users/dietitians').data['data']]
        assert diet.id in ids
        assert all(d['role'] != User.ROLE_ASSISTANT for d in client.get('/api/users/dietitians').data['data'])


def test_dashboard_counts_are_scoped():
    diet = make_user()
    p = make_patient(diet)
    make_patient(make_user())
    make_visit(p, days=0)
    make_visit(p, days=2)
    make_visit(p, days=3, status=Visit.STATUS_CANCELLED)
    make_invoice(p, 'INV-2026-000001', '60.00')
    make_invoice(p, 'INV-2026-000002', '40.00', status=Invoice.STATUS_OVERDUE)
    make_invoice(p, 'INV-2026-000003', '99.00', status=Invoice.STATUS_PAID)
    portal = make_user(User.ROLE_PATIENT)
    p.user = portal
    p.save(update_fields=['user'])
    conv, _ = messaging.open_conversation(diet, patient_id=p.id)
    messaging.send_message(conv, portal, 'Bonjour')

    client = APIClient()
    client.force_authenticate(user=diet)
    data = client.get('/api/dashboard').data['data']
    assert data['activePatients'] == 1
    assert data['visitsToday'] == 1
    assert data['upcomingVisits'] == 1
    assert data['unpaidInvoices'] == 2
    assert data['unpaidTotal'] == '100.00'
    assert data['overdueInvoices'] == 1
    assert data['unreadMessages'] == 1
    assert 'staff' not in data

    client.force_authenticate(user=make_user(User.ROLE_ADMIN))
    data = client.get('/api/dashboard').data['data']
    assert data['activePatients'] == 2
    assert 'staff' in data


def test_healthz():
    r = APIClient().get('/healthz')
    assert r.status_code == 200
    assert r.json() == {'ok': True, 'db': True}


class TestCommands:
    def test_ensure_test_users_is_idempotent(self):
        call_command('ensure_test_users', stdout=StringIO())
        call_command('ensure_test_users', '--password', 'other-pass', stdout=StringIO())
        assert User.objects.filter(username__in=['admin1', 'dietitian1', 'dietitian2', 'assistant1']).count() == 4
        assert AssistantLink.objects.count() == 1
        assert User.objects.get(username='dietitian1').check_password('other-pass')

    def test_seed_email_templates(self):
        out = StringIO()
        call_command('seed_email_templates', stdout=out)
        assert 'Installed 6' in out.getvalue()
        assert EmailTemplate.objects.filter(is_system=True).count() == 6

    def test_mark_overdue_invoices(self):
        p = make_patient(make_user())
        late = make_invoice(p, 'INV-2026-000001', due_date=date(2026, 1, 10))
        on_time = make_invoice(p, 'INV-2026-000002', due_date=date(2026, 3, 1))
        out = StringIO()
        call_command('mark_overdue_invoices', '--date', '2026-02-01', stdout=out)
        assert 'Marked 1' in out.getvalue()
        late.refresh_from_db()
        on_time.refresh_from_db()
        assert late.status == Invoice.STATUS_OVERDUE
        assert on_time.status == Invoice.STATUS_SENT

    def test_process_campaigns_sends_due_campaigns(self):
        d = make_user()
        campaign = make_campaign(d, status=EmailCampaign.STATUS_SCHEDULED,
                                 scheduled_at=timezone.now() - timedelta(minutes=5))
        p = make_patient(d)
        EmailCampaignRecipient.objects.create(campaign=campaign, patient=p, email=p.email)
        out = StringIO()
        call_command('process_campaigns', stdout=out)
        assert str(campaign.id) in out.getvalue()
        campaign.refresh_from_db()
        assert campaign.status == EmailCampaign.STATUS_SENT


@pytest.mark.parametrize('role, staff, admin, patient', [
    (User.ROLE_ADMIN, True, True, False),
    (User.ROLE_DIETITIAN, True, False, False),
    (User.ROLE_ASSISTANT, True, False, False),
    (User.ROLE_PATIENT, False, False, True),
])
def test_role_permissions(role, staff, admin, patient):
    request = SimpleNamespace(user=make_user(role))
    assert IsStaffRole().has_permission(request, None) is staff
    assert IsAdminRole().has_permission(request, None) is admin
    assert IsPatientRole().has_permission(request, None) is patient


def test_permissions_reject_anonymous():
    request = SimpleNamespace(user=None)
    for permission in (IsStaffRole(), IsAdminRole(), IsPatientRole()):
        assert permission.has_permission(request, None) is False
