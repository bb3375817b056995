import pytest
from django.core import mail
from rest_framework.test import APITestCase

from clinic.exceptions import ApiError
from clinic.models import EmailLog, EmailTemplate, User
from clinic.services import email_templates as service
from clinic.services.email import send_templated_email
from clinic.tests.factories import make_user

pytestmark = pytest.mark.django_db

BODY = '<p>Bonjour {{patient_name}}, votre facture {{invoice_number}}</p>'


def _create(user, **overrides):
    data = {'name': 'Relance douce', 'category': 'invoice', 'subject': 'Facture {{invoice_number}}',
            'body_html': BODY}
    data.update(overrides)
    return service.create_template(user, data)


def test_create_slugifies_name_and_sets_variables():
    tpl = _create(make_user())
    assert tpl.slug == 'relance-douce'
    assert tpl.version == 1
    assert 'invoice_number' in tpl.available_variables


def test_create_rejects_duplicate_slug():
    user = make_user()
    _create(user)
    with pytest.raises(ApiError) as exc:
        _create(user)
    assert exc.value.error_code == 'SLUG_EXISTS'
    assert exc.value.status_code == 409


def test_create_rejects_unknown_variables():
    with pytest.raises(ApiError) as exc:
        _create(make_user(), body_html='<p>{{appointment_date}} {{not_a_var}}</p>')
    assert exc.value.error_code == 'INVALID_VARIABLES'
    assert 'not_a_var' in str(exc.value.detail)


def test_update_bumps_version_only_on_content_change():
    user = make_user()
    tpl = _create(user)
    tpl = service.update_template(user, tpl, {'name': 'Renamed'})
    assert tpl.version == 1
    tpl = service.update_template(user, tpl, {'subject': 'Votre facture {{invoice_number}}'})
    assert tpl.version == 2
    tpl = service.update_template(user, tpl, {'subject': 'Votre facture {{invoice_number}}'})
    assert tpl.version == 2


def test_system_templates_keep_slug_and_cannot_be_deleted():
    service.seed_defaults()
    tpl = EmailTemplate.objects.get(slug='payment_reminder')
    user = make_user(User.ROLE_ADMIN)
    tpl = service.update_template(user, tpl, {'slug': 'renamed', 'name': 'Rappel'})
    assert tpl.slug == 'payment_reminder'
    assert tpl.name == 'Rappel'
    with pytest.raises(ApiError) as exc:
        service.delete_template(user, tpl)
    assert exc.value.error_code == 'SYSTEM_TEMPLATE'


def test_seed_defaults_is_idempotent():
    assert service.seed_defaults() == 6
    assert service.seed_defaults() == 0
    slugs = set(EmailTemplate.objects.values_list('slug', flat=True))
    assert {'invoice_notification', 'payment_reminder', 'appointment_reminder', 'follow_up',
            'document_share', 'general_message'} <= slugs


def test_duplicate_generates_free_slug():
    user = make_user()
    tpl = _create(user)
    first = service.duplicate_template(user, tpl)
    second = service.duplicate_template(user, tpl)
    assert first.slug == 'relance-douce-copy'
    assert second.slug == 'relance-douce-copy-2'
    assert first.is_system is False


def test_soft_delete_hides_template():
    user = make_user()
    tpl = _create(user)
    service.delete_template(user, tpl)
    assert not service.live_templates().filter(id=tpl.id).exists()
    with pytest.raises(ApiError):
        service.get_template(tpl.id)


def test_preview_uses_sample_values_and_overrides():
    tpl = _create(make_user())
    out = service.preview_template(tpl, {'patient_name': 'Zoe'})
    assert 'Zoe' in out['html']
    assert '[invoice_number]' not in out['subject']
    assert out['validation']['valid'] is True
    assert out['validation']['used'] == ['invoice_number', 'patient_name']


def test_send_test_email_prefixes_subject():
    user = make_user()
    tpl = _create(user)
    entry = service.send_test_email(user, tpl)
    assert entry.status == EmailLog.STATUS_SENT
    assert entry.email_type == 'test'
    assert mail.outbox[0].subject.startswith('[TEST] ')
    assert mail.outbox[0].to == [user.email]


def test_send_templated_email_requires_active_template():
    user = make_user()
    tpl = _create(user)
    service.toggle_active(user, tpl)
    with pytest.raises(ApiError) as exc:
        send_templated_email(tpl.slug, 'x@example.com', {})
    assert exc.value.error_code == 'TEMPLATE_NOT_FOUND'


def test_template_stats():
    service.seed_defaults()
    _create(make_user())
    stats = service.template_stats()
    assert stats['total'] == 7
    assert stats['system'] == 6
    assert stats['byCategory']['invoice'] == 2


class EmailTemplateApiTests(APITestCase):
    def setUp(self) -> None:
        self.diet = make_user()
        self.assistant = make_user(User.ROLE_ASSISTANT)

    def test_assistant_can_read_but_not_write(self):
        tpl = _create(self.diet)
        self.client.force_authenticate(user=self.assistant)
        r = self.client.get(f'/api/email-templates/{tpl.id}')
        self.assertEqual(r.status_code, 200)
        self.assertEqual(r.data['data']['bodyHtml'], BODY)
        r = self.client.post(f'/api/email-templates/{tpl.id}/toggle')
        self.assertEqual(r.status_code, 403)
        r = self.client.post('/api/email-templates', {'name': 'x', 'subject': 's', 'body_html': 'b'}, format='json')
        self.assertEqual(r.status_code, 403)

    def test_create_and_list(self):
        self.client.force_authenticate(user=self.diet)
        r = self.client.post('/api/email-templates', {
            'name': 'Suivi', 'category': 'follow_up', 'subject': 'Suivi',
            'body_html': '<p>{{last_visit_date}}</p>',
        }, format='json')
        self.assertEqual(r.status_code, 201, r.data)
        r = self.client.get('/api/email-templates?category=follow_up')
        self.assertEqual([t['slug'] for t in r.data['data']], ['suivi'])

    def test_variables_endpoint_falls_back_to_general(self):
        self.client.force_authenticate(user=self.assistant)
        r = self.client.get('/api/email-templates/variables/unknown')
        self.assertEqual(r.data['data']['category'], 'general')
        self.assertIn('custom_message', r.data['data']['variables'])
