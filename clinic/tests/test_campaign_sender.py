"""
Campaign delivery: personalisation, tracking links, batching and the
public tracking endpoints.
"""
from datetime import timedelta
from urllib.parse import quote

import pytest
from django.core import mail
from django.utils import timezone
from rest_framework.test import APITestCase

from clinic.exceptions import ApiError
from clinic.models import EmailCampaign, EmailCampaignRecipient, EmailLog, Patient
from clinic.services import campaign_sender
from clinic.tests.factories import make_campaign, make_patient, make_user

pytestmark = pytest.mark.django_db

BASE = 'https://practice.example.com'


def _with_recipients(owner, n, **campaign_kwargs):
    campaign = make_campaign(owner, status=EmailCampaign.STATUS_SENDING, **campaign_kwargs)
    for _ in range(n):
        p = make_patient(owner)
        EmailCampaignRecipient.objects.create(campaign=campaign, patient=p, email=p.email)
    return campaign


class TestPersonalisation:
    def test_html_is_personalised_escaped_and_tracked(self):
        d = make_user(first_name='Claire', last_name='Martin')
        p = make_patient(d, first_name='Zoé <b>')
        campaign = make_campaign(
            d, subject='Pour {{ patient_first_name }}',
            body_html='<html><body><p>Bonjour {{patient_first_name}}</p>'
                      '<a href="https://example.org/a?b=1">lien</a><p>{{dietitian_name}}</p></body></html>',
        )
        out = campaign_sender.build_personalized_email(campaign, p)
        assert out['subject'] == 'Pour Zoé <b>'
        assert 'Bonjour Zoé &lt;b&gt;' in out['html']
        assert 'Claire Martin' in out['html']
        pixel = f'{BASE}/api/campaigns/track/open/{campaign.id}/{p.id}'
        assert pixel in out['html']
        assert out['html'].index(pixel) < out['html'].index('</body>')
        click = f'{BASE}/api/campaigns/track/click/{campaign.id}/{p.id}?url={quote("https://example.org/a?b=1", safe="")}'
        assert f'href="{click}"' in out['html']
        assert f'{BASE}/unsubscribe/{p.unsubscribe_token}' in out['html']
        assert out['text'].startswith('Bonjour Zoé')
        assert '<p>' not in out['text']

    def test_existing_unsubscribe_link_is_kept(self):
        d = make_user()
        p = make_patient(d)
        campaign = make_campaign(d, body_html='<p>Hi</p><a href="{{unsubscribe_link}}">stop</a>')
        out = campaign_sender.build_personalized_email(campaign, p)
        link = f'{BASE}/unsubscribe/{p.unsubscribe_token}'
        assert f'href="{link}"' in out['html']
        assert out['html'].count('/unsubscribe/') == 1

    def test_plain_text_body_is_wrapped(self):
        d = make_user()
        p = make_patient(d, first_name='Léo')
        campaign = make_campaign(d, body_html='Bonjour {{patient_first_name}}\n- un\n- deux & trois')
        out = campaign_sender.build_personalized_email(campaign, p)
        assert out['html'].startswith('<!DOCTYPE html>')
        assert 'Bonjour Léo<br>' in out['html']
        assert '&nbsp;&nbsp;- un' in out['html']
        assert 'deux &amp; trois' in out['html']

    def test_sender_overrides_patient_dietitian(self):
        d = make_user(first_name='Anne', last_name='Durand')
        signer = make_user(first_name='Paul', last_name='Roux')
        p = make_patient(d)
        campaign = make_campaign(d, sender=signer, body_html='<p>{{dietitian_name}}</p>')
        assert 'Paul Roux' in campaign_sender.build_personalized_email(campaign, p)['html']


class TestProcessing:
    def test_batches_until_done(self, settings):
        settings.CAMPAIGN_BATCH_SIZE = 2
        d = make_user()
        campaign = _with_recipients(d, 5)
        assert campaign_sender.process_campaign(campaign.id) == 5
        campaign.refresh_from_db()
        assert campaign.status == EmailCampaign.STATUS_SENT
        assert len(mail.outbox) == 5
        assert not campaign.recipients.filter(status=EmailCampaignRecipient.STATUS_PENDING).exists()
        assert EmailLog.objects.filter(email_type='campaign', template_slug=f'campaign_{campaign.id}').count() == 5

    def test_cancel_between_batches_stops_delivery(self, settings, monkeypatch):
        settings.CAMPAIGN_BATCH_SIZE = 2
        d = make_user()
        campaign = _with_recipients(d, 5)
        real_send = campaign_sender.send_email

        def send_then_cancel(*args, **kwargs):
            EmailCampaign.objects.filter(id=campaign.id).update(status=EmailCampaign.STATUS_CANCELLED)
            return real_send(*args, **kwargs)

        monkeypatch.setattr(campaign_sender, 'send_email', send_then_cancel)
        assert campaign_sender.process_campaign(campaign.id) == 2
        campaign.refresh_from_db()
        assert campaign.status == EmailCampaign.STATUS_CANCELLED
        assert campaign.recipients.filter(status=EmailCampaignRecipient.STATUS_PENDING).count() == 3

    def test_cancelled_campaign_is_skipped(self):
        d = make_user()
        campaign = _with_recipients(d, 1)
        EmailCampaign.objects.filter(id=campaign.id).update(status=EmailCampaign.STATUS_CANCELLED)
        assert campaign_sender.process_campaign(campaign.id) == 0
        assert not mail.outbox

    def test_failed_recipient_does_not_stop_batch(self, monkeypatch):
        d = make_user()
        campaign = _with_recipients(d, 3)
        broken = campaign.recipients.order_by('id')[1]
        real_send = campaign_sender.send_email

        def flaky(to, *args, **kwargs):
            if to == broken.email:
                raise RuntimeError('smtp down')
            return real_send(to, *args, **kwargs)

        monkeypatch.setattr(campaign_sender, 'send_email', flaky)
        campaign_sender.process_campaign(campaign.id)
        broken.refresh_from_db()
        assert broken.status == EmailCampaignRecipient.STATUS_FAILED
        assert broken.error_message == 'smtp down'
        assert campaign.recipients.filter(status=EmailCampaignRecipient.STATUS_SENT).count() == 2
        campaign.refresh_from_db()
        assert campaign.status == EmailCampaign.STATUS_SENT

    def test_recipient_without_patient_fails(self):
        d = make_user()
        campaign = _with_recipients(d, 1)
        recipient = campaign.recipients.get()
        Patient.objects.filter(id=recipient.patient_id).delete()
        campaign_sender.process_campaign(campaign.id)
        recipient.refresh_from_db()
        assert recipient.status == EmailCampaignRecipient.STATUS_FAILED
        assert recipient.error_message == 'Patient not found'

    def test_scheduled_campaigns_are_sent_when_due(self):
        d = make_user()
        now = timezone.now()
        due = _with_recipients(d, 1)
        later = _with_recipients(d, 1)
        inactive = _with_recipients(d, 1)
        EmailCampaign.objects.filter(id=due.id).update(status='scheduled', scheduled_at=now - timedelta(minutes=1))
        EmailCampaign.objects.filter(id=later.id).update(status='scheduled', scheduled_at=now + timedelta(hours=1))
        EmailCampaign.objects.filter(id=inactive.id).update(status='scheduled', is_active=False,
                                                             scheduled_at=now - timedelta(minutes=1))
        assert campaign_sender.process_scheduled_campaigns(now) == [due.id]
        statuses = dict(EmailCampaign.objects.values_list('id', 'status'))
        assert statuses[due.id] == EmailCampaign.STATUS_SENT
        assert statuses[later.id] == statuses[inactive.id] == EmailCampaign.STATUS_SCHEDULED
        assert len(mail.outbox) == 1

    def test_inline_dispatch_runs_on_commit(self, settings, django_capture_on_commit_callbacks):
        settings.CAMPAIGN_DISPATCH = 'inline'
        d = make_user()
        campaign = _with_recipients(d, 1)
        with django_capture_on_commit_callbacks(execute=True):
            campaign_sender.dispatch(campaign.id)
        campaign.refresh_from_db()
        assert campaign.status == EmailCampaign.STATUS_SENT


class TestTracking:
    def test_open_is_recorded_once(self):
        d = make_user()
        campaign = _with_recipients(d, 1)
        r = campaign.recipients.get()
        assert campaign_sender.track_open(campaign.id, r.patient_id) == 1
        assert campaign_sender.track_open(campaign.id, r.patient_id) == 0

    def test_click_implies_open(self):
        d = make_user()
        campaign = _with_recipients(d, 1)
        r = campaign.recipients.get()
        campaign_sender.track_click(campaign.id, r.patient_id)
        r.refresh_from_db()
        assert r.clicked_at is not None
        assert r.opened_at is not None

    def test_unsubscribe(self):
        p = make_patient()
        result = campaign_sender.process_unsubscribe(str(p.unsubscribe_token))
        p.refresh_from_db()
        assert p.appointment_reminders_enabled is False
        assert result['patientName'] == f'{p.first_name} {p.last_name}'

    @pytest.mark.parametrize('token', ['not-a-uuid', '00000000-0000-0000-0000-000000000000'])
    def test_unsubscribe_invalid_token(self, token):
        with pytest.raises(ApiError) as exc:
            campaign_sender.process_unsubscribe(token)
        assert exc.value.error_code == 'INVALID_TOKEN'


class TrackingApiTests(APITestCase):
    def setUp(self) -> None:
        self.diet = make_user()
        self.campaign = _with_recipients(self.diet, 1)
        self.recipient = self.campaign.recipients.get()

    def test_pixel_is_a_gif_even_for_unknown_recipient(self):
        for patient_id in (self.recipient.patient_id, 999999):
            r = self.client.get(f'/api/campaigns/track/open/{self.campaign.id}/{patient_id}')
            self.assertEqual(r.status_code, 200)
            self.assertEqual(r['Content-Type'], 'image/gif')
            self.assertIn('no-store', r['Cache-Control'])
        self.recipient.refresh_from_db()
        self.assertIsNotNone(self.recipient.opened_at)

    def test_click_redirects(self):
        target = 'https://example.org/recette?id=3'
        r = self.client.get(f'/api/campaigns/track/click/{self.campaign.id}/{self.recipient.patient_id}',
                            {'url': target})
        self.assertEqual(r.status_code, 302)
        self.assertEqual(r['Location'], target)
        self.recipient.refresh_from_db()
        self.assertIsNotNone(self.recipient.clicked_at)

    def test_click_rejects_non_http_urls(self):
        for bad in ('javascript:alert(1)', '/relative', ''):
            r = self.client.get(f'/api/campaigns/track/click/{self.campaign.id}/{self.recipient.patient_id}',
                                {'url': bad})
            self.assertEqual(r.status_code, 400)
            self.assertEqual(r.data['error']['code'], 'INVALID_URL')

    def test_unsubscribe_endpoint(self):
        patient = self.recipient.patient
        r = self.client.post(f'/api/campaigns/unsubscribe/{patient.unsubscribe_token}')
        self.assertEqual(r.status_code, 200)
        self.assertTrue(r.data['ok'])
        r = self.client.post('/api/campaigns/unsubscribe/garbage')
        self.assertEqual(r.status_code, 404)
