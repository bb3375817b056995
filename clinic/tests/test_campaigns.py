"""
Audience segmentation and campaign lifecycle tests.
"""
from datetime import datetime, timedelta

import pytest
from django.core import mail
from django.utils import timezone
from rest_framework.test import APITestCase

from clinic.exceptions import ApiError
from clinic.models import EmailCampaign, EmailCampaignRecipient, Patient, User, Visit
from clinic.services import audience, campaign_sender, campaigns
from clinic.tests.factories import make_campaign, make_patient, make_user, make_visit

pytestmark = pytest.mark.django_db


def _criteria(*conditions, logic='AND'):
    return {'logic': logic, 'conditions': [
        {'field': f, 'operator': o, 'value': v} for f, o, v in conditions
    ]}


def _audience_ids(criteria, owner=None):
    return set(audience.audience_queryset(criteria, owner).values_list('id', flat=True))


class TestAudience:
    def test_default_audience_is_active_patients_with_consent_and_email(self):
        ok = make_patient()
        make_patient(is_active=False)
        make_patient(email=None)
        make_patient(email='')
        make_patient(appointment_reminders_enabled=False)
        assert _audience_ids({}) == {ok.id}

    def test_tag_operators(self):
        both = make_patient(tags=['diabete', 'sport'])
        one = make_patient(tags=['diabete'])
        none = make_patient()
        assert _audience_ids(_criteria(('tags', 'contains_any', ['diabete', 'sport']))) == {both.id, one.id}
        assert _audience_ids(_criteria(('tags', 'contains_all', ['diabete', 'sport']))) == {both.id}
        assert _audience_ids(_criteria(('tags', 'not_contains', 'sport'))) == {one.id, none.id}

    def test_or_logic(self):
        en = make_patient(language_preference='en')
        male = make_patient(gender='MALE')
        make_patient(gender='FEMALE')
        criteria = _criteria(('language_preference', 'equals', 'en'), ('gender', 'equals', 'MALE'), logic='or')
        assert _audience_ids(criteria) == {en.id, male.id}

    def test_visit_count_and_last_visit(self):
        regular = make_patient()
        for days in (-30, -20, -10):
            make_visit(regular, days=days, status=Visit.STATUS_COMPLETED)
        occasional = make_patient()
        make_visit(occasional, days=-400, status=Visit.STATUS_COMPLETED)
        make_visit(occasional, days=-5, status=Visit.STATUS_CANCELLED)
        assert _audience_ids(_criteria(('visit_count', 'greater_than', 2))) == {regular.id}
        assert _audience_ids(_criteria(('visit_count', 'between', [1, 1]))) == {occasional.id}
        cutoff = (timezone.now() - timedelta(days=100)).date().isoformat()
        assert _audience_ids(_criteria(('last_visit_date', 'before', cutoff))) == {occasional.id}

    def test_date_between_includes_end_day(self):
        p = make_patient()
        Patient.objects.filter(id=p.id).update(created_at=timezone.make_aware(datetime(2026, 3, 31, 18, 0)))
        assert _audience_ids(_criteria(('created_at', 'between', ['2026-03-01', '2026-03-31']))) == {p.id}
        assert _audience_ids(_criteria(('created_at', 'between', ['2026-03-01', '2026-03-30']))) == set()

    def test_linked_dietitian(self):
        d1, d2 = make_user(), make_user()
        p1 = make_patient(d1)
        make_patient(d2)
        assert _audience_ids(_criteria(('linked_dietitian_id', 'equals', d1.id))) == {p1.id}

    def test_audience_is_scoped_to_owner(self):
        d1, d2 = make_user(), make_user()
        mine = make_patient(d1)
        make_patient(d2)
        assert _audience_ids({}, owner=d1) == {mine.id}
        assert len(_audience_ids({}, owner=make_user(User.ROLE_ADMIN))) == 2

    @pytest.mark.parametrize('criteria', [
        _criteria(('password', 'equals', 'x')),
        _criteria(('tags', 'greater_than', 'x')),
        _criteria(('is_active', 'equals', 'perhaps')),
        _criteria(('visit_count', 'between', [1])),
        _criteria(('visit_count', 'equals', 'many')),
        _criteria(('created_at', 'after', 'yesterday')),
        {'logic': 'XOR', 'conditions': []},
        {'conditions': 'tags'},
    ])
    def test_invalid_criteria(self, criteria):
        with pytest.raises(ApiError) as exc:
            audience.validate_criteria(criteria)
        assert exc.value.error_code == 'INVALID_AUDIENCE'

    def test_preview_and_segment_fields(self):
        d = make_user()
        make_patient(d, first_name='Anna', last_name='Aa', tags=['vip'])
        make_patient(make_user(), tags=['hidden'])
        preview = audience.preview_audience({}, d, sample_size=5)
        assert preview['count'] == 1
        assert preview['sample'][0]['name'] == 'Anna Aa'
        fields = audience.segment_fields(d)
        assert fields['tags'] == ['vip']
        keys = {f['key'] for f in fields['fields']}
        assert {'tags', 'visit_count', 'last_visit_date', 'linked_dietitian_id'} <= keys


class TestLifecycle:
    def test_create_counts_audience(self):
        d = make_user()
        make_patient(d, tags=['a'])
        make_patient(d)
        campaign = campaigns.create_campaign(d, {
            'name': 'Printemps', 'subject': 'Hello', 'body_html': '<p>x</p>',
            'target_audience': _criteria(('tags', 'contains', 'a')),
        })
        assert campaign.recipient_count == 1
        assert campaign.status == EmailCampaign.STATUS_DRAFT
        assert campaign.target_audience['logic'] == 'AND'

    def test_prepare_without_recipients_fails(self):
        d = make_user()
        campaign = make_campaign(d)
        with pytest.raises(ApiError) as exc:
            campaigns.prepare_recipients(campaign, d)
        assert exc.value.error_code == 'NO_RECIPIENTS'

    def test_prepare_respects_recipient_cap(self, settings):
        settings.CAMPAIGN_MAX_RECIPIENTS = 2
        d = make_user()
        for _ in range(3):
            make_patient(d)
        campaign = make_campaign(d)
        assert campaigns.prepare_recipients(campaign, d) == 2

    def test_schedule_requires_future_time(self):
        d = make_user()
        make_patient(d)
        campaign = make_campaign(d)
        with pytest.raises(ApiError) as exc:
            campaigns.schedule_campaign(d, campaign, timezone.now() - timedelta(minutes=1))
        assert exc.value.error_code == 'INVALID_SCHEDULE'
        when = timezone.now() + timedelta(hours=2)
        campaign = campaigns.schedule_campaign(d, campaign, when)
        assert campaign.status == EmailCampaign.STATUS_SCHEDULED
        assert campaign.recipients.count() == 1

    def test_send_now_then_worker_delivers(self):
        d = make_user()
        make_patient(d, first_name='Lina')
        campaign = campaigns.send_campaign_now(d, make_campaign(d))
        assert campaign.status == EmailCampaign.STATUS_SENDING
        assert campaign.recipients.filter(status=EmailCampaignRecipient.STATUS_PENDING).count() == 1
        assert not mail.outbox

        assert campaign_sender.resume_sending_campaigns() == [campaign.id]
        campaign.refresh_from_db()
        assert campaign.status == EmailCampaign.STATUS_SENT
        assert mail.outbox[0].subject == 'Bonjour Lina'

    def test_send_requires_content(self):
        d = make_user()
        make_patient(d)
        campaign = make_campaign(d, body_html='', body_text='')
        with pytest.raises(ApiError) as exc:
            campaigns.send_campaign_now(d, campaign)
        assert exc.value.error_code == 'CAMPAIGN_NOT_SENDABLE'

    def test_state_guards(self):
        d = make_user()
        draft = make_campaign(d)
        with pytest.raises(ApiError) as exc:
            campaigns.cancel_campaign(d, draft)
        assert exc.value.error_code == 'CAMPAIGN_NOT_CANCELLABLE'

        sending = make_campaign(d, status=EmailCampaign.STATUS_SENDING)
        with pytest.raises(ApiError) as exc:
            campaigns.update_campaign(d, sending, {'name': 'x'})
        assert exc.value.error_code == 'CAMPAIGN_NOT_EDITABLE'
        with pytest.raises(ApiError) as exc:
            campaigns.delete_campaign(d, sending)
        assert exc.value.error_code == 'CAMPAIGN_SENDING'
        assert campaigns.cancel_campaign(d, sending).status == EmailCampaign.STATUS_CANCELLED

    def test_duplicate_and_soft_delete(self):
        d = make_user()
        source = make_campaign(d, status=EmailCampaign.STATUS_SENT)
        copy = campaigns.duplicate_campaign(d, source)
        assert copy.status == EmailCampaign.STATUS_DRAFT
        assert copy.name == 'Newsletter (copie)'
        campaigns.delete_campaign(d, copy)
        with pytest.raises(ApiError):
            campaigns.get_campaign_for_user(d, copy.id)

    def test_campaigns_are_scoped_to_creator(self):
        d1, d2 = make_user(), make_user()
        campaign = make_campaign(d2)
        with pytest.raises(ApiError) as exc:
            campaigns.get_campaign_for_user(d1, campaign.id)
        assert exc.value.status_code == 404
        assert campaigns.get_campaign_for_user(make_user(User.ROLE_ADMIN), campaign.id) == campaign

    def test_recipient_stats_and_listing(self):
        d = make_user()
        campaign = make_campaign(d, status=EmailCampaign.STATUS_SENT)
        now = timezone.now()
        for i, status in enumerate(['sent', 'sent', 'sent', 'sent', 'failed']):
            p = make_patient(d, last_name=f'Stat{i}')
            EmailCampaignRecipient.objects.create(
                campaign=campaign, patient=p, email=p.email, status=status,
                sent_at=now if status == 'sent' else None,
                opened_at=now if i < 2 else None, clicked_at=now if i == 0 else None,
            )
        stats = campaigns.recipient_stats(campaign)
        assert stats['total'] == 5
        assert stats['sent'] == 4
        assert stats['failed'] == 1
        assert stats['openRate'] == 50.0
        assert stats['clickRate'] == 25.0

        daily = campaigns.campaign_stats(campaign)['dailyStats']
        assert len(daily) == 1
        assert (daily[0]['sent'], daily[0]['opened'], daily[0]['clicked']) == (4, 2, 1)

        page, total = campaigns.list_recipients(campaign, status='failed')
        assert total == 1
        page, total = campaigns.list_recipients(campaign, search='stat1', limit=10)
        assert [r.patient.last_name for r in page] == ['Stat1']


class CampaignApiTests(APITestCase):
    def setUp(self) -> None:
        self.diet = make_user()
        make_patient(self.diet, tags=['vip'])
        self.client.force_authenticate(user=self.diet)

    def test_create_send_and_stats(self):
        r = self.client.post('/api/campaigns', {
            'name': 'VIP', 'subject': 'Offre', 'body_html': '<p>Bonjour</p>',
            'target_audience': _criteria(('tags', 'contains', ['vip'])),
        }, format='json')
        self.assertEqual(r.status_code, 201, r.data)
        campaign_id = r.data['data']['id']
        self.assertEqual(r.data['data']['recipientCount'], 1)
        self.assertTrue(r.data['data']['canSend'])

        r = self.client.post(f'/api/campaigns/{campaign_id}/send')
        self.assertEqual(r.status_code, 200, r.data)
        self.assertEqual(r.data['data']['status'], 'sending')

        r = self.client.get(f'/api/campaigns/{campaign_id}/stats')
        self.assertEqual(r.data['data']['stats']['pending'], 1)

    def test_invalid_audience_is_400(self):
        r = self.client.post('/api/campaigns', {
            'name': 'Bad', 'subject': 'x', 'target_audience': _criteria(('nope', 'equals', 1)),
        }, format='json')
        self.assertEqual(r.status_code, 400)
        self.assertEqual(r.data['error']['code'], 'INVALID_AUDIENCE')

    def test_preview_audience(self):
        r = self.client.post('/api/campaigns/preview-audience', {'criteria': {}}, format='json')
        self.assertEqual(r.status_code, 200, r.data)
        self.assertEqual(r.data['data']['count'], 1)

    def test_schedule_endpoint(self):
        campaign = make_campaign(self.diet)
        when = (timezone.now() + timedelta(days=1)).isoformat()
        r = self.client.post(f'/api/campaigns/{campaign.id}/schedule', {'scheduled_at': when}, format='json')
        self.assertEqual(r.status_code, 200, r.data)
        self.assertEqual(r.data['data']['status'], 'scheduled')
        r = self.client.get(f'/api/campaigns/{campaign.id}/recipients')
        self.assertEqual(r.data['pagination']['total'], 1)
