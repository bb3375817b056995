"""
Email campaign lifecycle: drafting, audience preparation, scheduling,
sending and statistics.  Delivery itself lives in
:mod:`clinic.services.campaign_sender`.
"""
import logging
from typing import Any, Dict, Optional

from django.conf import settings
from django.db import transaction
from django.db.models import Count, Q
from django.db.models.functions import TruncDate
from django.utils import timezone

from clinic.exceptions import ApiError, ForbiddenError, NotFoundError
from clinic.models import EmailCampaign, EmailCampaignRecipient, User
from clinic.services import audience, campaign_sender
from clinic.services.audit import log_action
from clinic.services.scope import owner_scope_q, scoped_dietitian_ids

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = ('name', 'subject', 'body_html', 'body_text', 'campaign_type')


def scoped_campaigns(user):
    return (EmailCampaign.objects.select_related('created_by', 'sender')
            .filter(is_active=True).filter(owner_scope_q(user)))


def get_campaign_for_user(user, campaign_id) -> EmailCampaign:
    campaign = scoped_campaigns(user).filter(id=campaign_id).first()
    if not campaign:
        raise NotFoundError('Campaign not found', code='CAMPAIGN_NOT_FOUND')
    return campaign


def _audience_owner(campaign: EmailCampaign, user=None):
    return campaign.created_by or user


def _resolve_sender(user, sender_id):
    if sender_id in (None, ''):
        return None
    sender = User.objects.filter(id=sender_id, is_active=True,
                                 role__in=[User.ROLE_DIETITIAN, User.ROLE_ADMIN]).first()
    if not sender:
        raise ApiError('Sender not found', code='DIETITIAN_NOT_FOUND')
    ids = scoped_dietitian_ids(user)
    if ids is not None and sender.id not in ids:
        raise ForbiddenError('Cannot send on behalf of this dietitian', code='FORBIDDEN_DIETITIAN')
    return sender


def create_campaign(user, data: Dict[str, Any]) -> EmailCampaign:
    criteria = audience.validate_criteria(data.get('target_audience'))
    campaign = EmailCampaign(
        name=data['name'],
        subject=data['subject'],
        body_html=data.get('body_html') or '',
        body_text=data.get('body_text') or '',
        campaign_type=data.get('campaign_type') or 'newsletter',
        target_audience=criteria,
        created_by=user,
        sender=_resolve_sender(user, data.get('sender_id')),
    )
    campaign.recipient_count = audience.count_audience(criteria, user)
    campaign.save()
    log_action(user=user, action='campaign_create', object_type='campaign', object_id=campaign.id,
               detail={'name': campaign.name})
    return campaign


def update_campaign(user, campaign: EmailCampaign, data: Dict[str, Any]) -> EmailCampaign:
    if not campaign.can_edit():
        raise ApiError(f'Campaign cannot be edited in status {campaign.status}', code='CAMPAIGN_NOT_EDITABLE')
    for key in EDITABLE_FIELDS:
        if key in data and data[key] is not None:
            setattr(campaign, key, data[key])
    if 'sender_id' in data:
        campaign.sender = _resolve_sender(user, data['sender_id'])
    if 'target_audience' in data:
        campaign.target_audience = audience.validate_criteria(data['target_audience'])
        campaign.recipient_count = audience.count_audience(campaign.target_audience, _audience_owner(campaign, user))
    campaign.save()
    log_action(user=user, action='campaign_update', object_type='campaign', object_id=campaign.id,
               detail={'fields': sorted(data.keys())})
    return campaign


def delete_campaign(user, campaign: EmailCampaign) -> None:
    if campaign.status == EmailCampaign.STATUS_SENDING:
        raise ApiError('Cannot delete a campaign that is being sent', code='CAMPAIGN_SENDING')
    campaign.is_active = False
    campaign.save(update_fields=['is_active', 'updated_at'])
    log_action(user=user, action='campaign_delete', object_type='campaign', object_id=campaign.id)


def duplicate_campaign(user, campaign: EmailCampaign) -> EmailCampaign:
    copy = EmailCampaign.objects.create(
        name=f'{campaign.name} (copie)'[:200],
        subject=campaign.subject,
        body_html=campaign.body_html,
        body_text=campaign.body_text,
        campaign_type=campaign.campaign_type,
        target_audience=campaign.target_audience,
        recipient_count=campaign.recipient_count,
        created_by=user,
        sender=campaign.sender,
    )
    log_action(user=user, action='campaign_duplicate', object_type='campaign', object_id=copy.id,
               detail={'sourceId': campaign.id})
    return copy


def preview_campaign_audience(campaign: EmailCampaign, user=None) -> Dict[str, Any]:
    return audience.preview_audience(campaign.target_audience, _audience_owner(campaign, user))


@transaction.atomic
def prepare_recipients(campaign: EmailCampaign, user=None) -> int:
    """Rebuild the pending recipient rows from the campaign audience."""
    EmailCampaignRecipient.objects.filter(campaign=campaign, status=EmailCampaignRecipient.STATUS_PENDING).delete()
    patients = audience.audience_queryset(campaign.target_audience, _audience_owner(campaign, user))
    patients = list(patients.values_list('id', 'email')[:settings.CAMPAIGN_MAX_RECIPIENTS])
    if not patients:
        raise ApiError('No recipients match the campaign audience', code='NO_RECIPIENTS')
    EmailCampaignRecipient.objects.bulk_create(
        [EmailCampaignRecipient(campaign=campaign, patient_id=pid, email=email) for pid, email in patients],
        ignore_conflicts=True,
    )
    count = EmailCampaignRecipient.objects.filter(campaign=campaign).count()
    campaign.recipient_count = count
    campaign.save(update_fields=['recipient_count', 'updated_at'])
    logger.info('Campaign %s: prepared %s recipients', campaign.id, count)
    return count


def schedule_campaign(user, campaign: EmailCampaign, scheduled_at) -> EmailCampaign:
    if campaign.status not in (EmailCampaign.STATUS_DRAFT, EmailCampaign.STATUS_SCHEDULED):
        raise ApiError(f'Campaign cannot be scheduled in status {campaign.status}', code='CAMPAIGN_NOT_SCHEDULABLE')
    if scheduled_at is None or scheduled_at <= timezone.now():
        raise ApiError('Scheduled time must be in the future', code='INVALID_SCHEDULE')
    with transaction.atomic():
        prepare_recipients(campaign, user)
        campaign.status = EmailCampaign.STATUS_SCHEDULED
        campaign.scheduled_at = scheduled_at
        campaign.save(update_fields=['status', 'scheduled_at', 'updated_at'])
    log_action(user=user, action='campaign_schedule', object_type='campaign', object_id=campaign.id,
               detail={'scheduledAt': scheduled_at.isoformat()})
    return campaign


def send_campaign_now(user, campaign: EmailCampaign) -> EmailCampaign:
    if not campaign.can_send():
        raise ApiError(f'Campaign cannot be sent in status {campaign.status}', code='CAMPAIGN_NOT_SENDABLE')
    with transaction.atomic():
        prepare_recipients(campaign, user)
        campaign.status = EmailCampaign.STATUS_SENDING
        campaign.sent_at = timezone.now()
        campaign.save(update_fields=['status', 'sent_at', 'updated_at'])
        campaign_sender.dispatch(campaign.id)
    log_action(user=user, action='campaign_send', object_type='campaign', object_id=campaign.id,
               detail={'recipients': campaign.recipient_count})
    return campaign


def cancel_campaign(user, campaign: EmailCampaign) -> EmailCampaign:
    if not campaign.can_cancel():
        raise ApiError(f'Campaign cannot be cancelled in status {campaign.status}', code='CAMPAIGN_NOT_CANCELLABLE')
    campaign.status = EmailCampaign.STATUS_CANCELLED
    campaign.save(update_fields=['status', 'updated_at'])
    log_action(user=user, action='campaign_cancel', object_type='campaign', object_id=campaign.id)
    return campaign


def _rate(part: int, whole: int) -> float:
    if not whole:
        return 0.0
    return round(part * 100.0 / whole, 1)


def recipient_stats(campaign: EmailCampaign) -> Dict[str, Any]:
    qs = EmailCampaignRecipient.objects.filter(campaign=campaign)
    counts = dict(qs.order_by().values_list('status').annotate(n=Count('id')))
    sent = counts.get(EmailCampaignRecipient.STATUS_SENT, 0)
    opened = qs.filter(opened_at__isnull=False).count()
    clicked = qs.filter(clicked_at__isnull=False).count()
    return {
        'total': sum(counts.values()),
        'pending': counts.get(EmailCampaignRecipient.STATUS_PENDING, 0),
        'sent': sent,
        'failed': counts.get(EmailCampaignRecipient.STATUS_FAILED, 0),
        'bounced': counts.get(EmailCampaignRecipient.STATUS_BOUNCED, 0),
        'opened': opened,
        'clicked': clicked,
        'openRate': _rate(opened, sent),
        'clickRate': _rate(clicked, sent),
    }


def campaign_stats(campaign: EmailCampaign) -> Dict[str, Any]:
    daily = (EmailCampaignRecipient.objects
             .filter(campaign=campaign, sent_at__isnull=False)
             .annotate(day=TruncDate('sent_at'))
             .order_by().values('day')
             .annotate(sent=Count('id'), opened=Count('opened_at'), clicked=Count('clicked_at'))
             .order_by('day'))
    return {
        'campaign': {
            'id': campaign.id,
            'name': campaign.name,
            'status': campaign.status,
            'sentAt': campaign.sent_at.isoformat() if campaign.sent_at else None,
        },
        'stats': recipient_stats(campaign),
        'dailyStats': [
            {'date': row['day'].isoformat(), 'sent': row['sent'], 'opened': row['opened'], 'clicked': row['clicked']}
            for row in daily
        ],
    }


def list_recipients(campaign: EmailCampaign, *, status: Optional[str] = None, search: Optional[str] = None,
                    limit: int = 50, offset: int = 0):
    qs = EmailCampaignRecipient.objects.select_related('patient').filter(campaign=campaign)
    if status:
        qs = qs.filter(status=status)
    if search:
        qs = qs.filter(Q(email__icontains=search) | Q(patient__first_name__icontains=search)
                       | Q(patient__last_name__icontains=search))
    total = qs.count()
    limit = min(200, max(1, int(limit or 50)))
    offset = max(0, int(offset or 0))
    return qs.order_by('id')[offset:offset + limit], total
