"""
Batched delivery of email campaigns.

``process_campaign`` drains the pending recipients of a campaign in
batches of ``CAMPAIGN_BATCH_SIZE``, pausing ``CAMPAIGN_EMAIL_DELAY``
seconds between emails and ``CAMPAIGN_BATCH_DELAY`` seconds after each
full batch.  The campaign status is re-read before every batch so that a
cancellation stops delivery.  An unexpected error leaves the campaign in
``sending`` so that a later run resumes where it stopped.
"""
import logging
import re
import threading
import time
import uuid
from typing import Dict, List
from urllib.parse import quote

from asgiref.sync import async_to_sync
from channels.layers import get_channel_layer
from django.conf import settings
from django.db import close_old_connections, transaction
from django.utils import timezone
from django.utils.html import escape

from clinic.exceptions import NotFoundError
from clinic.models import EmailCampaign, EmailCampaignRecipient, EmailLog, Patient
from clinic.services.email import send_email

logger = logging.getLogger(__name__)

HTML_TAG_RE = re.compile(r'<[a-z][\s\S]*>', re.IGNORECASE)
LINK_RE = re.compile(r'href="(https?://[^"]+)"', re.IGNORECASE)
BR_RE = re.compile(r'<br\s*/?>', re.IGNORECASE)
TAG_RE = re.compile(r'<[^>]+>')
BULLET_RE = re.compile(r'<br>\n([•\-*])\s')

PIXEL = '<img src="{url}" width="1" height="1" style="display:none;visibility:hidden;" alt="" />'
UNSUBSCRIBE_FOOTER = (
    '\n<div style="margin-top: 30px; padding-top: 20px; border-top: 1px solid #eee; '
    'text-align: center; font-size: 12px; color: #666;">\n'
    '  <p>Vous recevez cet email car vous êtes inscrit(e) à notre newsletter.</p>\n'
    '  <p><a href="{url}" style="color: #666;">Se désabonner</a></p>\n'
    '</div>\n'
)
HTML_SHELL = (
    '<!DOCTYPE html>\n<html>\n<head>\n  <meta charset="utf-8">\n'
    '  <meta name="viewport" content="width=device-width, initial-scale=1.0">\n'
    '  <style>\n'
    '    body {{ font-family: Arial, sans-serif; line-height: 1.6; color: #333; max-width: 600px; '
    'margin: 0 auto; padding: 20px; }}\n'
    '    .content {{ background: #fff; padding: 20px; }}\n'
    '  </style>\n</head>\n<body>\n  <div class="content">\n    {body}\n  </div>\n</body>\n</html>'
)


def _base_url() -> str:
    return settings.PUBLIC_BASE_URL


def unsubscribe_link(token) -> str:
    return f'{_base_url()}/unsubscribe/{token}'


def open_pixel_url(campaign_id, patient_id) -> str:
    return f'{_base_url()}/api/campaigns/track/open/{campaign_id}/{patient_id}'


def click_url(campaign_id, patient_id, url: str) -> str:
    return f"{_base_url()}/api/campaigns/track/click/{campaign_id}/{patient_id}?url={quote(url, safe='')}"


def plain_text_to_html(text: str) -> str:
    html = text.replace('&', '&amp;').replace('<', '&lt;').replace('>', '&gt;')
    html = html.replace('\r\n', '\n').replace('\n', '<br>\n')
    html = BULLET_RE.sub(r'<br>\n&nbsp;&nbsp;\1 ', html)
    return HTML_SHELL.format(body=html)


def add_before_body_end(html: str, fragment: str) -> str:
    if '</body>' in html:
        return html.replace('</body>', f'{fragment}</body>', 1)
    return html + fragment


def rewrite_links(html: str, campaign_id, patient_id) -> str:
    def _sub(match):
        url = match.group(1)
        if 'unsubscribe' in url:
            return match.group(0)
        return f'href="{click_url(campaign_id, patient_id, url)}"'
    return LINK_RE.sub(_sub, html)


def _substitute(content: str, variables: Dict[str, str], escape_values: bool = False) -> str:
    for key, value in variables.items():
        value = value or ''
        if escape_values:
            value = escape(value)
        pattern = re.compile(r'\{\{\s*' + re.escape(key) + r'\s*\}\}', re.IGNORECASE)
        content = pattern.sub(lambda _m, v=value: v, content)
    return content


def personalization_variables(campaign: EmailCampaign, patient: Patient) -> Dict[str, str]:
    signer = campaign.sender or patient.assigned_dietitian
    dietitian_name = f'{signer.first_name} {signer.last_name}'.strip() if signer else ''
    return {
        'patient_first_name': patient.first_name,
        'patient_last_name': patient.last_name,
        'patient_email': patient.email or '',
        'dietitian_name': dietitian_name,
        'unsubscribe_link': unsubscribe_link(patient.unsubscribe_token),
    }


def build_personalized_email(campaign: EmailCampaign, patient: Patient) -> Dict[str, str]:
    """Personalise the campaign for ``patient`` and add tracking.

    Returns a dict with ``subject``, ``html`` and ``text``.
    """
    variables = personalization_variables(campaign, patient)
    raw_html = campaign.body_html or ''
    is_plain = bool(raw_html) and not HTML_TAG_RE.search(raw_html)

    subject = _substitute(campaign.subject or '', variables)
    text = _substitute(campaign.body_text or '', variables)
    if is_plain:
        html = plain_text_to_html(_substitute(raw_html, variables))
    else:
        html = _substitute(raw_html, variables, escape_values=True)
    if not html and text:
        html = plain_text_to_html(text)

    if not text and html:
        text = TAG_RE.sub('', BR_RE.sub('\n', html)).strip()

    html = add_before_body_end(html, PIXEL.format(url=open_pixel_url(campaign.id, patient.id)))
    html = rewrite_links(html, campaign.id, patient.id)
    if 'unsubscribe' not in html and 'désabonner' not in html:
        html = add_before_body_end(html, UNSUBSCRIBE_FOOTER.format(url=unsubscribe_link(patient.unsubscribe_token)))
    return {'subject': subject, 'html': html, 'text': text}


def _set_recipient_status(recipient: EmailCampaignRecipient, status: str, error: str = '') -> None:
    recipient.status = status
    fields = ['status']
    if status == EmailCampaignRecipient.STATUS_SENT:
        recipient.sent_at = timezone.now()
        fields.append('sent_at')
    if error:
        recipient.error_message = error
        fields.append('error_message')
    recipient.save(update_fields=fields)


def send_to_recipient(campaign: EmailCampaign, recipient: EmailCampaignRecipient) -> bool:
    patient = recipient.patient
    if patient is None:
        _set_recipient_status(recipient, EmailCampaignRecipient.STATUS_FAILED, 'Patient not found')
        return False
    try:
        message = build_personalized_email(campaign, patient)
        entry = send_email(
            recipient.email, message['subject'], message['html'], message['text'],
            patient=patient, template_slug=f'campaign_{campaign.id}', email_type='campaign',
            sent_by=campaign.sender, variables={'campaign_id': campaign.id},
        )
    except Exception as exc:  # a broken recipient must not stop the batch
        logger.exception('Campaign %s: error sending to %s', campaign.id, recipient.email)
        _set_recipient_status(recipient, EmailCampaignRecipient.STATUS_FAILED, str(exc) or exc.__class__.__name__)
        return False
    if entry.status == EmailLog.STATUS_SENT:
        _set_recipient_status(recipient, EmailCampaignRecipient.STATUS_SENT)
        return True
    _set_recipient_status(recipient, EmailCampaignRecipient.STATUS_FAILED, entry.error_message or 'Unknown error')
    return False


def _broadcast(campaign_id: int, status: str, processed: int) -> None:
    channel_layer = get_channel_layer()
    if channel_layer is None:
        return
    try:
        async_to_sync(channel_layer.group_send)('updates', {
            'type': 'campaign.progress',
            'campaignId': campaign_id,
            'status': status,
            'processed': processed,
            'ts': timezone.now().isoformat(),
        })
    except Exception as exc:  # progress events are best effort
        logger.debug('Progress broadcast failed: %s', exc)


def _pause(seconds: float) -> None:
    if seconds and seconds > 0:
        time.sleep(seconds)


def process_campaign(campaign_id: int) -> int:
    """Deliver all pending recipients of a campaign; return how many were processed."""
    campaign = EmailCampaign.objects.select_related('sender').filter(id=campaign_id).first()
    if campaign is None:
        logger.error('Campaign %s not found', campaign_id)
        return 0
    if campaign.status == EmailCampaign.STATUS_CANCELLED:
        logger.info('Campaign %s was cancelled, skipping', campaign_id)
        return 0

    batch_size = max(1, int(settings.CAMPAIGN_BATCH_SIZE))
    processed = 0
    try:
        if campaign.status != EmailCampaign.STATUS_SENDING:
            campaign.status = EmailCampaign.STATUS_SENDING
            campaign.sent_at = timezone.now()
            campaign.save(update_fields=['status', 'sent_at', 'updated_at'])

        while True:
            current = EmailCampaign.objects.filter(id=campaign_id).values_list('status', flat=True).first()
            if current == EmailCampaign.STATUS_CANCELLED:
                logger.info('Campaign %s cancelled during processing', campaign_id)
                _broadcast(campaign_id, current, processed)
                return processed

            batch = list(
                EmailCampaignRecipient.objects
                .select_related('patient', 'patient__assigned_dietitian')
                .filter(campaign_id=campaign_id, status=EmailCampaignRecipient.STATUS_PENDING)
                .order_by('id')[:batch_size]
            )
            if not batch:
                break

            for recipient in batch:
                send_to_recipient(campaign, recipient)
                processed += 1
                _pause(settings.CAMPAIGN_EMAIL_DELAY)

            logger.info('Campaign %s: processed %s recipients', campaign_id, processed)
            _broadcast(campaign_id, EmailCampaign.STATUS_SENDING, processed)
            if len(batch) == batch_size:
                _pause(settings.CAMPAIGN_BATCH_DELAY)

        campaign.status = EmailCampaign.STATUS_SENT
        campaign.save(update_fields=['status', 'updated_at'])
        logger.info('Campaign %s completed, %s recipients processed', campaign_id, processed)
        _broadcast(campaign_id, EmailCampaign.STATUS_SENT, processed)
    except Exception:
        # left in "sending" so a later run resumes the pending recipients
        logger.exception('Error processing campaign %s', campaign_id)
    return processed


def _run_in_thread(campaign_id: int) -> None:
    close_old_connections()
    try:
        process_campaign(campaign_id)
    finally:
        close_old_connections()


def dispatch(campaign_id: int) -> None:
    """Start delivery after the current transaction commits."""
    mode = getattr(settings, 'CAMPAIGN_DISPATCH', 'thread')
    if mode == 'thread':
        transaction.on_commit(lambda: threading.Thread(
            target=_run_in_thread, args=(campaign_id,), name=f'campaign-{campaign_id}', daemon=True,
        ).start())
    elif mode == 'inline':
        transaction.on_commit(lambda: process_campaign(campaign_id))
    else:
        logger.info('Campaign %s queued for the process_campaigns worker', campaign_id)


def process_scheduled_campaigns(now=None) -> List[int]:
    """Send every active scheduled campaign whose time has come."""
    now = now or timezone.now()
    due = list(EmailCampaign.objects.filter(
        status=EmailCampaign.STATUS_SCHEDULED, scheduled_at__lte=now, is_active=True,
    ).values_list('id', flat=True))
    if due:
        logger.info('Found %s scheduled campaigns ready to send', len(due))
    for campaign_id in due:
        # claim the campaign so a concurrent worker skips it
        claimed = EmailCampaign.objects.filter(id=campaign_id, status=EmailCampaign.STATUS_SCHEDULED).update(
            status=EmailCampaign.STATUS_SENDING, sent_at=timezone.now(),
        )
        if claimed:
            process_campaign(campaign_id)
    return due


def resume_sending_campaigns() -> List[int]:
    """Resume campaigns left in ``sending`` (queued or interrupted)."""
    ids = list(EmailCampaign.objects.filter(status=EmailCampaign.STATUS_SENDING, is_active=True)
               .values_list('id', flat=True))
    for campaign_id in ids:
        process_campaign(campaign_id)
    return ids


def track_open(campaign_id, patient_id) -> int:
    return EmailCampaignRecipient.objects.filter(
        campaign_id=campaign_id, patient_id=patient_id, opened_at__isnull=True,
    ).update(opened_at=timezone.now())


def track_click(campaign_id, patient_id) -> int:
    updated = EmailCampaignRecipient.objects.filter(
        campaign_id=campaign_id, patient_id=patient_id, clicked_at__isnull=True,
    ).update(clicked_at=timezone.now())
    track_open(campaign_id, patient_id)
    return updated


def process_unsubscribe(token) -> Dict[str, str]:
    try:
        token = uuid.UUID(str(token))
    except ValueError:
        raise NotFoundError('Invalid unsubscribe token', code='INVALID_TOKEN')
    patient = Patient.objects.filter(unsubscribe_token=token).first()
    if patient is None:
        raise NotFoundError('Invalid unsubscribe token', code='INVALID_TOKEN')
    patient.appointment_reminders_enabled = False
    patient.save(update_fields=['appointment_reminders_enabled', 'updated_at'])
    logger.info('Patient %s unsubscribed', patient.id)
    return {'message': 'Successfully unsubscribed', 'patientName': f'{patient.first_name} {patient.last_name}'}
