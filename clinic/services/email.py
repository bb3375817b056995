import logging
from types import SimpleNamespace
from typing import Optional, Dict, Any

from django.conf import settings
from django.core.mail import EmailMultiAlternatives
from django.utils import timezone

from clinic.exceptions import ApiError, NotFoundError
from clinic.models import EmailLog, EmailTemplate, Invoice
from clinic.services import templates as renderer
from clinic.services.audit import log_action
from clinic.services.default_templates import get_default

logger = logging.getLogger(__name__)


def send_email(to: str, subject: str, html: str, text: str = '', *, patient=None, template=None,
               template_slug: str = '', email_type: str = 'general', sent_by=None,
               variables: Optional[Dict[str, Any]] = None) -> EmailLog:
    """Send a multipart email and record the attempt.

    Delivery errors do not propagate; the returned :class:`EmailLog` has
    status ``failed`` and the error message instead.
    """
    entry = EmailLog.objects.create(
        template=template if getattr(template, 'pk', None) else None,
        template_slug=template_slug or getattr(template, 'slug', '') or '',
        email_type=email_type,
        sent_to=to,
        patient=patient,
        subject=subject,
        body_html=html or '',
        body_text=text or '',
        variables_used=variables or {},
        sent_by=sent_by if getattr(sent_by, 'pk', None) else None,
        language_code=getattr(patient, 'language_preference', None) or 'fr',
    )
    message = EmailMultiAlternatives(
        subject=subject,
        body=text or renderer.strip_html(html),
        from_email=settings.DEFAULT_FROM_EMAIL,
        to=[to],
    )
    if html:
        message.attach_alternative(html, 'text/html')
    try:
        message.send(fail_silently=False)
    except Exception as exc:  # smtplib, socket and backend errors alike
        logger.warning('Email to %s failed (%s): %s', to, email_type, exc)
        entry.status = EmailLog.STATUS_FAILED
        entry.error_message = str(exc)
        entry.save(update_fields=['status', 'error_message'])
        return entry
    entry.status = EmailLog.STATUS_SENT
    entry.sent_at = timezone.now()
    entry.save(update_fields=['status', 'sent_at'])
    logger.info('Email sent to %s (%s)', to, email_type)
    return entry


def get_active_template(slug: str) -> EmailTemplate:
    tpl = EmailTemplate.objects.filter(slug=slug, is_active=True, deleted_at__isnull=True).first()
    if not tpl:
        raise NotFoundError(f'Email template {slug} not found', code='TEMPLATE_NOT_FOUND')
    return tpl


def send_templated_email(slug: str, to: str, context: Dict[str, Any], *, patient=None, sent_by=None,
                         email_type: Optional[str] = None) -> EmailLog:
    tpl = get_active_template(slug)
    rendered = renderer.render_template(tpl, context)
    return send_email(
        to, rendered['subject'], rendered['html'], rendered['text'],
        patient=patient, template=tpl, email_type=email_type or tpl.category,
        sent_by=sent_by, variables=context,
    )


def _invoice_template():
    tpl = EmailTemplate.objects.filter(slug='invoice_notification', is_active=True, deleted_at__isnull=True).first()
    if tpl:
        return tpl
    return SimpleNamespace(**get_default('invoice_notification'))


def send_invoice_email(invoice: Invoice, user) -> EmailLog:
    """Email ``invoice`` to its patient; a DRAFT invoice becomes SENT."""
    patient = invoice.patient
    if not patient.email:
        raise ApiError('Patient has no email address', code='PATIENT_NO_EMAIL')
    tpl = _invoice_template()
    context = renderer.build_variable_context(
        patient=patient, invoice=invoice, dietitian=invoice.dietitian or patient.assigned_dietitian,
    )
    rendered = renderer.render_template(tpl, context)
    entry = send_email(
        patient.email, rendered['subject'], rendered['html'], rendered['text'],
        patient=patient, template=tpl, template_slug='invoice_notification',
        email_type='invoice', sent_by=user, variables=context,
    )
    if entry.status != EmailLog.STATUS_SENT:
        raise ApiError(f'Email delivery failed: {entry.error_message}', code='EMAIL_FAILED', status_code=502)
    fields = ['sent_at', 'updated_at']
    invoice.sent_at = timezone.now()
    if invoice.status == Invoice.STATUS_DRAFT:
        invoice.status = Invoice.STATUS_SENT
        fields.append('status')
    invoice.save(update_fields=fields)
    log_action(user=user, action='invoice_email', object_type='invoice', object_id=invoice.id,
               detail={'to': patient.email})
    return entry
