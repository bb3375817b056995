"""
Variable substitution for email templates.

Templates use ``{{variable}}`` placeholders.  Variables that are missing
from the context render as ``[variable]`` so that a preview shows which
values were not supplied instead of silently dropping them.
"""
import re
from decimal import Decimal, InvalidOperation
from typing import Dict, Iterable, List, Optional

from django.conf import settings
from django.utils import timezone

VARIABLE_RE = re.compile(r'\{\{([a-zA-Z0-9_]+)\}\}')

STATUS_LABELS = {
    'DRAFT': 'Brouillon',
    'SENT': 'Envoyée',
    'PAID': 'Payée',
    'OVERDUE': 'En retard',
    'CANCELLED': 'Annulée',
    'PARTIAL': 'Partielle',
}

_PATIENT = ['patient_name', 'patient_first_name', 'patient_last_name']
_DIETITIAN = ['dietitian_name', 'dietitian_first_name', 'dietitian_last_name']

CATEGORY_VARIABLES: Dict[str, List[str]] = {
    'invoice': _PATIENT + [
        'invoice_number', 'invoice_date', 'due_date', 'service_description',
        'amount_total', 'amount_due', 'amount_paid', 'payment_status',
    ] + _DIETITIAN,
    'document_share': _PATIENT + [
        'document_name', 'document_description', 'document_category',
        'shared_by_name', 'shared_by_first_name', 'shared_by_last_name',
        'share_notes', 'share_date',
    ],
    'payment_reminder': _PATIENT + [
        'invoice_number', 'due_date', 'days_overdue', 'amount_due', 'invoice_date',
    ],
    'appointment_reminder': _PATIENT + [
        'appointment_date', 'appointment_time', 'appointment_datetime',
    ] + _DIETITIAN + [
        'dietitian_phone', 'dietitian_email', 'visit_type', 'unsubscribe_link',
        'clinic_name', 'clinic_address', 'clinic_phone',
    ],
    'follow_up': _PATIENT + ['last_visit_date', 'next_recommended_date'] + _DIETITIAN,
    'general': _PATIENT + ['patient_email'] + _DIETITIAN + ['custom_message'],
}


def available_variables(category: Optional[str]) -> List[str]:
    return list(CATEGORY_VARIABLES.get(category or '', CATEGORY_VARIABLES['general']))


def translate_status(status: Optional[str]) -> str:
    return STATUS_LABELS.get(status or '', status or '')


def format_date(value) -> str:
    if not value:
        return ''
    if hasattr(value, 'hour'):
        value = timezone.localtime(value) if timezone.is_aware(value) else value
        value = value.date()
    return value.strftime('%d/%m/%Y')


def format_time(value) -> str:
    if not value:
        return ''
    if timezone.is_aware(value):
        value = timezone.localtime(value)
    return value.strftime('%H:%M')


def format_money(value) -> str:
    try:
        amount = Decimal(str(value or 0))
    except (InvalidOperation, ValueError):
        amount = Decimal('0')
    return f"{amount:.2f} €"


def build_variable_context(*, patient=None, invoice=None, visit=None, dietitian=None, shared_by=None,
                           document=None, notes=None, custom_message=None, last_visit_date=None,
                           next_recommended_date=None, clinic=None) -> Dict[str, object]:
    """Flatten domain objects into the variables understood by templates."""
    ctx: Dict[str, object] = {}

    if patient is not None:
        ctx['patient_name'] = f"{patient.first_name} {patient.last_name}"
        ctx['patient_first_name'] = patient.first_name
        ctx['patient_last_name'] = patient.last_name
        ctx['patient_email'] = patient.email
        if getattr(patient, 'unsubscribe_token', None):
            ctx['unsubscribe_link'] = f"{settings.FRONTEND_URL}/unsubscribe.html?token={patient.unsubscribe_token}"

    if invoice is not None:
        ctx['invoice_number'] = invoice.invoice_number
        ctx['invoice_date'] = format_date(invoice.invoice_date)
        ctx['due_date'] = format_date(invoice.due_date)
        ctx['service_description'] = invoice.service_description or ''
        ctx['amount_total'] = format_money(invoice.amount_total)
        ctx['amount_due'] = format_money(invoice.amount_due)
        ctx['amount_paid'] = format_money(invoice.amount_paid)
        ctx['payment_status'] = translate_status(invoice.status)
        if invoice.due_date:
            days = (timezone.localdate() - invoice.due_date).days
            ctx['days_overdue'] = max(days, 0)

    if document is not None:
        ctx['document_name'] = document.get('name', '')
        ctx['document_description'] = document.get('description', '')
        ctx['document_category'] = document.get('category', '')

    if visit is not None:
        ctx['appointment_date'] = format_date(visit.visit_date)
        ctx['appointment_time'] = format_time(visit.visit_date)
        ctx['appointment_datetime'] = f"{ctx['appointment_date']} {ctx['appointment_time']}"
        ctx['visit_type'] = visit.visit_type or 'Consultation'

    if dietitian is not None:
        ctx['dietitian_name'] = f"{dietitian.first_name} {dietitian.last_name}"
        ctx['dietitian_first_name'] = dietitian.first_name
        ctx['dietitian_last_name'] = dietitian.last_name
        ctx['dietitian_email'] = dietitian.email
        ctx['dietitian_phone'] = getattr(dietitian, 'phone', '') or ''

    if shared_by is not None:
        ctx['shared_by_name'] = f"{shared_by.first_name} {shared_by.last_name}"
        ctx['shared_by_first_name'] = shared_by.first_name
        ctx['shared_by_last_name'] = shared_by.last_name
        ctx['share_date'] = format_date(timezone.localdate())

    if notes:
        ctx['share_notes'] = notes
    if custom_message:
        ctx['custom_message'] = custom_message
    if last_visit_date:
        ctx['last_visit_date'] = format_date(last_visit_date)
    if next_recommended_date:
        ctx['next_recommended_date'] = format_date(next_recommended_date)

    if clinic is not None:
        ctx['clinic_name'] = clinic.get('name', '')
        ctx['clinic_address'] = clinic.get('address', '')
        ctx['clinic_phone'] = clinic.get('phone', '')

    return ctx


def clinic_info() -> Dict[str, str]:
    return {
        'name': settings.CLINIC_NAME,
        'address': settings.CLINIC_ADDRESS,
        'phone': settings.CLINIC_PHONE,
    }


def render(template: Optional[str], variables: Optional[Dict[str, object]] = None) -> str:
    if not template:
        return ''
    variables = variables or {}

    def _sub(match):
        name = match.group(1)
        value = variables.get(name)
        if value is None:
            return f'[{name}]'
        return str(value)

    return VARIABLE_RE.sub(_sub, template)


def extract_variables(template: Optional[str]) -> List[str]:
    if not template:
        return []
    return sorted(set(VARIABLE_RE.findall(template)))


def validate_variables(template: Optional[str], available: Iterable[str] = ()) -> Dict[str, object]:
    """Report which placeholders of ``template`` are not in ``available``."""
    used = extract_variables(template)
    allowed = set(available or ())
    missing = [name for name in used if name not in allowed]
    return {'valid': not missing, 'missing': missing, 'used': used}


_BR_RE = re.compile(r'<br\s*/?>', re.IGNORECASE)
_P_CLOSE_RE = re.compile(r'</p>', re.IGNORECASE)
_P_OPEN_RE = re.compile(r'<p[^>]*>', re.IGNORECASE)
_TAG_RE = re.compile(r'<[^>]+>')
_BLANK_LINES_RE = re.compile(r'\n{3,}')
_ENTITIES = (
    ('&nbsp;', ' '),
    ('&amp;', '&'),
    ('&lt;', '<'),
    ('&gt;', '>'),
    ('&quot;', '"'),
    ('&#39;', "'"),
)


def strip_html(html: Optional[str]) -> str:
    if not html:
        return ''
    text = _BR_RE.sub('\n', html)
    text = _P_CLOSE_RE.sub('\n\n', text)
    text = _P_OPEN_RE.sub('', text)
    text = _TAG_RE.sub('', text)
    for entity, char in _ENTITIES:
        text = text.replace(entity, char)
    text = _BLANK_LINES_RE.sub('\n\n', text)
    return text.strip()


def render_template(template, variables: Optional[Dict[str, object]] = None) -> Dict[str, str]:
    """Render subject, HTML and text bodies of an ``EmailTemplate``-like object."""
    subject = render(template.subject, variables)
    html = render(template.body_html, variables)
    text = render(template.body_text, variables) if template.body_text else strip_html(html)
    return {'subject': subject, 'html': html, 'text': text}


def sample_variables(category: Optional[str]) -> Dict[str, str]:
    """Placeholder values used when previewing a template without real data."""
    samples = {
        'patient_name': 'Marie Dupont',
        'patient_first_name': 'Marie',
        'patient_last_name': 'Dupont',
        'patient_email': 'marie.dupont@example.com',
        'dietitian_name': 'Claire Martin',
        'dietitian_first_name': 'Claire',
        'dietitian_last_name': 'Martin',
        'dietitian_email': 'claire.martin@example.com',
        'dietitian_phone': '01 23 45 67 89',
        'invoice_number': 'INV-2026-000042',
        'invoice_date': '15/01/2026',
        'due_date': '15/02/2026',
        'service_description': 'Consultation de suivi',
        'amount_total': '60.00 €',
        'amount_due': '60.00 €',
        'amount_paid': '0.00 €',
        'payment_status': 'Envoyée',
        'days_overdue': '3',
        'document_name': 'Plan alimentaire.pdf',
        'document_description': 'Plan alimentaire personnalisé',
        'document_category': 'nutrition',
        'shared_by_name': 'Claire Martin',
        'shared_by_first_name': 'Claire',
        'shared_by_last_name': 'Martin',
        'share_notes': 'À lire avant notre prochain rendez-vous',
        'share_date': '15/01/2026',
        'appointment_date': '20/01/2026',
        'appointment_time': '14:30',
        'appointment_datetime': '20/01/2026 14:30',
        'visit_type': 'Consultation',
        'unsubscribe_link': f"{settings.FRONTEND_URL}/unsubscribe.html?token=example",
        'clinic_name': settings.CLINIC_NAME,
        'clinic_address': settings.CLINIC_ADDRESS,
        'clinic_phone': settings.CLINIC_PHONE,
        'last_visit_date': '15/12/2025',
        'next_recommended_date': '15/03/2026',
        'custom_message': 'Message personnalisé',
    }
    return {name: samples.get(name, f'[{name}]') for name in available_variables(category)}
