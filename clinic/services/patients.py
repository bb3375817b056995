from datetime import date
from typing import Optional, Dict, Any

from django.db import transaction
from django.db.models import Count, Max, Q, Sum
from rest_framework.exceptions import ValidationError

from clinic.exceptions import ApiError
from clinic.models import Invoice, Patient, PatientTag, User, Visit
from clinic.services.audit import log_action

PATIENT_FIELDS = (
    'first_name', 'last_name', 'date_of_birth', 'gender', 'email', 'phone', 'address', 'city',
    'postal_code', 'country', 'medical_notes', 'allergies', 'dietary_preferences',
    'language_preference', 'is_active', 'appointment_reminders_enabled',
)


def age_range_q(age_min: Optional[int], age_max: Optional[int], today: Optional[date] = None) -> Q:
    """Translate an age range into a ``date_of_birth`` range."""
    today = today or date.today()
    q = Q()
    if age_min is not None:
        q &= Q(date_of_birth__lte=_years_before(today, age_min))
    if age_max is not None:
        # born after the day they would have turned age_max + 1
        q &= Q(date_of_birth__gt=_years_before(today, age_max + 1))
    return q


def _years_before(day: date, years: int) -> date:
    try:
        return day.replace(year=day.year - years)
    except ValueError:
        # 29 February in a non-leap target year
        return day.replace(year=day.year - years, day=28)


def resolve_dietitian(dietitian_id) -> Optional[User]:
    if dietitian_id in (None, ''):
        return None
    dietitian = User.objects.filter(id=dietitian_id, is_active=True).first()
    if not dietitian:
        raise ApiError('Assigned dietitian not found', code='DIETITIAN_NOT_FOUND')
    if dietitian.role not in (User.ROLE_DIETITIAN, User.ROLE_ADMIN):
        raise ApiError('Assigned user is not a dietitian', code='INVALID_DIETITIAN')
    return dietitian


def _check_email_unique(email, exclude_id=None):
    if not email:
        return
    qs = Patient.objects.filter(email__iexact=email, is_active=True)
    if exclude_id:
        qs = qs.exclude(id=exclude_id)
    if qs.exists():
        raise ValidationError({'email': ['A patient with this email already exists']})


@transaction.atomic
def create_patient(user, data: Dict[str, Any]) -> Patient:
    dietitian = resolve_dietitian(data.get('assigned_dietitian_id'))
    if dietitian is None and user.role == User.ROLE_DIETITIAN:
        dietitian = user
    _check_email_unique(data.get('email'))
    values = {k: data[k] for k in PATIENT_FIELDS if k in data}
    if values.get('email') == '':
        values['email'] = None
    patient = Patient.objects.create(assigned_dietitian=dietitian, created_by=user, **values)
    if dietitian is not None:
        patient.dietitians.add(dietitian)
    for tag in data.get('tags') or []:
        PatientTag.objects.get_or_create(patient=patient, tag_name=tag)
    log_action(user=user, action='patient_create', object_type='patient', object_id=patient.id)
    return patient


@transaction.atomic
def update_patient(user, patient: Patient, data: Dict[str, Any]) -> Patient:
    if 'email' in data:
        _check_email_unique(data.get('email'), exclude_id=patient.id)
    for key in PATIENT_FIELDS:
        if key in data:
            value = data[key]
            if key == 'email' and value == '':
                value = None
            setattr(patient, key, value)
    if 'assigned_dietitian_id' in data:
        dietitian = resolve_dietitian(data['assigned_dietitian_id'])
        patient.assigned_dietitian = dietitian
        if dietitian is not None:
            patient.dietitians.add(dietitian)
    patient.save()
    if 'tags' in data and data['tags'] is not None:
        set_tags(patient, data['tags'])
    log_action(user=user, action='patient_update', object_type='patient', object_id=patient.id,
               detail={'fields': sorted(k for k in data.keys())})
    return patient


def deactivate_patient(user, patient: Patient) -> Patient:
    patient.is_active = False
    patient.save(update_fields=['is_active', 'updated_at'])
    log_action(user=user, action='patient_delete', object_type='patient', object_id=patient.id)
    return patient


def normalize_tag(tag: str) -> str:
    tag = (tag or '').strip()
    if not tag:
        raise ApiError('Tag name is required', code='INVALID_TAG')
    if len(tag) > 50:
        raise ApiError('Tag name must be at most 50 characters', code='INVALID_TAG')
    return tag


def add_tag(patient: Patient, tag: str) -> PatientTag:
    obj, _ = PatientTag.objects.get_or_create(patient=patient, tag_name=normalize_tag(tag))
    return obj


def remove_tag(patient: Patient, tag: str) -> int:
    deleted, _ = PatientTag.objects.filter(patient=patient, tag_name=(tag or '').strip()).delete()
    return deleted


def set_tags(patient: Patient, tags) -> None:
    wanted = {normalize_tag(t) for t in tags}
    PatientTag.objects.filter(patient=patient).exclude(tag_name__in=wanted).delete()
    for tag in wanted:
        PatientTag.objects.get_or_create(patient=patient, tag_name=tag)


def all_tags(patients_qs):
    return list(
        PatientTag.objects.filter(patient__in=patients_qs)
        .values_list('tag_name', flat=True).distinct().order_by('tag_name')
    )


def patient_summary(patient: Patient) -> Dict[str, Any]:
    visits = Visit.objects.filter(patient=patient)
    invoices = Invoice.objects.filter(patient=patient).exclude(status=Invoice.STATUS_CANCELLED)
    agg = invoices.aggregate(total=Sum('amount_total'), paid=Sum('amount_paid'))
    last_visit = visits.filter(status=Visit.STATUS_COMPLETED).aggregate(m=Max('visit_date'))['m']
    return {
        'visitCount': visits.filter(status=Visit.STATUS_COMPLETED).count(),
        'upcomingVisits': visits.filter(status=Visit.STATUS_SCHEDULED).count(),
        'lastVisitDate': last_visit.isoformat() if last_visit else None,
        'invoiceCount': invoices.count(),
        'amountBilled': str(agg['total'] or 0),
        'amountPaid': str(agg['paid'] or 0),
        'tagCount': patient.tags.aggregate(n=Count('id'))['n'],
    }
