"""
Tenant scoping helpers.

Every staff query is narrowed to the dietitians a user may act for:
administrators see everything, dietitians see their own patients and
assistants see the patients of the dietitians they are linked to.
"""
from typing import Optional, List

from django.db.models import Q

from clinic.exceptions import ForbiddenError, NotFoundError
from clinic.models import AssistantLink, Patient, User, Visit


def scoped_dietitian_ids(user) -> Optional[List[int]]:
    """Return the dietitian ids visible to ``user`` or ``None`` for no restriction."""
    role = getattr(user, 'role', None)
    if role == User.ROLE_ADMIN:
        return None
    if role == User.ROLE_DIETITIAN:
        return [user.id]
    if role == User.ROLE_ASSISTANT:
        return list(AssistantLink.objects.filter(assistant=user).values_list('dietitian_id', flat=True))
    return []


def patient_scope_q(user, prefix: str = '') -> Q:
    """Q object restricting patients (optionally through ``prefix``) to the user's scope."""
    ids = scoped_dietitian_ids(user)
    if ids is None:
        return Q()
    return Q(**{f'{prefix}assigned_dietitian_id__in': ids}) | Q(**{f'{prefix}dietitians__id__in': ids})


def scoped_patients(user):
    qs = Patient.objects.all()
    if getattr(user, 'role', None) == User.ROLE_PATIENT:
        return qs.filter(user=user)
    ids = scoped_dietitian_ids(user)
    if ids is None:
        return qs
    if not ids:
        return qs.none()
    return qs.filter(patient_scope_q(user)).distinct()


def scoped_visits(user):
    qs = Visit.objects.select_related('patient', 'dietitian')
    ids = scoped_dietitian_ids(user)
    if ids is None:
        return qs
    if not ids:
        return qs.none()
    return qs.filter(Q(dietitian_id__in=ids) | patient_scope_q(user, prefix='patient__')).distinct()


def can_access_patient(user, patient: Patient) -> bool:
    if getattr(user, 'role', None) == User.ROLE_PATIENT:
        return patient.user_id == user.id
    ids = scoped_dietitian_ids(user)
    if ids is None:
        return True
    if patient.assigned_dietitian_id in ids:
        return True
    return patient.dietitians.filter(id__in=ids).exists()


def get_patient_for_user(user, patient_id) -> Patient:
    patient = Patient.objects.select_related('assigned_dietitian').filter(id=patient_id).first()
    if not patient:
        raise NotFoundError('Patient not found', code='PATIENT_NOT_FOUND')
    if not can_access_patient(user, patient):
        raise ForbiddenError('Patient is not assigned to you', code='NOT_ASSIGNED_PATIENT')
    return patient


def owner_scope_q(user, field: str = 'created_by_id') -> Q:
    """Q object for resources owned by a dietitian (campaigns, invoices)."""
    ids = scoped_dietitian_ids(user)
    if ids is None:
        return Q()
    return Q(**{f'{field}__in': ids + [user.id]})
