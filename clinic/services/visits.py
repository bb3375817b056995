import logging
from typing import Dict, Any

from django.db import transaction

from clinic.exceptions import ApiError, NotFoundError, ForbiddenError
from clinic.models import User, Visit
from clinic.services import auto_sync, google_calendar
from clinic.services.audit import log_action
from clinic.services.scope import get_patient_for_user, scoped_dietitian_ids, scoped_visits

logger = logging.getLogger(__name__)

VISIT_FIELDS = ('visit_date', 'duration_minutes', 'visit_type', 'status', 'notes')


def get_visit_for_user(user, visit_id) -> Visit:
    visit = Visit.objects.select_related('patient', 'dietitian').filter(id=visit_id).first()
    if not visit:
        raise NotFoundError('Visit not found', code='VISIT_NOT_FOUND')
    if not scoped_visits(user).filter(id=visit.id).exists():
        raise ForbiddenError('Visit is not in your scope', code='NOT_ASSIGNED_PATIENT')
    return visit


def _resolve_dietitian(user, dietitian_id):
    if dietitian_id in (None, ''):
        if user.role == User.ROLE_DIETITIAN:
            return user
        return None
    dietitian = User.objects.filter(id=dietitian_id, is_active=True,
                                    role__in=[User.ROLE_DIETITIAN, User.ROLE_ADMIN]).first()
    if not dietitian:
        raise ApiError('Dietitian not found', code='DIETITIAN_NOT_FOUND')
    ids = scoped_dietitian_ids(user)
    if ids is not None and dietitian.id not in ids:
        raise ForbiddenError('Cannot schedule visits for this dietitian', code='FORBIDDEN_DIETITIAN')
    return dietitian


def _after_change(user, visit: Visit, action: str) -> None:
    # calendar failures are logged and never fail the request
    transaction.on_commit(lambda: auto_sync.auto_sync_after_visit_change(user, visit, action))


@transaction.atomic
def create_visit(user, data: Dict[str, Any]) -> Visit:
    patient = get_patient_for_user(user, data['patient_id'])
    dietitian = _resolve_dietitian(user, data.get('dietitian_id'))
    if dietitian is None:
        dietitian = patient.assigned_dietitian
    values = {k: data[k] for k in VISIT_FIELDS if k in data and data[k] is not None}
    visit = Visit.objects.create(patient=patient, dietitian=dietitian, **values)
    log_action(user=user, action='visit_create', object_type='visit', object_id=visit.id,
               detail={'patientId': patient.id})
    _after_change(user, visit, 'create')
    return visit


@transaction.atomic
def update_visit(user, visit: Visit, data: Dict[str, Any]) -> Visit:
    if 'dietitian_id' in data:
        visit.dietitian = _resolve_dietitian(user, data['dietitian_id'])
    for key in VISIT_FIELDS:
        if key in data and data[key] is not None:
            setattr(visit, key, data[key])
    if visit.google_event_id:
        visit.sync_status = Visit.SYNC_PENDING
    visit.save()
    log_action(user=user, action='visit_update', object_type='visit', object_id=visit.id,
               detail={'fields': sorted(data.keys())})
    _after_change(user, visit, 'update')
    return visit


def cancel_visit(user, visit: Visit) -> Visit:
    visit.status = Visit.STATUS_CANCELLED
    visit.save(update_fields=['status', 'updated_at'])
    if visit.google_event_id:
        owner = visit.dietitian if visit.dietitian and visit.dietitian.google_access_token else user
        if google_calendar.is_connected(owner):
            try:
                google_calendar.delete_event(visit, owner)
            except google_calendar.CalendarSyncError as exc:
                logger.warning('Could not delete calendar event of visit %s: %s', visit.id, exc.detail)
    log_action(user=user, action='visit_cancel', object_type='visit', object_id=visit.id)
    return visit


def agenda(user, start, end):
    auto_sync.sync_on_agenda_access(user)
    return scoped_visits(user).filter(visit_date__gte=start, visit_date__lt=end).order_by('visit_date', 'id')
