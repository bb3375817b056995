"""
Audience segmentation for email campaigns.

Criteria are stored on the campaign as JSON::

    {"logic": "AND", "conditions": [{"field": "tags", "operator": "contains_any", "value": ["diabete"]}]}

Each condition becomes a ``Q`` object; conditions are combined with the
requested logic and every audience additionally requires an email
address and consent to receive emails.
"""
from datetime import timedelta
from typing import Any, Dict, List, Optional

from django.db.models import Count, IntegerField, Max, OuterRef, Q, Subquery
from django.db.models.functions import Coalesce

from clinic.exceptions import ApiError
from clinic.models import Patient, PatientTag, User, Visit
from clinic.querybuilder import parse_boolean, parse_datetime_value
from clinic.services.scope import patient_scope_q

OPERATORS = {
    'boolean': ['equals'],
    'string': ['equals', 'not_equals', 'in', 'not_in', 'contains', 'not_contains'],
    'number': ['equals', 'not_equals', 'greater_than', 'less_than', 'between'],
    'date': ['equals', 'before', 'after', 'between'],
    'array': ['contains', 'not_contains', 'contains_any', 'contains_all'],
}

SEGMENT_FIELDS = {
    'is_active': {'type': 'boolean', 'label': 'Patient actif'},
    'appointment_reminders_enabled': {'type': 'boolean', 'label': 'Accepte les emails'},
    'language_preference': {'type': 'string', 'label': 'Langue préférée', 'options': ['fr', 'en', 'es', 'nl', 'de']},
    'gender': {'type': 'string', 'label': 'Genre', 'options': ['MALE', 'FEMALE', 'OTHER']},
    'linked_dietitian_id': {'type': 'string', 'label': 'Diététicien lié'},
    'tags': {'type': 'array', 'label': 'Tags'},
    'last_visit_date': {'type': 'date', 'label': 'Dernière visite'},
    'visit_count': {'type': 'number', 'label': 'Nombre de visites'},
    'created_at': {'type': 'date', 'label': "Date d'inscription"},
}


def _invalid(message: str) -> ApiError:
    return ApiError(message, code='INVALID_AUDIENCE')


def _as_list(value) -> List[Any]:
    if isinstance(value, (list, tuple)):
        return list(value)
    if isinstance(value, str) and ',' in value:
        return [v.strip() for v in value.split(',') if v.strip()]
    return [value]


def _pair(value) -> List[Any]:
    values = _as_list(value)
    if len(values) != 2:
        raise _invalid('Between operator requires exactly 2 values')
    return values


def _to_datetime(value):
    try:
        return parse_datetime_value(str(value))
    except ValueError as exc:
        raise _invalid(str(exc))


def _to_int(value) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise _invalid(f'Invalid number: {value}')


def annotated_patients():
    """Patients annotated with ``last_visit_date`` and ``visit_count``."""
    last_visit = (Visit.objects
                  .filter(patient=OuterRef('pk'), status__in=[Visit.STATUS_COMPLETED, Visit.STATUS_SCHEDULED])
                  .order_by().values('patient').annotate(m=Max('visit_date')).values('m'))
    visit_count = (Visit.objects
                   .filter(patient=OuterRef('pk'), status=Visit.STATUS_COMPLETED)
                   .order_by().values('patient').annotate(n=Count('id')).values('n'))
    return Patient.objects.annotate(
        last_visit_date=Subquery(last_visit),
        visit_count=Coalesce(Subquery(visit_count, output_field=IntegerField()), 0),
    )


def _tag_ids(tags):
    return PatientTag.objects.filter(tag_name__in=tags).values('patient_id')


def _linked_ids(dietitian_ids):
    return Patient.objects.filter(
        Q(dietitians__id__in=dietitian_ids) | Q(assigned_dietitian_id__in=dietitian_ids)
    ).values('id')


def condition_q(condition: Dict[str, Any]) -> Q:
    field = condition.get('field')
    operator = condition.get('operator')
    value = condition.get('value')
    definition = SEGMENT_FIELDS.get(field)
    if definition is None:
        raise _invalid(f'Unknown segment field: {field}')
    kind = definition['type']
    if operator not in OPERATORS[kind]:
        raise _invalid(f'Operator {operator} is not valid for {field}')

    if kind == 'boolean':
        flag = parse_boolean(value)
        if flag is None:
            raise _invalid(f'Invalid boolean value for {field}')
        return Q(**{field: flag})

    if field == 'linked_dietitian_id':
        ids = [_to_int(v) for v in _as_list(value)]
        if operator in ('equals', 'in'):
            return Q(id__in=_linked_ids(ids))
        if operator in ('not_equals', 'not_in'):
            return ~Q(id__in=_linked_ids(ids))
        raise _invalid(f'Operator {operator} is not valid for {field}')

    if kind == 'array':
        tags = [str(v).strip() for v in _as_list(value) if str(v).strip()]
        if not tags:
            raise _invalid('At least one tag is required')
        if operator in ('contains', 'contains_any'):
            return Q(id__in=_tag_ids(tags))
        if operator == 'not_contains':
            return ~Q(id__in=_tag_ids(tags))
        q = Q()
        for tag in tags:
            q &= Q(id__in=_tag_ids([tag]))
        return q

    if kind == 'string':
        if operator == 'equals':
            return Q(**{field: value})
        if operator == 'not_equals':
            return ~Q(**{field: value})
        if operator == 'in':
            return Q(**{f'{field}__in': _as_list(value)})
        if operator == 'not_in':
            return ~Q(**{f'{field}__in': _as_list(value)})
        if operator == 'contains':
            return Q(**{f'{field}__icontains': value})
        return ~Q(**{f'{field}__icontains': value})

    if kind == 'number':
        if operator == 'between':
            low, high = (_to_int(v) for v in _pair(value))
            return Q(**{f'{field}__range': (low, high)})
        number = _to_int(value)
        if operator == 'equals':
            return Q(**{field: number})
        if operator == 'not_equals':
            return ~Q(**{field: number})
        if operator == 'greater_than':
            return Q(**{f'{field}__gt': number})
        return Q(**{f'{field}__lt': number})

    # dates
    if operator == 'between':
        start, end = (_to_datetime(v) for v in _pair(value))
        if len(str(_pair(value)[1])) <= 10:
            # a bare end date includes that whole day
            return Q(**{f'{field}__gte': start, f'{field}__lt': end + timedelta(days=1)})
        return Q(**{f'{field}__range': (start, end)})
    moment = _to_datetime(value)
    if operator == 'equals':
        return Q(**{f'{field}__gte': moment, f'{field}__lt': moment + timedelta(days=1)})
    if operator == 'before':
        return Q(**{f'{field}__lt': moment})
    return Q(**{f'{field}__gt': moment})


def validate_criteria(criteria: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Normalise criteria and raise ``INVALID_AUDIENCE`` on unknown fields or operators."""
    criteria = criteria or {}
    if not isinstance(criteria, dict):
        raise _invalid('Audience criteria must be an object')
    logic = str(criteria.get('logic') or 'AND').upper()
    if logic not in ('AND', 'OR'):
        raise _invalid('Logic must be AND or OR')
    conditions = criteria.get('conditions') or []
    if not isinstance(conditions, list):
        raise _invalid('Conditions must be a list')
    for condition in conditions:
        if not isinstance(condition, dict):
            raise _invalid('Each condition must be an object')
        condition_q(condition)
    return {'logic': logic, 'conditions': conditions}


def audience_queryset(criteria: Optional[Dict[str, Any]], owner: Optional[User] = None):
    criteria = validate_criteria(criteria)
    qs = annotated_patients()
    if owner is not None and owner.role != User.ROLE_ADMIN:
        qs = qs.filter(id__in=Patient.objects.filter(patient_scope_q(owner)).values('id'))

    conditions = criteria['conditions']
    if not conditions:
        where = Q(is_active=True)
    elif criteria['logic'] == 'OR':
        where = Q()
        for condition in conditions:
            where |= condition_q(condition)
    else:
        where = Q()
        for condition in conditions:
            where &= condition_q(condition)

    required = Q(email__isnull=False, appointment_reminders_enabled=True) & ~Q(email='')
    return qs.filter(where).filter(required).order_by('last_name', 'first_name', 'id')


def count_audience(criteria, owner=None) -> int:
    return audience_queryset(criteria, owner).count()


def preview_audience(criteria, owner=None, sample_size: int = 10) -> Dict[str, Any]:
    qs = audience_queryset(criteria, owner)
    return {
        'count': qs.count(),
        'sample': [
            {
                'id': p.id,
                'name': f'{p.first_name} {p.last_name}',
                'email': p.email,
                'language': p.language_preference,
            }
            for p in qs[:sample_size]
        ],
    }


def segment_fields(owner=None) -> Dict[str, Any]:
    tags = PatientTag.objects.all()
    if owner is not None and owner.role != User.ROLE_ADMIN:
        tags = tags.filter(patient__in=Patient.objects.filter(patient_scope_q(owner)).values('id'))
    dietitians = User.objects.filter(is_active=True, role__in=[User.ROLE_DIETITIAN, User.ROLE_ADMIN])
    return {
        'fields': [
            {
                'key': key,
                'label': d['label'],
                'type': d['type'],
                'operators': OPERATORS[d['type']],
                'options': d.get('options'),
            }
            for key, d in SEGMENT_FIELDS.items()
        ],
        'tags': sorted(set(tags.values_list('tag_name', flat=True))),
        'dietitians': [{'id': u.id, 'name': u.display_name} for u in dietitians.order_by('last_name', 'id')],
    }
