"""Per-resource query builder configurations used by the list endpoints."""
from django.conf import settings

from clinic.querybuilder import FieldSpec, QueryConfig

MAX_LIMIT = getattr(settings, 'QUERY_MAX_LIMIT', 100)

VISIT_STATUSES = ('SCHEDULED', 'COMPLETED', 'CANCELLED', 'NO_SHOW')
INVOICE_STATUSES = ('DRAFT', 'SENT', 'PAID', 'PARTIAL', 'OVERDUE', 'CANCELLED')
CAMPAIGN_STATUSES = ('draft', 'scheduled', 'sending', 'sent', 'cancelled')
CAMPAIGN_TYPES = ('newsletter', 'promotional', 'educational', 'reminder')

PATIENTS_CONFIG = QueryConfig(
    search_fields=('first_name', 'last_name', 'email', 'phone'),
    filterable_fields={
        'id': FieldSpec('integer'),
        'is_active': FieldSpec('boolean'),
        'assigned_dietitian_id': FieldSpec('integer'),
        'dietitian_id': FieldSpec('integer', lookup='assigned_dietitian_id'),
        'gender': FieldSpec('enum', values=('MALE', 'FEMALE', 'OTHER')),
        'language_preference': FieldSpec('string'),
        'city': FieldSpec('string'),
        'email': FieldSpec('string'),
        'date_of_birth': FieldSpec('date'),
        'created_at': FieldSpec('datetime'),
        'updated_at': FieldSpec('datetime'),
        'appointment_reminders_enabled': FieldSpec('boolean'),
        'tag': FieldSpec('string', lookup='tags__tag_name'),
    },
    sortable_fields=('first_name', 'last_name', 'email', 'date_of_birth', 'created_at', 'updated_at'),
    default_sort=('created_at', 'DESC'),
    max_limit=MAX_LIMIT,
)

VISITS_CONFIG = QueryConfig(
    search_fields=('patient__first_name', 'patient__last_name', 'visit_type', 'notes'),
    filterable_fields={
        'id': FieldSpec('integer'),
        'patient_id': FieldSpec('integer'),
        'dietitian_id': FieldSpec('integer'),
        'status': FieldSpec('enum', values=VISIT_STATUSES),
        'visit_type': FieldSpec('string'),
        'visit_date': FieldSpec('datetime'),
        'duration_minutes': FieldSpec('integer'),
        'sync_status': FieldSpec('string'),
        'created_at': FieldSpec('datetime'),
    },
    sortable_fields=('visit_date', 'status', 'created_at', 'duration_minutes'),
    default_sort=('visit_date', 'DESC'),
    max_limit=MAX_LIMIT,
)

INVOICES_CONFIG = QueryConfig(
    search_fields=('invoice_number', 'service_description', 'patient__first_name', 'patient__last_name'),
    filterable_fields={
        'id': FieldSpec('integer'),
        'patient_id': FieldSpec('integer'),
        'visit_id': FieldSpec('integer'),
        'dietitian_id': FieldSpec('integer'),
        'status': FieldSpec('enum', values=INVOICE_STATUSES),
        'invoice_number': FieldSpec('string'),
        'invoice_date': FieldSpec('date'),
        'due_date': FieldSpec('date'),
        'amount_total': FieldSpec('decimal'),
        'amount_paid': FieldSpec('decimal'),
        'created_at': FieldSpec('datetime'),
    },
    sortable_fields=('invoice_number', 'invoice_date', 'due_date', 'amount_total', 'status', 'created_at'),
    default_sort=('invoice_date', 'DESC'),
    max_limit=MAX_LIMIT,
)

CAMPAIGNS_CONFIG = QueryConfig(
    search_fields=('name', 'subject'),
    filterable_fields={
        'id': FieldSpec('integer'),
        'status': FieldSpec('enum', values=CAMPAIGN_STATUSES),
        'campaign_type': FieldSpec('enum', values=CAMPAIGN_TYPES),
        'created_by_id': FieldSpec('integer'),
        'scheduled_at': FieldSpec('datetime'),
        'sent_at': FieldSpec('datetime'),
        'created_at': FieldSpec('datetime'),
    },
    sortable_fields=('name', 'status', 'scheduled_at', 'sent_at', 'created_at'),
    default_sort=('created_at', 'DESC'),
    max_limit=MAX_LIMIT,
)

EMAIL_TEMPLATES_CONFIG = QueryConfig(
    search_fields=('name', 'slug', 'subject', 'description'),
    filterable_fields={
        'id': FieldSpec('integer'),
        'category': FieldSpec('string'),
        'is_active': FieldSpec('boolean'),
        'is_system': FieldSpec('boolean'),
        'slug': FieldSpec('string'),
        'created_at': FieldSpec('datetime'),
    },
    sortable_fields=('name', 'slug', 'category', 'version', 'created_at', 'updated_at'),
    default_sort=('name', 'ASC'),
    max_limit=MAX_LIMIT,
)
