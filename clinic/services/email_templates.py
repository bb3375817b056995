import logging
from typing import Optional, Dict, Any

from django.db import transaction
from django.db.models import Count
from django.utils import timezone
from django.utils.text import slugify

from clinic.exceptions import ApiError, ConflictError, NotFoundError
from clinic.models import EmailTemplate
from clinic.services import templates as renderer
from clinic.services.audit import log_action
from clinic.services.default_templates import DEFAULT_TEMPLATES
from clinic.services.email import send_email

logger = logging.getLogger(__name__)

CONTENT_FIELDS = ('subject', 'body_html', 'body_text')
EDITABLE_FIELDS = ('name', 'slug', 'category', 'description', 'subject', 'body_html', 'body_text',
                   'available_variables', 'is_active')


def live_templates():
    return EmailTemplate.objects.filter(deleted_at__isnull=True)


def get_template(template_id) -> EmailTemplate:
    tpl = live_templates().filter(id=template_id).first()
    if not tpl:
        raise NotFoundError('Email template not found', code='TEMPLATE_NOT_FOUND')
    return tpl


def check_variables(data: Dict[str, Any], available) -> None:
    """Reject content that uses placeholders outside ``available``."""
    missing = set()
    for field in CONTENT_FIELDS:
        result = renderer.validate_variables(data.get(field) or '', available)
        missing.update(result['missing'])
    if missing:
        raise ApiError(f"Unknown template variables: {', '.join(sorted(missing))}", code='INVALID_VARIABLES')


@transaction.atomic
def create_template(user, data: Dict[str, Any]) -> EmailTemplate:
    slug = data.get('slug') or slugify(data['name'])[:100]
    if EmailTemplate.objects.filter(slug=slug).exists():
        raise ConflictError(f'Template slug {slug} already exists', code='SLUG_EXISTS')
    category = data.get('category') or 'general'
    variables = data.get('available_variables') or renderer.available_variables(category)
    check_variables(data, variables)
    tpl = EmailTemplate.objects.create(
        name=data['name'],
        slug=slug,
        category=category,
        description=data.get('description') or '',
        subject=data['subject'],
        body_html=data['body_html'],
        body_text=data.get('body_text') or '',
        available_variables=list(variables),
        is_active=data.get('is_active', True),
        is_system=bool(data.get('is_system', False)),
        created_by=user,
        updated_by=user,
    )
    log_action(user=user, action='email_template_create', object_type='email_template', object_id=tpl.id)
    return tpl


@transaction.atomic
def update_template(user, tpl: EmailTemplate, data: Dict[str, Any]) -> EmailTemplate:
    changes = {k: v for k, v in data.items() if k in EDITABLE_FIELDS}
    if tpl.is_system:
        # system templates are referenced by slug from code
        changes.pop('slug', None)
        changes.pop('category', None)
    new_slug = changes.get('slug')
    if new_slug and new_slug != tpl.slug and EmailTemplate.objects.filter(slug=new_slug).exclude(id=tpl.id).exists():
        raise ConflictError(f'Template slug {new_slug} already exists', code='SLUG_EXISTS')

    category = changes.get('category', tpl.category)
    if 'available_variables' not in changes and category != tpl.category:
        changes['available_variables'] = renderer.available_variables(category)
    variables = changes.get('available_variables', tpl.available_variables) or renderer.available_variables(category)
    merged = {f: changes.get(f, getattr(tpl, f)) for f in CONTENT_FIELDS}
    check_variables(merged, variables)

    content_changed = any(f in changes and changes[f] != getattr(tpl, f) for f in CONTENT_FIELDS)
    for key, value in changes.items():
        setattr(tpl, key, value)
    if content_changed:
        tpl.version += 1
    tpl.updated_by = user
    tpl.save()
    log_action(user=user, action='email_template_update', object_type='email_template', object_id=tpl.id,
               detail={'version': tpl.version})
    return tpl


def delete_template(user, tpl: EmailTemplate) -> None:
    if tpl.is_system:
        raise ApiError('System templates cannot be deleted', code='SYSTEM_TEMPLATE')
    tpl.deleted_at = timezone.now()
    tpl.is_active = False
    tpl.save(update_fields=['deleted_at', 'is_active', 'updated_at'])
    log_action(user=user, action='email_template_delete', object_type='email_template', object_id=tpl.id)


@transaction.atomic
def duplicate_template(user, tpl: EmailTemplate, name: Optional[str] = None) -> EmailTemplate:
    base = f'{tpl.slug}-copy'[:95]
    slug = base
    n = 1
    while EmailTemplate.objects.filter(slug=slug).exists():
        n += 1
        slug = f'{base}-{n}'
    copy = EmailTemplate.objects.create(
        name=name or f'{tpl.name} (copie)',
        slug=slug,
        category=tpl.category,
        description=tpl.description,
        subject=tpl.subject,
        body_html=tpl.body_html,
        body_text=tpl.body_text,
        available_variables=list(tpl.available_variables or []),
        is_active=tpl.is_active,
        is_system=False,
        created_by=user,
        updated_by=user,
    )
    log_action(user=user, action='email_template_duplicate', object_type='email_template', object_id=copy.id,
               detail={'source': tpl.id})
    return copy


def toggle_active(user, tpl: EmailTemplate) -> EmailTemplate:
    tpl.is_active = not tpl.is_active
    tpl.updated_by = user
    tpl.save(update_fields=['is_active', 'updated_by', 'updated_at'])
    return tpl


def preview_template(tpl: EmailTemplate, variables: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    context = renderer.sample_variables(tpl.category)
    context.update(variables or {})
    rendered = renderer.render_template(tpl, context)
    available = tpl.available_variables or renderer.available_variables(tpl.category)
    used, missing = set(), set()
    for field in ('subject', 'body_html'):
        result = renderer.validate_variables(getattr(tpl, field), available)
        used.update(result['used'])
        missing.update(result['missing'])
    rendered['variablesUsed'] = context
    rendered['validation'] = {'valid': not missing, 'missing': sorted(missing), 'used': sorted(used)}
    return rendered


def send_test_email(user, tpl: EmailTemplate, to: Optional[str] = None, variables: Optional[Dict[str, Any]] = None):
    to = to or user.email
    if not to:
        raise ApiError('No recipient address', code='NO_RECIPIENT')
    context = renderer.sample_variables(tpl.category)
    context.update(variables or {})
    rendered = renderer.render_template(tpl, context)
    entry = send_email(to, f"[TEST] {rendered['subject']}", rendered['html'], rendered['text'],
                       template=tpl, email_type='test', sent_by=user, variables=context)
    if entry.status != entry.STATUS_SENT:
        raise ApiError(f'Email delivery failed: {entry.error_message}', code='EMAIL_FAILED', status_code=502)
    return entry


def template_stats() -> Dict[str, Any]:
    qs = live_templates()
    by_category = {row['category']: row['n'] for row in qs.values('category').annotate(n=Count('id'))}
    return {
        'total': qs.count(),
        'active': qs.filter(is_active=True).count(),
        'system': qs.filter(is_system=True).count(),
        'byCategory': by_category,
    }


def seed_defaults(user=None) -> int:
    """Install missing system templates; existing slugs are left untouched."""
    created = 0
    for spec in DEFAULT_TEMPLATES:
        _, was_created = EmailTemplate.objects.get_or_create(
            slug=spec['slug'],
            defaults={
                'name': spec['name'],
                'category': spec['category'],
                'description': spec['description'],
                'subject': spec['subject'],
                'body_html': spec['body_html'],
                'body_text': spec['body_text'],
                'available_variables': renderer.available_variables(spec['category']),
                'is_system': True,
                'created_by': user,
            },
        )
        if was_created:
            created += 1
            logger.info('Installed email template %s', spec['slug'])
    return created
