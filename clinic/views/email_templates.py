"""
Email template library endpoints.

Templates are shared by the whole practice; only administrators and
dietitians may change them, assistants can read and preview.
"""
from rest_framework.decorators import api_view, permission_classes
from rest_framework.exceptions import PermissionDenied
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from clinic.models import EmailTemplate, User
from clinic.permissions import IsStaffRole
from clinic.query_configs import EMAIL_TEMPLATES_CONFIG
from clinic.querybuilder import QueryBuilder
from clinic.serializers.email_templates import (
    CATEGORIES, DuplicateSerializer, EmailTemplateSerializer, EmailTemplateUpdateSerializer, PreviewSerializer,
    SendTestSerializer,
)
from clinic.services import email_templates as service
from clinic.services import templates as renderer


def _require_editor(user) -> None:
    if user.role not in (User.ROLE_ADMIN, User.ROLE_DIETITIAN):
        raise PermissionDenied('Only administrators and dietitians can modify templates')


def serialize_template(t: EmailTemplate, detail: bool = False) -> dict:
    data = {
        'id': t.id,
        'name': t.name,
        'slug': t.slug,
        'category': t.category,
        'description': t.description,
        'subject': t.subject,
        'version': t.version,
        'isActive': t.is_active,
        'isSystem': t.is_system,
        'createdAt': t.created_at.isoformat(),
        'updatedAt': t.updated_at.isoformat(),
    }
    if detail:
        data.update({
            'bodyHtml': t.body_html,
            'bodyText': t.body_text,
            'availableVariables': t.available_variables or renderer.available_variables(t.category),
            'createdBy': t.created_by_id,
            'updatedBy': t.updated_by_id,
        })
    return data


@api_view(['GET', 'POST'])
@permission_classes([IsAuthenticated, IsStaffRole])
def email_templates(request):
    if request.method == 'POST':
        _require_editor(request.user)
        s = EmailTemplateSerializer(data=request.data)
        s.is_valid(raise_exception=True)
        tpl = service.create_template(request.user, s.validated_data)
        return Response({'ok': True, 'data': serialize_template(tpl, detail=True)}, status=201)

    plan = QueryBuilder(EMAIL_TEMPLATES_CONFIG).build(request.query_params)
    page, total = plan.apply(service.live_templates())
    return Response({'ok': True, 'data': [serialize_template(t) for t in page], 'pagination': plan.pagination(total)})


@api_view(['GET', 'PUT', 'PATCH', 'DELETE'])
@permission_classes([IsAuthenticated, IsStaffRole])
def email_template_detail(request, pk: int):
    tpl = service.get_template(pk)
    if request.method == 'GET':
        return Response({'ok': True, 'data': serialize_template(tpl, detail=True)})
    _require_editor(request.user)
    if request.method == 'DELETE':
        service.delete_template(request.user, tpl)
        return Response({'ok': True})

    s = EmailTemplateUpdateSerializer(data=request.data)
    s.is_valid(raise_exception=True)
    tpl = service.update_template(request.user, tpl, s.validated_data)
    return Response({'ok': True, 'data': serialize_template(tpl, detail=True)})


@api_view(['POST'])
@permission_classes([IsAuthenticated, IsStaffRole])
def email_template_duplicate(request, pk: int):
    _require_editor(request.user)
    tpl = service.get_template(pk)
    s = DuplicateSerializer(data=request.data)
    s.is_valid(raise_exception=True)
    copy = service.duplicate_template(request.user, tpl, s.validated_data.get('name'))
    return Response({'ok': True, 'data': serialize_template(copy, detail=True)}, status=201)


@api_view(['POST'])
@permission_classes([IsAuthenticated, IsStaffRole])
def email_template_toggle(request, pk: int):
    _require_editor(request.user)
    tpl = service.toggle_active(request.user, service.get_template(pk))
    return Response({'ok': True, 'data': serialize_template(tpl)})


@api_view(['POST'])
@permission_classes([IsAuthenticated, IsStaffRole])
def email_template_preview(request, pk: int):
    tpl = service.get_template(pk)
    s = PreviewSerializer(data=request.data)
    s.is_valid(raise_exception=True)
    return Response({'ok': True, 'data': service.preview_template(tpl, s.validated_data.get('variables'))})


@api_view(['POST'])
@permission_classes([IsAuthenticated, IsStaffRole])
def email_template_send_test(request, pk: int):
    tpl = service.get_template(pk)
    s = SendTestSerializer(data=request.data)
    s.is_valid(raise_exception=True)
    entry = service.send_test_email(request.user, tpl, s.validated_data.get('to'), s.validated_data.get('variables'))
    return Response({'ok': True, 'data': {'emailLogId': entry.id, 'sentTo': entry.sent_to}})


@api_view(['GET'])
@permission_classes([IsAuthenticated, IsStaffRole])
def email_template_variables(request, category: str):
    if category not in CATEGORIES:
        category = 'general'
    return Response({'ok': True, 'data': {'category': category, 'variables': renderer.available_variables(category)}})


@api_view(['GET'])
@permission_classes([IsAuthenticated, IsStaffRole])
def email_template_stats(request):
    return Response({'ok': True, 'data': service.template_stats()})
