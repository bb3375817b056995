"""
Email campaign endpoints.

Campaigns belong to the user who created them; assistants see the
campaigns of the dietitians they work for.
"""
from rest_framework.decorators import api_view, permission_classes
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from clinic.models import EmailCampaign, EmailCampaignRecipient
from clinic.permissions import IsStaffRole
from clinic.query_configs import CAMPAIGNS_CONFIG
from clinic.querybuilder import QueryBuilder
from clinic.serializers.campaigns import (
    AudiencePreviewSerializer, CampaignSerializer, CampaignUpdateSerializer, RecipientQuerySerializer,
    ScheduleSerializer,
)
from clinic.services import audience
from clinic.services import campaigns as service


def _iso(value):
    return value.isoformat() if value else None


def serialize_campaign(c: EmailCampaign, stats: bool = False) -> dict:
    data = {
        'id': c.id,
        'name': c.name,
        'subject': c.subject,
        'status': c.status,
        'campaignType': c.campaign_type,
        'scheduledAt': _iso(c.scheduled_at),
        'sentAt': _iso(c.sent_at),
        'recipientCount': c.recipient_count,
        'createdBy': {'id': c.created_by_id, 'name': c.created_by.display_name} if c.created_by_id else None,
        'sender': {'id': c.sender_id, 'name': c.sender.display_name} if c.sender_id else None,
        'createdAt': _iso(c.created_at),
        'updatedAt': _iso(c.updated_at),
    }
    if stats:
        data.update({
            'bodyHtml': c.body_html,
            'bodyText': c.body_text,
            'targetAudience': c.target_audience,
            'canEdit': c.can_edit(),
            'canSend': c.can_send(),
            'canCancel': c.can_cancel(),
            'stats': service.recipient_stats(c),
        })
    return data


def serialize_recipient(r: EmailCampaignRecipient) -> dict:
    return {
        'id': r.id,
        'patientId': r.patient_id,
        'patientName': r.patient.full_name if r.patient_id else None,
        'email': r.email,
        'status': r.status,
        'sentAt': _iso(r.sent_at),
        'openedAt': _iso(r.opened_at),
        'clickedAt': _iso(r.clicked_at),
        'errorMessage': r.error_message or None,
    }


@api_view(['GET', 'POST'])
@permission_classes([IsAuthenticated, IsStaffRole])
def campaigns(request):
    if request.method == 'POST':
        s = CampaignSerializer(data=request.data)
        s.is_valid(raise_exception=True)
        campaign = service.create_campaign(request.user, s.validated_data)
        return Response({'ok': True, 'data': serialize_campaign(campaign, stats=True)}, status=201)

    plan = QueryBuilder(CAMPAIGNS_CONFIG).build(request.query_params)
    page, total = plan.apply(service.scoped_campaigns(request.user))
    return Response({'ok': True, 'data': [serialize_campaign(c) for c in page], 'pagination': plan.pagination(total)})


@api_view(['GET', 'PUT', 'PATCH', 'DELETE'])
@permission_classes([IsAuthenticated, IsStaffRole])
def campaign_detail(request, pk: int):
    campaign = service.get_campaign_for_user(request.user, pk)
    if request.method == 'GET':
        return Response({'ok': True, 'data': serialize_campaign(campaign, stats=True)})
    if request.method == 'DELETE':
        service.delete_campaign(request.user, campaign)
        return Response({'ok': True})

    s = CampaignUpdateSerializer(data=request.data)
    s.is_valid(raise_exception=True)
    campaign = service.update_campaign(request.user, campaign, s.validated_data)
    return Response({'ok': True, 'data': serialize_campaign(campaign, stats=True)})


@api_view(['POST'])
@permission_classes([IsAuthenticated, IsStaffRole])
def campaign_duplicate(request, pk: int):
    campaign = service.get_campaign_for_user(request.user, pk)
    copy = service.duplicate_campaign(request.user, campaign)
    return Response({'ok': True, 'data': serialize_campaign(copy, stats=True)}, status=201)


@api_view(['POST'])
@permission_classes([IsAuthenticated, IsStaffRole])
def campaign_preview_audience(request, pk: int):
    campaign = service.get_campaign_for_user(request.user, pk)
    return Response({'ok': True, 'data': service.preview_campaign_audience(campaign, request.user)})


@api_view(['POST'])
@permission_classes([IsAuthenticated, IsStaffRole])
def preview_audience(request):
    """Preview criteria that are not saved on a campaign yet."""
    s = AudiencePreviewSerializer(data=request.data)
    s.is_valid(raise_exception=True)
    criteria = s.validated_data.get('criteria') or {}
    return Response({'ok': True, 'data': audience.preview_audience(criteria, request.user)})


@api_view(['GET'])
@permission_classes([IsAuthenticated, IsStaffRole])
def segment_fields(request):
    return Response({'ok': True, 'data': audience.segment_fields(request.user)})


@api_view(['POST'])
@permission_classes([IsAuthenticated, IsStaffRole])
def campaign_send(request, pk: int):
    campaign = service.get_campaign_for_user(request.user, pk)
    campaign = service.send_campaign_now(request.user, campaign)
    return Response({'ok': True, 'message': 'Campaign is being sent', 'data': serialize_campaign(campaign)})


@api_view(['POST'])
@permission_classes([IsAuthenticated, IsStaffRole])
def campaign_schedule(request, pk: int):
    campaign = service.get_campaign_for_user(request.user, pk)
    s = ScheduleSerializer(data=request.data)
    s.is_valid(raise_exception=True)
    campaign = service.schedule_campaign(request.user, campaign, s.validated_data['scheduled_at'])
    return Response({'ok': True, 'data': serialize_campaign(campaign)})


@api_view(['POST'])
@permission_classes([IsAuthenticated, IsStaffRole])
def campaign_cancel(request, pk: int):
    campaign = service.get_campaign_for_user(request.user, pk)
    campaign = service.cancel_campaign(request.user, campaign)
    return Response({'ok': True, 'data': serialize_campaign(campaign)})


@api_view(['GET'])
@permission_classes([IsAuthenticated, IsStaffRole])
def campaign_stats(request, pk: int):
    campaign = service.get_campaign_for_user(request.user, pk)
    return Response({'ok': True, 'data': service.campaign_stats(campaign)})


@api_view(['GET'])
@permission_classes([IsAuthenticated, IsStaffRole])
def campaign_recipients(request, pk: int):
    campaign = service.get_campaign_for_user(request.user, pk)
    q = RecipientQuerySerializer(data=request.query_params)
    q.is_valid(raise_exception=True)
    v = q.validated_data
    page, total = service.list_recipients(campaign, status=v.get('status'), search=v.get('search'),
                                          limit=v['limit'], offset=v['offset'])
    return Response({
        'ok': True,
        'data': [serialize_recipient(r) for r in page],
        'pagination': {'total': total, 'limit': v['limit'], 'offset': v['offset']},
    })
