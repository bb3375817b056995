"""
Conversation endpoints shared by staff and the patient portal.

Access to a conversation is decided by ``messaging.check_conversation_access``;
these views only validate input and shape the response.
"""
from __future__ import annotations

from rest_framework.decorators import api_view, permission_classes
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from clinic.models import Conversation
from clinic.serializers.messaging import (
    ConversationListQuerySerializer, ConversationOpenSerializer, ConversationStatusSerializer,
    HistoryQuerySerializer, MessageSendSerializer,
)
from clinic.services import messaging as service


def serialize_conversation(conv: Conversation) -> dict:
    return {
        'id': conv.id,
        'title': conv.title,
        'status': conv.status,
        'patient': {'id': conv.patient_id, 'name': conv.patient.full_name},
        'dietitian': {'id': conv.dietitian_id, 'name': conv.dietitian.display_name},
        'dietitianUnread': conv.dietitian_unread_count,
        'patientUnread': conv.patient_unread_count,
        'lastMessageAt': conv.last_message_at.isoformat() if conv.last_message_at else None,
        'createdAt': conv.created_at.isoformat(),
    }


@api_view(['GET', 'POST'])
@permission_classes([IsAuthenticated])
def conversations(request):
    if request.method == 'POST':
        s = ConversationOpenSerializer(data=request.data)
        s.is_valid(raise_exception=True)
        v = s.validated_data
        conv, created = service.open_conversation(
            request.user, patient_id=v.get('patientId'), dietitian_id=v.get('dietitianId'), title=v.get('title', ''),
        )
        return Response({'ok': True, 'created': created, 'data': serialize_conversation(conv)},
                        status=201 if created else 200)

    q = ConversationListQuerySerializer(data=request.query_params)
    q.is_valid(raise_exception=True)
    v = q.validated_data
    page, total = service.list_conversations(request.user, status=v.get('status'), q=v.get('q'),
                                             sort=v['sort'], limit=v['limit'], offset=v['offset'])
    return Response({
        'ok': True,
        'data': [serialize_conversation(c) for c in page],
        'pagination': {'total': total, 'limit': v['limit'], 'offset': v['offset']},
    })


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def conversation_detail(request, pk: int):
    conv = service.get_conversation_for_user(request.user, pk)
    return Response({'ok': True, 'data': serialize_conversation(conv)})


@api_view(['GET', 'POST'])
@permission_classes([IsAuthenticated])
def conversation_messages(request, pk: int):
    conv = service.get_conversation_for_user(request.user, pk)
    if request.method == 'POST':
        s = MessageSendSerializer(data=request.data)
        s.is_valid(raise_exception=True)
        msg = service.send_message(conv, request.user, s.validated_data['content'])
        return Response({'ok': True, 'data': service.serialize_message(msg)}, status=201)

    q = HistoryQuerySerializer(data=request.query_params)
    q.is_valid(raise_exception=True)
    v = q.validated_data
    msgs, total = service.list_history(request.user, conv, limit=v['limit'], offset=v['offset'])
    return Response({
        'ok': True,
        'data': [service.serialize_message(m) for m in msgs],
        'pagination': {'total': total, 'limit': v['limit'], 'offset': v['offset']},
    })


@api_view(['POST'])
@permission_classes([IsAuthenticated])
def conversation_read(request, pk: int):
    conv = service.mark_read(request.user, service.get_conversation_for_user(request.user, pk))
    return Response({'ok': True, 'data': serialize_conversation(conv)})


@api_view(['POST'])
@permission_classes([IsAuthenticated])
def conversation_status(request, pk: int):
    conv = service.get_conversation_for_user(request.user, pk)
    s = ConversationStatusSerializer(data=request.data)
    s.is_valid(raise_exception=True)
    conv = service.set_status(request.user, conv, s.validated_data['status'])
    return Response({'ok': True, 'data': serialize_conversation(conv)})


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def unread_count(request):
    return Response({'ok': True, 'data': {'unread': service.unread_total(request.user)}})
