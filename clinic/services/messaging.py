import logging
from typing import Optional, Tuple, List

import bleach
from asgiref.sync import async_to_sync
from channels.layers import get_channel_layer
from django.db import transaction
from django.db.models import Q
from django.utils import timezone

from clinic.exceptions import ApiError, ForbiddenError, NotFoundError
from clinic.models import Conversation, Message, Patient, User
from clinic.services.audit import log_action
from clinic.services.scope import can_access_patient, scoped_dietitian_ids

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 5000
SORTS = {
    'recent': ('-last_message_at', '-updated_at', '-id'),
    'oldest': ('last_message_at', 'updated_at', 'id'),
}


def _is_patient(user) -> bool:
    return getattr(user, 'role', None) == User.ROLE_PATIENT


def check_conversation_access(user, conversation: Conversation) -> bool:
    if not getattr(user, 'is_authenticated', False):
        return False
    if _is_patient(user):
        return conversation.patient.user_id == user.id
    if conversation.dietitian_id == user.id:
        return True
    ids = scoped_dietitian_ids(user)
    return ids is None or conversation.dietitian_id in ids


def get_conversation_for_user(user, conversation_id) -> Conversation:
    conv = Conversation.objects.select_related('patient', 'dietitian').filter(id=conversation_id).first()
    if not conv:
        raise NotFoundError('Conversation not found', code='CONVERSATION_NOT_FOUND')
    if not check_conversation_access(user, conv):
        raise ForbiddenError('No access to this conversation', code='FORBIDDEN_CONVERSATION')
    return conv


def open_conversation(user, *, patient_id=None, dietitian_id=None, title: str = '') -> Tuple[Conversation, bool]:
    """Get or create the conversation between a patient and a dietitian."""
    if _is_patient(user):
        patient = Patient.objects.filter(user=user).first()
        if not patient:
            raise NotFoundError('No patient record for this account', code='PATIENT_NOT_FOUND')
        dietitian = User.objects.filter(id=dietitian_id or patient.assigned_dietitian_id,
                                        role__in=[User.ROLE_DIETITIAN, User.ROLE_ADMIN]).first()
        if not dietitian:
            raise ApiError('Dietitian not found', code='DIETITIAN_NOT_FOUND')
        if dietitian.id != patient.assigned_dietitian_id and not patient.dietitians.filter(id=dietitian.id).exists():
            raise ForbiddenError('Dietitian does not follow this patient', code='FORBIDDEN_DIETITIAN')
    else:
        patient = Patient.objects.filter(id=patient_id).first()
        if not patient:
            raise NotFoundError('Patient not found', code='PATIENT_NOT_FOUND')
        if not can_access_patient(user, patient):
            raise ForbiddenError('Patient is not assigned to you', code='NOT_ASSIGNED_PATIENT')
        if dietitian_id:
            dietitian = User.objects.filter(id=dietitian_id, role__in=[User.ROLE_DIETITIAN, User.ROLE_ADMIN]).first()
            if not dietitian:
                raise ApiError('Dietitian not found', code='DIETITIAN_NOT_FOUND')
            ids = scoped_dietitian_ids(user)
            follows = dietitian.id == patient.assigned_dietitian_id or patient.dietitians.filter(id=dietitian.id).exists()
            if ids is not None and dietitian.id not in ids and not follows:
                raise ForbiddenError('Dietitian does not follow this patient', code='FORBIDDEN_DIETITIAN')
        elif user.role == User.ROLE_DIETITIAN:
            dietitian = user
        else:
            dietitian = patient.assigned_dietitian
        if not dietitian:
            raise ApiError('Dietitian not found', code='DIETITIAN_NOT_FOUND')
    conv, created = Conversation.objects.get_or_create(
        patient=patient, dietitian=dietitian,
        defaults={'title': bleach.clean((title or '').strip(), strip=True)[:255]},
    )
    return conv, created


def list_conversations(user, *, status: Optional[str] = None, q: Optional[str] = None, sort: str = 'recent',
                       limit: int = 20, offset: int = 0):
    qs = Conversation.objects.select_related('patient', 'dietitian')
    if _is_patient(user):
        qs = qs.filter(patient__user=user)
    else:
        ids = scoped_dietitian_ids(user)
        if ids is not None:
            qs = qs.filter(dietitian_id__in=ids + [user.id])
    if status:
        qs = qs.filter(status=status)
    if q:
        qs = qs.filter(Q(title__icontains=q) | Q(patient__first_name__icontains=q) | Q(patient__last_name__icontains=q))
    if sort == 'unread':
        field = 'patient_unread_count' if _is_patient(user) else 'dietitian_unread_count'
        ordering = (f'-{field}',) + SORTS['recent']
    else:
        ordering = SORTS.get(sort, SORTS['recent'])
    total = qs.count()
    limit = min(100, max(1, int(limit or 20)))
    offset = max(0, int(offset or 0))
    return qs.order_by(*ordering)[offset:offset + limit], total


def list_history(user, conversation: Conversation, limit: int = 50, offset: int = 0) -> Tuple[List[Message], int]:
    if not check_conversation_access(user, conversation):
        raise ForbiddenError('No access to this conversation', code='FORBIDDEN_CONVERSATION')
    limit = min(200, max(1, int(limit or 50)))
    offset = max(0, int(offset or 0))
    qs = Message.objects.filter(conversation=conversation)
    total = qs.count()
    # newest page first, returned oldest to newest
    msgs = list(qs.select_related('sender').order_by('-created_at', '-id')[offset:offset + limit])
    msgs.reverse()
    return msgs, total


def serialize_message(msg: Message) -> dict:
    return {
        'id': msg.id,
        'conversationId': msg.conversation_id,
        'senderId': msg.sender_id,
        'senderName': msg.sender.display_name if msg.sender_id else None,
        'content': msg.content,
        'createdAt': msg.created_at.isoformat(),
    }


@transaction.atomic
def send_message(conversation: Conversation, sender, content: str) -> Message:
    if not check_conversation_access(sender, conversation):
        raise ForbiddenError('No access to this conversation', code='FORBIDDEN_CONVERSATION')
    content = bleach.clean((content or '').strip(), strip=True)
    if not content:
        raise ApiError('Message cannot be empty', code='EMPTY_MESSAGE')
    if len(content) > MAX_MESSAGE_LENGTH:
        raise ApiError(f'Message must be at most {MAX_MESSAGE_LENGTH} characters', code='MESSAGE_TOO_LONG')

    msg = Message.objects.create(conversation=conversation, sender=sender, content=content)
    conversation.last_message_at = msg.created_at
    if _is_patient(sender):
        conversation.dietitian_unread_count += 1
    else:
        conversation.patient_unread_count += 1
    conversation.status = Conversation.STATUS_OPEN
    conversation.save(update_fields=['last_message_at', 'dietitian_unread_count', 'patient_unread_count',
                                     'status', 'updated_at'])

    log_action(user=sender, action='message_send', object_type='conversation', object_id=conversation.id,
               detail={'messageId': msg.id})

    payload = {
        **serialize_message(msg),
        'dietitianUnread': conversation.dietitian_unread_count,
        'patientUnread': conversation.patient_unread_count,
        'status': conversation.status,
    }
    transaction.on_commit(lambda: broadcast_message(conversation.id, payload))
    return msg


def broadcast_message(conversation_id: int, payload: dict) -> None:
    channel_layer = get_channel_layer()
    if channel_layer is None:
        return
    async_to_sync(channel_layer.group_send)(
        f'conversation.{conversation_id}', {'type': 'conversation.message', 'payload': payload},
    )


def mark_read(user, conversation: Conversation) -> Conversation:
    if not check_conversation_access(user, conversation):
        raise ForbiddenError('No access to this conversation', code='FORBIDDEN_CONVERSATION')
    if _is_patient(user):
        conversation.patient_unread_count = 0
    else:
        conversation.dietitian_unread_count = 0
    conversation.save(update_fields=['patient_unread_count', 'dietitian_unread_count'])
    return conversation


def set_status(user, conversation: Conversation, status: str) -> Conversation:
    if status not in (Conversation.STATUS_OPEN, Conversation.STATUS_CLOSED):
        raise ApiError('Invalid status', code='INVALID_STATUS')
    if _is_patient(user):
        raise ForbiddenError('Patients cannot change the conversation status', code='FORBIDDEN_CONVERSATION')
    conversation.status = status
    conversation.save(update_fields=['status', 'updated_at'])
    return conversation


def unread_total(user) -> int:
    if _is_patient(user):
        qs = Conversation.objects.filter(patient__user=user)
        field = 'patient_unread_count'
    else:
        qs = Conversation.objects.all()
        ids = scoped_dietitian_ids(user)
        if ids is not None:
            qs = qs.filter(dietitian_id__in=ids + [user.id])
        field = 'dietitian_unread_count'
    return sum(qs.values_list(field, flat=True))
