"""
Staff account administration.

Only administrators may list, create or modify accounts and link
assistants to the dietitians they work for.
"""
from rest_framework.decorators import api_view, permission_classes
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from clinic.auth_views import serialize_user
from clinic.exceptions import ApiError, ConflictError, NotFoundError
from clinic.models import AssistantLink, User
from clinic.permissions import IsAdminRole, IsStaffRole
from clinic.serializers.auth import AssistantLinkSerializer, UserCreateSerializer, UserUpdateSerializer
from clinic.services.audit import log_action


def _get_user(pk) -> User:
    user = User.objects.filter(id=pk).first()
    if not user:
        raise NotFoundError('User not found', code='USER_NOT_FOUND')
    return user


@api_view(['GET', 'POST'])
@permission_classes([IsAuthenticated, IsAdminRole])
def users(request):
    if request.method == 'GET':
        qs = User.objects.all().order_by('last_name', 'first_name', 'id')
        role = request.query_params.get('role')
        if role:
            qs = qs.filter(role=role.upper())
        return Response({'ok': True, 'data': [serialize_user(u) for u in qs]})

    s = UserCreateSerializer(data=request.data)
    s.is_valid(raise_exception=True)
    v = s.validated_data
    if User.objects.filter(username=v['username']).exists():
        raise ConflictError('Username already taken', code='USERNAME_EXISTS')
    user = User.objects.create_user(
        username=v['username'], password=v['password'], email=v.get('email', ''),
        first_name=v.get('first_name', ''), last_name=v.get('last_name', ''),
        phone=v.get('phone', ''), role=v['role'],
    )
    log_action(user=request.user, action='user_create', object_type='user', object_id=user.id,
               detail={'role': user.role})
    return Response({'ok': True, 'data': serialize_user(user)}, status=201)


@api_view(['GET', 'PATCH'])
@permission_classes([IsAuthenticated, IsAdminRole])
def user_detail(request, pk: int):
    user = _get_user(pk)
    if request.method == 'GET':
        return Response({'ok': True, 'data': serialize_user(user)})

    s = UserUpdateSerializer(data=request.data)
    s.is_valid(raise_exception=True)
    v = s.validated_data
    if user.id == request.user.id and (v.get('is_active') is False or v.get('role', user.role) != user.role):
        raise ApiError('You cannot deactivate or demote your own account', code='SELF_UPDATE_FORBIDDEN')
    for key, value in v.items():
        setattr(user, key, value)
    user.save()
    log_action(user=request.user, action='user_update', object_type='user', object_id=user.id,
               detail={'fields': sorted(v.keys())})
    return Response({'ok': True, 'data': serialize_user(user)})


@api_view(['GET'])
@permission_classes([IsAuthenticated, IsStaffRole])
def dietitians(request):
    """Active dietitians, used by pickers in the staff UI."""
    qs = User.objects.filter(is_active=True, role__in=[User.ROLE_DIETITIAN, User.ROLE_ADMIN])
    return Response({'ok': True, 'data': [
        {'id': u.id, 'name': u.display_name, 'role': u.role} for u in qs.order_by('last_name', 'id')
    ]})


@api_view(['GET', 'POST'])
@permission_classes([IsAuthenticated, IsAdminRole])
def assistant_links(request):
    if request.method == 'GET':
        qs = AssistantLink.objects.select_related('assistant', 'dietitian').order_by('id')
        return Response({'ok': True, 'data': [
            {
                'id': link.id,
                'assistantId': link.assistant_id,
                'assistantName': link.assistant.display_name,
                'dietitianId': link.dietitian_id,
                'dietitianName': link.dietitian.display_name,
            }
            for link in qs
        ]})

    s = AssistantLinkSerializer(data=request.data)
    s.is_valid(raise_exception=True)
    assistant = _get_user(s.validated_data['assistant_id'])
    dietitian = _get_user(s.validated_data['dietitian_id'])
    if assistant.role != User.ROLE_ASSISTANT:
        raise ApiError('User is not an assistant', code='INVALID_ROLE')
    if dietitian.role not in (User.ROLE_DIETITIAN, User.ROLE_ADMIN):
        raise ApiError('User is not a dietitian', code='INVALID_ROLE')
    if AssistantLink.objects.filter(assistant=assistant, dietitian=dietitian).exists():
        raise ConflictError('Assistant is already linked to this dietitian', code='LINK_EXISTS')
    link = AssistantLink.objects.create(assistant=assistant, dietitian=dietitian)
    log_action(user=request.user, action='assistant_link', object_type='user', object_id=assistant.id,
               detail={'dietitianId': dietitian.id})
    return Response({'ok': True, 'data': {'id': link.id}}, status=201)


@api_view(['DELETE'])
@permission_classes([IsAuthenticated, IsAdminRole])
def assistant_link_delete(request, pk: int):
    deleted, _ = AssistantLink.objects.filter(id=pk).delete()
    if not deleted:
        raise NotFoundError('Link not found', code='LINK_NOT_FOUND')
    log_action(user=request.user, action='assistant_unlink', object_type='assistant_link', object_id=pk)
    return Response({'ok': True})
