"""
Authentication views.

Login hands out both a legacy DRF token and a SimpleJWT access/refresh
pair so that older clients keep working while new ones move to JWT.
These views live apart from ``clinic.authentication`` to avoid circular
imports while DRF initialises its authentication classes.
"""
from __future__ import annotations

from django.contrib.auth import authenticate
from django.contrib.auth.password_validation import validate_password
from django.core.exceptions import ValidationError as DjangoValidationError
from rest_framework.authtoken.models import Token
from rest_framework.decorators import api_view, permission_classes, throttle_classes
from rest_framework.permissions import AllowAny, IsAuthenticated
from rest_framework.response import Response
from rest_framework_simplejwt.exceptions import TokenError
from rest_framework_simplejwt.token_blacklist.models import BlacklistedToken, OutstandingToken
from rest_framework_simplejwt.tokens import RefreshToken
from rest_framework_simplejwt.views import TokenRefreshView

from clinic.exceptions import ApiError
from clinic.models import AssistantLink, Patient, User
from clinic.serializers.auth import ChangePasswordSerializer, LoginSerializer
from clinic.services.audit import log_action
from clinic.throttling import LoginRateThrottle


def serialize_user(user: User) -> dict:
    data = {
        'id': user.id,
        'username': user.username,
        'name': user.display_name,
        'firstName': user.first_name,
        'lastName': user.last_name,
        'email': user.email,
        'role': user.role,
        'isActive': user.is_active,
        'calendarConnected': bool(user.google_access_token),
    }
    if user.role == User.ROLE_ASSISTANT:
        data['dietitianIds'] = list(
            AssistantLink.objects.filter(assistant=user).values_list('dietitian_id', flat=True)
        )
    if user.role == User.ROLE_PATIENT:
        data['patientId'] = Patient.objects.filter(user=user).values_list('id', flat=True).first()
    return data


@api_view(['POST'])
@permission_classes([AllowAny])
@throttle_classes([LoginRateThrottle])
def login_view(request):
    s = LoginSerializer(data=request.data)
    s.is_valid(raise_exception=True)
    username = s.validated_data['username']
    password = s.validated_data['password']

    user = authenticate(request, username=username, password=password)
    if not user:
        log_action(user=None, action='login', object_type='user',
                   detail={'result': 'fail', 'username': username, 'ip': request.META.get('REMOTE_ADDR')})
        raise ApiError('Invalid username or password', code='INVALID_CREDENTIALS', status_code=401)

    log_action(user=user, action='login', object_type='user', object_id=user.id,
               detail={'result': 'ok', 'ip': request.META.get('REMOTE_ADDR')})

    token_obj, _ = Token.objects.get_or_create(user=user)
    refresh = RefreshToken.for_user(user)
    return Response({
        'ok': True,
        'token': token_obj.key,
        'jwt_access': str(refresh.access_token),
        'jwt_refresh': str(refresh),
        'role': user.role,
        'user': serialize_user(user),
    })


@api_view(['POST'])
@permission_classes([AllowAny])
def jwt_refresh_view(request):
    """Return a new access token from a refresh token."""
    resp = TokenRefreshView.as_view()(request._request)
    if isinstance(resp, Response):
        data = dict(resp.data)
        if 'access' in data:
            data['jwt_access'] = data.pop('access')
        if 'refresh' in data:
            data['jwt_refresh'] = data.pop('refresh')
        if resp.status_code == 200:
            data['ok'] = True
        return Response(data, status=resp.status_code)
    return resp


@api_view(['POST'])
@permission_classes([IsAuthenticated])
def jwt_logout_view(request):
    """Blacklist the given refresh token, or every outstanding token of the user."""
    refresh = request.data.get('refresh')
    count = 0
    if refresh:
        try:
            RefreshToken(refresh).blacklist()
            count = 1
        except TokenError as exc:
            raise ApiError(str(exc), code='INVALID_TOKEN')
    else:
        for token in OutstandingToken.objects.filter(user=request.user):
            _, created = BlacklistedToken.objects.get_or_create(token=token)
            count += int(created)
    Token.objects.filter(user=request.user).delete()
    log_action(user=request.user, action='logout', object_type='user', object_id=request.user.id)
    return Response({'ok': True, 'blacklisted': count})


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def me_view(request):
    return Response({'ok': True, 'data': serialize_user(request.user)})


@api_view(['POST'])
@permission_classes([IsAuthenticated])
def change_password_view(request):
    s = ChangePasswordSerializer(data=request.data)
    s.is_valid(raise_exception=True)
    user = request.user
    if not user.check_password(s.validated_data['old_password']):
        raise ApiError('Current password is incorrect', code='INVALID_PASSWORD')
    try:
        validate_password(s.validated_data['new_password'], user=user)
    except DjangoValidationError as exc:
        raise ApiError(' '.join(exc.messages), code='WEAK_PASSWORD')
    user.set_password(s.validated_data['new_password'])
    user.save(update_fields=['password'])
    log_action(user=user, action='change_password', object_type='user', object_id=user.id)
    return Response({'ok': True})
