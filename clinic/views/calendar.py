"""
Google Calendar connection and synchronisation endpoints.
"""
from rest_framework.decorators import api_view, permission_classes
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from clinic.models import Visit
from clinic.permissions import IsStaffRole
from clinic.serializers.calendar import CallbackSerializer, SetCalendarSerializer, SyncSerializer
from clinic.services import auto_sync
from clinic.services import google_calendar as service


def _status(user) -> dict:
    return {
        'connected': service.is_connected(user),
        'calendarId': user.google_calendar_id,
        'syncEnabled': user.google_calendar_sync_enabled,
        'tokenExpiry': user.google_token_expiry.isoformat() if user.google_token_expiry else None,
        'lastSync': auto_sync.last_sync_time(user.id),
    }


def serialize_issue(v: Visit) -> dict:
    return {
        'visitId': v.id,
        'patientName': v.patient.full_name,
        'visitDate': v.visit_date.isoformat(),
        'syncStatus': v.sync_status,
        'syncErrorCount': v.sync_error_count,
        'lastSyncError': v.last_sync_error or None,
        'googleEventId': v.google_event_id,
    }


@api_view(['GET'])
@permission_classes([IsAuthenticated, IsStaffRole])
def auth_url(request):
    return Response({'ok': True, 'data': {'authUrl': service.get_auth_url(request.user)}})


@api_view(['POST'])
@permission_classes([IsAuthenticated, IsStaffRole])
def callback(request):
    """Exchange the OAuth code forwarded by the front end for tokens."""
    s = CallbackSerializer(data=request.data)
    s.is_valid(raise_exception=True)
    tokens = service.exchange_code(s.validated_data['code'])
    user = service.save_user_tokens(request.user, tokens)
    return Response({'ok': True, 'data': _status(user)})


@api_view(['POST'])
@permission_classes([IsAuthenticated, IsStaffRole])
def disconnect(request):
    user = service.disconnect(request.user)
    auto_sync.reset(user.id)
    return Response({'ok': True, 'data': _status(user)})


@api_view(['GET'])
@permission_classes([IsAuthenticated, IsStaffRole])
def status(request):
    return Response({'ok': True, 'data': _status(request.user)})


@api_view(['GET', 'PUT'])
@permission_classes([IsAuthenticated, IsStaffRole])
def calendars(request):
    if request.method == 'PUT':
        s = SetCalendarSerializer(data=request.data)
        s.is_valid(raise_exception=True)
        calendar_id = s.validated_data['calendar_id']
        if service.is_connected(request.user) and not service.validate_calendar_access(request.user, calendar_id):
            raise service.CalendarSyncError(f'Calendar {calendar_id} is not accessible',
                                            code='CALENDAR_NOT_ACCESSIBLE', status_code=400)
        user = service.set_calendar(request.user, calendar_id, s.validated_data.get('sync_enabled'))
        return Response({'ok': True, 'data': _status(user)})

    return Response({'ok': True, 'data': service.list_calendars(request.user)})


@api_view(['POST'])
@permission_classes([IsAuthenticated, IsStaffRole])
def sync(request):
    s = SyncSerializer(data=request.data)
    s.is_valid(raise_exception=True)
    v = s.validated_data
    user = request.user
    if v['direction'] == 'to_calendar':
        result = service.sync_visits_to_calendar(user, since=v.get('since'), calendar_id=v.get('calendar_id'),
                                                 all_dietitians=v['all_dietitians'])
    elif v['direction'] == 'from_calendar':
        result = service.sync_calendar_to_visits(user, since=v.get('since'), calendar_id=v.get('calendar_id'))
    else:
        result = auto_sync.force_sync(user, since=v.get('since'), all_dietitians=v['all_dietitians'])
    return Response({'ok': True, 'data': result})


@api_view(['GET'])
@permission_classes([IsAuthenticated, IsStaffRole])
def issues(request):
    return Response({'ok': True, 'data': [serialize_issue(v) for v in service.sync_issues(request.user)[:100]]})


@api_view(['POST'])
@permission_classes([IsAuthenticated, IsStaffRole])
def retry(request):
    count = service.reset_sync_errors(request.user)
    return Response({'ok': True, 'data': {'reset': count}})
