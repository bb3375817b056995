"""
Google Calendar synchronisation for visits.

The Calendar v3 REST API and the OAuth 2.0 token endpoint are called
directly with ``requests``.  Every visit pushed to Google carries its
ids in the event's private extended properties so that changes made in
the calendar can be matched back to the visit.

Conflicts are resolved by modification time: when pushing, an event
updated in Google after the visit was last modified is left alone;
when pulling, an event updated after the visit (or after its last sync)
overwrites the visit's date and duration.
"""
import logging
from datetime import datetime, time as dtime, timedelta
from typing import Optional, Dict, Any, List
from urllib.parse import quote, urlencode

import requests
from django.conf import settings
from django.utils import timezone
from django.utils.dateparse import parse_date, parse_datetime

from clinic.exceptions import ApiError
from clinic.models import User, Visit
from clinic.services.audit import log_action
from clinic.services.scope import scoped_visits

logger = logging.getLogger(__name__)

AUTH_URL = 'https://accounts.google.com/o/oauth2/v2/auth'
TOKEN_URL = 'https://oauth2.googleapis.com/token'
API_BASE = 'https://www.googleapis.com/calendar/v3'
SCOPES = [
    'https://www.googleapis.com/auth/calendar',
    'https://www.googleapis.com/auth/calendar.events',
]
ACCESSIBLE_ROLES = ('owner', 'writer', 'reader')
PROP_VISIT = 'practice_visit_id'
PROP_PATIENT = 'practice_patient_id'
PROP_DIETITIAN = 'practice_dietitian_id'


class CalendarSyncError(ApiError):
    status_code = 502
    default_code = 'CALENDAR_ERROR'

    def __init__(self, message, *, code=None, status_code=None, http_status=None):
        super().__init__(message, code=code, status_code=status_code)
        self.http_status = http_status


def _not_connected(user) -> CalendarSyncError:
    return CalendarSyncError(f'User {user.username} is not connected to Google Calendar',
                             code='CALENDAR_NOT_CONNECTED', status_code=400)


def is_connected(user) -> bool:
    return bool(user.google_access_token)


# ---------------------------------------------------------------------------
# OAuth
# ---------------------------------------------------------------------------

def get_auth_url(user) -> str:
    params = {
        'client_id': settings.GOOGLE_CLIENT_ID,
        'redirect_uri': settings.GOOGLE_REDIRECT_URI,
        'response_type': 'code',
        'scope': ' '.join(SCOPES),
        'access_type': 'offline',
        'prompt': 'consent',
        'state': str(user.id),
    }
    return f'{AUTH_URL}?{urlencode(params)}'


def _token_request(data: Dict[str, str]) -> Dict[str, Any]:
    payload = {
        'client_id': settings.GOOGLE_CLIENT_ID,
        'client_secret': settings.GOOGLE_CLIENT_SECRET,
        **data,
    }
    try:
        r = requests.post(TOKEN_URL, data=payload, timeout=settings.GOOGLE_TIMEOUT)
    except requests.RequestException as exc:
        raise CalendarSyncError(f'Google token endpoint unreachable: {exc}')
    body = _json(r)
    if r.status_code >= 400 or 'error' in body:
        raise CalendarSyncError(
            f"Google OAuth error: {body.get('error_description') or body.get('error') or r.status_code}",
            code='CALENDAR_AUTH_FAILED', status_code=400, http_status=r.status_code,
        )
    return body


def exchange_code(code: str) -> Dict[str, Any]:
    return _token_request({
        'code': code,
        'grant_type': 'authorization_code',
        'redirect_uri': settings.GOOGLE_REDIRECT_URI,
    })


def save_user_tokens(user, tokens: Dict[str, Any]) -> User:
    user.google_access_token = tokens.get('access_token')
    # Google only returns a refresh token on the first consent
    if tokens.get('refresh_token'):
        user.google_refresh_token = tokens['refresh_token']
    expires_in = tokens.get('expires_in')
    user.google_token_expiry = timezone.now() + timedelta(seconds=int(expires_in)) if expires_in else None
    user.google_calendar_sync_enabled = True
    user.save(update_fields=['google_access_token', 'google_refresh_token', 'google_token_expiry',
                             'google_calendar_sync_enabled'])
    log_action(user=user, action='calendar_connect', object_type='user', object_id=user.id)
    return user


def refresh_access_token(user) -> str:
    if not user.google_refresh_token:
        raise _not_connected(user)
    tokens = _token_request({'refresh_token': user.google_refresh_token, 'grant_type': 'refresh_token'})
    user.google_access_token = tokens['access_token']
    expires_in = tokens.get('expires_in')
    user.google_token_expiry = timezone.now() + timedelta(seconds=int(expires_in)) if expires_in else None
    user.save(update_fields=['google_access_token', 'google_token_expiry'])
    logger.info('Refreshed Google access token for user %s', user.username)
    return user.google_access_token


def _access_token(user) -> str:
    if not user.google_access_token:
        raise _not_connected(user)
    expiry = user.google_token_expiry
    if expiry and user.google_refresh_token and expiry <= timezone.now() + timedelta(seconds=60):
        return refresh_access_token(user)
    return user.google_access_token


def disconnect(user) -> User:
    user.google_access_token = None
    user.google_refresh_token = None
    user.google_token_expiry = None
    user.google_calendar_sync_enabled = False
    user.google_calendar_id = 'primary'
    user.save(update_fields=['google_access_token', 'google_refresh_token', 'google_token_expiry',
                             'google_calendar_sync_enabled', 'google_calendar_id'])
    log_action(user=user, action='calendar_disconnect', object_type='user', object_id=user.id)
    return user


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------

def _json(response) -> Dict[str, Any]:
    try:
        return response.json()
    except ValueError:
        return {}


def _request(user, method: str, path: str, *, params=None, json=None, retry: bool = True):
    token = _access_token(user)
    try:
        r = requests.request(method, f'{API_BASE}{path}', params=params, json=json,
                             headers={'Authorization': f'Bearer {token}'}, timeout=settings.GOOGLE_TIMEOUT)
    except requests.RequestException as exc:
        raise CalendarSyncError(f'Google Calendar unreachable: {exc}')
    if r.status_code == 401 and retry and user.google_refresh_token:
        refresh_access_token(user)
        return _request(user, method, path, params=params, json=json, retry=False)
    if r.status_code >= 400:
        err = _json(r).get('error') or {}
        message = err.get('message') if isinstance(err, dict) else str(err)
        raise CalendarSyncError(f'Google Calendar error {r.status_code}: {message or r.reason}',
                                http_status=r.status_code)
    if r.status_code == 204 or not r.content:
        return {}
    return _json(r)


def _events_path(calendar_id: str, event_id: Optional[str] = None) -> str:
    path = f"/calendars/{quote(calendar_id, safe='')}/events"
    if event_id:
        path += f"/{quote(event_id, safe='')}"
    return path


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------

def build_event(visit: Visit, include_dietitian: bool = False) -> Dict[str, Any]:
    patient = visit.patient
    name = f'{patient.first_name} {patient.last_name}'
    dietitian_suffix = ''
    if include_dietitian and visit.dietitian is not None:
        dietitian_suffix = f' ({visit.dietitian.display_name})'
    start = visit.visit_date
    end = start + timedelta(minutes=visit.duration_minutes or 60)
    description = f"Rendez-vous avec {name}\nType: {visit.visit_type or 'Consultation'}\nStatut: {visit.status}"
    if dietitian_suffix:
        description += f'\nDiététicien: {dietitian_suffix.strip(" ()")}'
    return {
        'summary': f'Consultation - {name}{dietitian_suffix}',
        'description': description,
        'start': {'dateTime': start.isoformat(), 'timeZone': settings.CALENDAR_TIME_ZONE},
        'end': {'dateTime': end.isoformat(), 'timeZone': settings.CALENDAR_TIME_ZONE},
        'reminders': {'useDefault': True},
        'extendedProperties': {
            'private': {
                PROP_VISIT: str(visit.id),
                PROP_PATIENT: str(visit.patient_id),
                PROP_DIETITIAN: str(visit.dietitian_id or ''),
            },
        },
    }


def get_event(user, event_id: str, calendar_id: str) -> Dict[str, Any]:
    return _request(user, 'GET', _events_path(calendar_id, event_id))


def push_visit(visit: Visit, user, calendar_id: Optional[str] = None, include_dietitian: bool = False) -> Dict[str, Any]:
    """Create or update the calendar event of ``visit``."""
    calendar_id = calendar_id or user.google_calendar_id or 'primary'
    body = build_event(visit, include_dietitian)
    event = None
    if visit.google_event_id:
        try:
            event = _request(user, 'PUT', _events_path(calendar_id, visit.google_event_id), json=body)
        except CalendarSyncError as exc:
            if exc.http_status not in (404, 410):
                raise
            logger.info('Event %s of visit %s is gone, recreating', visit.google_event_id, visit.id)
    if event is None:
        event = _request(user, 'POST', _events_path(calendar_id), json=body)
    visit.google_event_id = event.get('id')
    visit.sync_status = Visit.SYNC_SYNCED
    visit.sync_error_count = 0
    visit.last_sync_error = ''
    visit.last_synced_at = timezone.now()
    visit.save(update_fields=['google_event_id', 'sync_status', 'sync_error_count', 'last_sync_error',
                              'last_synced_at'])
    return event


def delete_event(visit: Visit, user, calendar_id: Optional[str] = None) -> bool:
    if not visit.google_event_id:
        return False
    calendar_id = calendar_id or user.google_calendar_id or 'primary'
    try:
        _request(user, 'DELETE', _events_path(calendar_id, visit.google_event_id))
    except CalendarSyncError as exc:
        if exc.http_status not in (404, 410):
            raise
    visit.google_event_id = None
    visit.last_synced_at = timezone.now()
    visit.save(update_fields=['google_event_id', 'last_synced_at'])
    return True


def list_calendars(user) -> List[Dict[str, Any]]:
    data = _request(user, 'GET', '/users/me/calendarList')
    return [
        {
            'id': cal.get('id'),
            'summary': cal.get('summary'),
            'primary': bool(cal.get('primary')),
            'accessRole': cal.get('accessRole'),
            'backgroundColor': cal.get('backgroundColor'),
            'foregroundColor': cal.get('foregroundColor'),
        }
        for cal in data.get('items') or []
        if cal.get('accessRole') in ACCESSIBLE_ROLES
    ]


def set_calendar(user, calendar_id: str, sync_enabled: Optional[bool] = None) -> User:
    fields = ['google_calendar_id']
    user.google_calendar_id = calendar_id or 'primary'
    if sync_enabled is not None:
        user.google_calendar_sync_enabled = bool(sync_enabled)
        fields.append('google_calendar_sync_enabled')
    user.save(update_fields=fields)
    return user


def validate_calendar_access(user, calendar_id: str) -> bool:
    try:
        _request(user, 'GET', f"/calendars/{quote(calendar_id, safe='')}")
    except CalendarSyncError as exc:
        logger.warning('Calendar %s not accessible for %s: %s', calendar_id, user.username, exc)
        return False
    return True


def parse_event_time(value: Optional[Dict[str, str]]) -> Optional[datetime]:
    if not value:
        return None
    if value.get('dateTime'):
        moment = parse_datetime(value['dateTime'])
    elif value.get('date'):
        day = parse_date(value['date'])
        moment = datetime.combine(day, dtime.min) if day else None
    else:
        moment = None
    if moment is not None and timezone.is_naive(moment):
        moment = timezone.make_aware(moment)
    return moment


def _event_updated(event: Dict[str, Any]) -> Optional[datetime]:
    return parse_datetime(event['updated']) if event.get('updated') else None


def _record_error(visit: Visit, message: str) -> None:
    visit.sync_status = Visit.SYNC_ERROR
    visit.sync_error_count += 1
    visit.last_sync_error = message[:1000]
    visit.save(update_fields=['sync_status', 'sync_error_count', 'last_sync_error'])


# ---------------------------------------------------------------------------
# Sync
# ---------------------------------------------------------------------------

def sync_visits_to_calendar(user, since: Optional[datetime] = None, calendar_id: Optional[str] = None,
                            all_dietitians: bool = False) -> Dict[str, Any]:
    """Push SCHEDULED and COMPLETED visits since ``since`` to the user's calendar."""
    if not is_connected(user):
        raise _not_connected(user)
    since = since or timezone.now() - timedelta(days=30)
    calendar_id = calendar_id or user.google_calendar_id or 'primary'
    all_dietitians = bool(all_dietitians and user.role == User.ROLE_ADMIN)

    if not validate_calendar_access(user, calendar_id):
        raise CalendarSyncError(f'Calendar {calendar_id} is not accessible', code='CALENDAR_NOT_ACCESSIBLE',
                                status_code=400)

    qs = Visit.objects.select_related('patient', 'dietitian').filter(
        visit_date__gte=since, status__in=[Visit.STATUS_SCHEDULED, Visit.STATUS_COMPLETED],
    )
    if not all_dietitians:
        qs = qs.filter(dietitian=user)

    results = {'synced': 0, 'skipped': 0, 'errors': 0, 'events': []}
    for visit in qs.order_by('visit_date', 'id'):
        if visit.sync_error_count >= settings.CALENDAR_MAX_SYNC_ERRORS:
            results['skipped'] += 1
            results['events'].append({'visitId': visit.id, 'status': 'skipped_max_errors'})
            continue
        try:
            if visit.google_event_id:
                try:
                    existing = get_event(user, visit.google_event_id, calendar_id)
                except CalendarSyncError as exc:
                    logger.info('Could not fetch event %s for visit %s, will recreate: %s',
                                visit.google_event_id, visit.id, exc)
                    existing = None
                updated = _event_updated(existing) if existing else None
                if updated and existing.get('status') != 'cancelled' and updated > visit.updated_at:
                    results['skipped'] += 1
                    results['events'].append({
                        'visitId': visit.id, 'eventId': visit.google_event_id,
                        'status': 'skipped_calendar_newer', 'source': 'google_calendar',
                    })
                    continue
            event = push_visit(visit, user, calendar_id, include_dietitian=all_dietitians)
            results['synced'] += 1
            results['events'].append({'visitId': visit.id, 'eventId': event.get('id'), 'status': 'synced'})
        except CalendarSyncError as exc:
            logger.warning('Failed to sync visit %s for %s: %s', visit.id, user.username, exc.detail)
            _record_error(visit, str(exc.detail))
            results['errors'] += 1
            results['events'].append({'visitId': visit.id, 'status': 'error', 'error': str(exc.detail)})

    if results['synced']:
        log_action(user=user, action='calendar_push', object_type='user', object_id=user.id,
                   detail={'synced': results['synced'], 'errors': results['errors'], 'calendarId': calendar_id})
    return results


def sync_calendar_to_visits(user, since: Optional[datetime] = None, calendar_id: Optional[str] = None) -> Dict[str, Any]:
    """Apply changes made in Google Calendar to the visits they were created from."""
    if not is_connected(user):
        raise _not_connected(user)
    since = since or timezone.now() - timedelta(days=7)
    calendar_id = calendar_id or user.google_calendar_id or 'primary'

    items: List[Dict[str, Any]] = []
    params = {'timeMin': since.isoformat(), 'singleEvents': 'true', 'orderBy': 'startTime', 'showDeleted': 'true'}
    while True:
        page = _request(user, 'GET', _events_path(calendar_id), params=params)
        items.extend(page.get('items') or [])
        token = page.get('nextPageToken')
        if not token:
            break
        params = {**params, 'pageToken': token}

    results = {'synced': 0, 'updated': 0, 'skipped': 0, 'errors': 0, 'events': []}
    visits = scoped_visits(user)
    for event in items:
        private = (event.get('extendedProperties') or {}).get('private') or {}
        visit_id = private.get(PROP_VISIT)
        if not visit_id:
            continue
        try:
            visit = visits.filter(id=int(visit_id)).first()
        except (TypeError, ValueError):
            visit = None
        if visit is None:
            logger.warning('Visit %s referenced by event %s not found', visit_id, event.get('id'))
            results['skipped'] += 1
            results['events'].append({'eventId': event.get('id'), 'visitId': visit_id, 'status': 'visit_not_found'})
            continue

        updated = _event_updated(event)
        reference = max(visit.updated_at, visit.last_synced_at or visit.updated_at)
        if updated is None or updated <= reference:
            results['skipped'] += 1
            results['events'].append({'eventId': event.get('id'), 'visitId': visit.id, 'status': 'skipped_visit_newer'})
            results['synced'] += 1
            continue

        if event.get('status') == 'cancelled':
            if visit.status != Visit.STATUS_CANCELLED:
                visit.status = Visit.STATUS_CANCELLED
                visit.google_event_id = None
                visit.last_synced_at = timezone.now()
                visit.save(update_fields=['status', 'google_event_id', 'last_synced_at', 'updated_at'])
                results['updated'] += 1
                results['events'].append({'eventId': event.get('id'), 'visitId': visit.id,
                                          'status': 'cancelled_from_calendar'})
            results['synced'] += 1
            continue

        start = parse_event_time(event.get('start'))
        end = parse_event_time(event.get('end'))
        if start is None or end is None:
            results['errors'] += 1
            results['events'].append({'eventId': event.get('id'), 'visitId': visit.id, 'status': 'error',
                                      'error': 'Event has no start or end'})
            continue
        visit.visit_date = start
        visit.duration_minutes = max(1, round((end - start).total_seconds() / 60))
        visit.google_event_id = event.get('id')
        visit.sync_status = Visit.SYNC_SYNCED
        visit.last_synced_at = timezone.now()
        visit.save()
        results['updated'] += 1
        results['synced'] += 1
        results['events'].append({'eventId': event.get('id'), 'visitId': visit.id, 'status': 'updated_from_calendar'})

    if results['updated']:
        log_action(user=user, action='calendar_pull', object_type='user', object_id=user.id,
                   detail={'updated': results['updated'], 'calendarId': calendar_id})
    return results


def sync_issues(user):
    """Visits of ``user`` whose last sync failed or conflicted."""
    qs = Visit.objects.select_related('patient').filter(sync_status__in=[Visit.SYNC_ERROR, Visit.SYNC_CONFLICT])
    if user.role != User.ROLE_ADMIN:
        qs = qs.filter(dietitian=user)
    return qs.order_by('-updated_at')


def reset_sync_errors(user) -> int:
    return sync_issues(user).filter(sync_status=Visit.SYNC_ERROR).update(
        sync_error_count=0, sync_status=Visit.SYNC_PENDING, last_sync_error='',
    )
