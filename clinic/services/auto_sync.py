"""
Rate limited calendar synchronisation triggered by visit activity.

Automatic syncs run at most once per ``CALENDAR_SYNC_COOLDOWN`` seconds per
user.  The marker lives in the Django cache and is claimed with an atomic
``cache.add`` so concurrent workers cannot both win the same slot.
Automatic syncs never raise: a calendar outage must not fail the visit
request that triggered it.
"""
import logging
import math
from datetime import timedelta
from typing import Optional, Dict, Any

from django.conf import settings
from django.core.cache import cache
from django.utils import timezone

from clinic.models import User
from clinic.services import google_calendar
from clinic.services.google_calendar import CalendarSyncError

logger = logging.getLogger(__name__)


def _key(user_id) -> str:
    return f'calendar-sync:{user_id}'


def _cooldown() -> int:
    return max(1, math.ceil(settings.CALENDAR_SYNC_COOLDOWN))


def can_sync(user_id) -> bool:
    """Claim the sync slot of ``user_id``; False while the cooldown runs."""
    return cache.add(_key(user_id), timezone.now().isoformat(), timeout=_cooldown())


def last_sync_time(user_id) -> Optional[str]:
    return cache.get(_key(user_id))


def reset(user_id=None) -> None:
    """Drop the cooldown of one user, or of every user when ``user_id`` is None."""
    if user_id is None:
        cache.delete_many([_key(pk) for pk in User.objects.values_list('id', flat=True)])
    else:
        cache.delete(_key(user_id))


def _enabled(user) -> bool:
    return bool(user.google_calendar_sync_enabled and user.google_access_token)


def auto_sync_visits(user, since=None, all_dietitians: Optional[bool] = None) -> Optional[Dict[str, Any]]:
    if not _enabled(user):
        return None
    if not can_sync(user.id):
        logger.debug('Auto-sync skipped for %s (rate limited)', user.username)
        return None
    if all_dietitians is None:
        all_dietitians = user.role == User.ROLE_ADMIN
    try:
        result = google_calendar.sync_visits_to_calendar(
            user, since=since or timezone.now() - timedelta(days=7), all_dietitians=all_dietitians,
        )
    except CalendarSyncError as exc:
        logger.warning('Auto-sync failed for %s: %s', user.username, exc.detail)
        return None
    except Exception:
        logger.exception('Auto-sync crashed for %s', user.username)
        return None
    logger.info('Auto-synced %s visits for %s', result['synced'], user.username)
    return result


def auto_sync_after_visit_change(user, visit, action: str = 'update') -> Optional[Dict[str, Any]]:
    logger.debug('Auto-sync triggered by visit %s: %s', action, visit.id)
    return auto_sync_visits(user, since=timezone.now() - timedelta(hours=24), all_dietitians=False)


def _failure(message) -> Dict[str, Any]:
    return {'synced': 0, 'skipped': 0, 'errors': 1, 'events': [], 'error': message}


def _run_direction(label, user, sync, **kwargs) -> Dict[str, Any]:
    try:
        return sync(user, **kwargs)
    except CalendarSyncError as exc:
        logger.warning('%s sync failed for %s: %s', label, user.username, exc.detail)
        return _failure(str(exc.detail))
    except Exception as exc:
        logger.exception('%s sync crashed for %s', label, user.username)
        return _failure(str(exc))


def _both_ways(user, since, all_dietitians: bool) -> Dict[str, Any]:
    results: Dict[str, Any] = {
        'calendarToVisits': _run_direction('Calendar-to-visits', user, google_calendar.sync_calendar_to_visits,
                                           since=since),
        'visitsToCalendar': _run_direction('Visits-to-calendar', user, google_calendar.sync_visits_to_calendar,
                                           since=since, all_dietitians=all_dietitians),
    }
    for total, part in (('totalSynced', 'synced'), ('totalSkipped', 'skipped'), ('totalErrors', 'errors')):
        results[total] = sum((results[side] or {}).get(part, 0) for side in ('calendarToVisits', 'visitsToCalendar'))
    return results


def bidirectional_sync(user, since=None, all_dietitians: Optional[bool] = None) -> Optional[Dict[str, Any]]:
    """Pull calendar changes then push visits, subject to the rate limit."""
    if not _enabled(user):
        return None
    if not can_sync(user.id):
        logger.debug('Bidirectional sync skipped for %s (rate limited)', user.username)
        return None
    if all_dietitians is None:
        all_dietitians = user.role == User.ROLE_ADMIN
    results = _both_ways(user, since or timezone.now() - timedelta(days=7), all_dietitians)
    logger.info('Bidirectional sync for %s: %s synced, %s skipped, %s errors', user.username,
                results['totalSynced'], results['totalSkipped'], results['totalErrors'])
    return results


def sync_on_agenda_access(user) -> Optional[Dict[str, Any]]:
    return bidirectional_sync(user, since=timezone.now() - timedelta(days=30))


def force_sync(user, since=None, all_dietitians: Optional[bool] = None) -> Dict[str, Any]:
    """Manual sync: bypasses the rate limit, then restarts the cooldown."""
    if not google_calendar.is_connected(user):
        raise google_calendar.CalendarSyncError(
            f'User {user.username} is not connected to Google Calendar',
            code='CALENDAR_NOT_CONNECTED', status_code=400,
        )
    if all_dietitians is None:
        all_dietitians = user.role == User.ROLE_ADMIN
    results = _both_ways(user, since or timezone.now() - timedelta(days=7), all_dietitians)
    cache.set(_key(user.id), timezone.now().isoformat(), timeout=_cooldown())
    logger.info('Force sync for %s: %s synced, %s errors', user.username, results['totalSynced'], results['totalErrors'])
    return results
