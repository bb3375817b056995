"""
Named rate throttles for function views.

``@api_view`` does not forward a ``throttle_scope`` attribute to the
generated view class, so scoped limits are expressed as throttle classes.
Rates come from ``REST_FRAMEWORK['DEFAULT_THROTTLE_RATES']``.
"""
from rest_framework.throttling import AnonRateThrottle


class LoginRateThrottle(AnonRateThrottle):
    scope = 'login'


class TrackingRateThrottle(AnonRateThrottle):
    scope = 'tracking'
