"""
Public campaign tracking endpoints.

These are hit by mail clients and by patients following links from an
email, so they allow anonymous access.  The open and click trackers
answer the same way whether or not the recipient exists.  All of them
are throttled under the ``tracking`` rate.
"""
import base64
from urllib.parse import urlparse

from django.http import HttpResponse, HttpResponseRedirect
from rest_framework.decorators import api_view, permission_classes, throttle_classes
from rest_framework.permissions import AllowAny
from rest_framework.response import Response

from clinic.exceptions import ApiError
from clinic.services import campaign_sender
from clinic.throttling import TrackingRateThrottle

# 1x1 transparent GIF
PIXEL_GIF = base64.b64decode('R0lGODlhAQABAIAAAAAAAP///yH5BAEAAAAALAAAAAABAAEAAAIBRAA7')


def _gif_response() -> HttpResponse:
    resp = HttpResponse(PIXEL_GIF, content_type='image/gif')
    resp['Cache-Control'] = 'no-store, no-cache, must-revalidate, private'
    resp['Pragma'] = 'no-cache'
    resp['Expires'] = '0'
    return resp


@api_view(['GET'])
@permission_classes([AllowAny])
@throttle_classes([TrackingRateThrottle])
def track_open(request, campaign_id: int, patient_id: int):
    campaign_sender.track_open(campaign_id, patient_id)
    return _gif_response()


@api_view(['GET'])
@permission_classes([AllowAny])
@throttle_classes([TrackingRateThrottle])
def track_click(request, campaign_id: int, patient_id: int):
    url = request.query_params.get('url') or ''
    parsed = urlparse(url)
    if parsed.scheme not in ('http', 'https') or not parsed.netloc:
        raise ApiError('Invalid redirect URL', code='INVALID_URL')
    campaign_sender.track_click(campaign_id, patient_id)
    return HttpResponseRedirect(url)


@api_view(['POST'])
@permission_classes([AllowAny])
@throttle_classes([TrackingRateThrottle])
def unsubscribe(request, token: str):
    result = campaign_sender.process_unsubscribe(token)
    return Response({'ok': True, 'data': result})
