"""
Staff dashboard endpoint.

Every count is restricted to the requesting user's scope, so a
dietitian only sees their own patients and an assistant those of the
dietitians they are linked to.
"""
from rest_framework.decorators import api_view, permission_classes
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from clinic.permissions import IsStaffRole
from clinic.services.dashboard import dashboard_counts


@api_view(['GET'])
@permission_classes([IsAuthenticated, IsStaffRole])
def dashboard(request):
    return Response({'ok': True, 'data': dashboard_counts(request.user)})
