from datetime import timedelta

from django.utils import timezone
from rest_framework.decorators import api_view, permission_classes
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from clinic.models import Visit
from clinic.permissions import IsStaffRole
from clinic.query_configs import VISITS_CONFIG
from clinic.querybuilder import QueryBuilder
from clinic.serializers.visits import RangeQuerySerializer, VisitSerializer, VisitUpdateSerializer
from clinic.services import visits as service


def serialize_visit(v: Visit) -> dict:
    return {
        'id': v.id,
        'patientId': v.patient_id,
        'patientName': v.patient.full_name,
        'dietitianId': v.dietitian_id,
        'dietitianName': v.dietitian.display_name if v.dietitian_id else None,
        'visitDate': v.visit_date.isoformat(),
        'endDate': (v.visit_date + timedelta(minutes=v.duration_minutes)).isoformat(),
        'durationMinutes': v.duration_minutes,
        'visitType': v.visit_type,
        'status': v.status,
        'notes': v.notes,
        'googleEventId': v.google_event_id,
        'syncStatus': v.sync_status,
        'syncErrorCount': v.sync_error_count,
        'lastSyncError': v.last_sync_error or None,
        'lastSyncedAt': v.last_synced_at.isoformat() if v.last_synced_at else None,
        'createdAt': v.created_at.isoformat(),
        'updatedAt': v.updated_at.isoformat(),
    }


@api_view(['GET', 'POST'])
@permission_classes([IsAuthenticated, IsStaffRole])
def visits(request):
    if request.method == 'POST':
        s = VisitSerializer(data=request.data)
        s.is_valid(raise_exception=True)
        visit = service.create_visit(request.user, s.validated_data)
        return Response({'ok': True, 'data': serialize_visit(visit)}, status=201)

    r = RangeQuerySerializer(data=request.query_params)
    r.is_valid(raise_exception=True)
    plan = QueryBuilder(VISITS_CONFIG).build(request.query_params)
    qs = service.scoped_visits(request.user)
    if r.validated_data.get('start'):
        qs = qs.filter(visit_date__gte=r.validated_data['start'])
    if r.validated_data.get('end'):
        qs = qs.filter(visit_date__lt=r.validated_data['end'])
    page, total = plan.apply(qs)
    return Response({'ok': True, 'data': [serialize_visit(v) for v in page], 'pagination': plan.pagination(total)})


@api_view(['GET', 'PUT', 'PATCH', 'DELETE'])
@permission_classes([IsAuthenticated, IsStaffRole])
def visit_detail(request, pk: int):
    visit = service.get_visit_for_user(request.user, pk)
    if request.method == 'GET':
        return Response({'ok': True, 'data': serialize_visit(visit)})
    if request.method == 'DELETE':
        visit = service.cancel_visit(request.user, visit)
        return Response({'ok': True, 'data': serialize_visit(visit)})

    s = VisitUpdateSerializer(data=request.data)
    s.is_valid(raise_exception=True)
    visit = service.update_visit(request.user, visit, s.validated_data)
    return Response({'ok': True, 'data': serialize_visit(visit)})


@api_view(['GET'])
@permission_classes([IsAuthenticated, IsStaffRole])
def agenda(request):
    """Visits between ``start`` and ``end`` (default: the coming week)."""
    r = RangeQuerySerializer(data=request.query_params)
    r.is_valid(raise_exception=True)
    start = r.validated_data.get('start') or timezone.localtime().replace(hour=0, minute=0, second=0, microsecond=0)
    end = r.validated_data.get('end') or start + timedelta(days=7)
    items = service.agenda(request.user, start, end)
    return Response({
        'ok': True,
        'data': [serialize_visit(v) for v in items],
        'range': {'start': start.isoformat(), 'end': end.isoformat()},
    })
