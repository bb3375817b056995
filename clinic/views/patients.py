"""
Patient management views.

Listing goes through the generic query builder (search, typed filters,
sorting and pagination) on top of the requester's tenant scope.  The
legacy ``age_min``/``age_max`` parameters are translated into a date of
birth range.
"""
from __future__ import annotations

from rest_framework.decorators import api_view, permission_classes
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from clinic.models import Patient
from clinic.permissions import IsStaffRole
from clinic.query_configs import PATIENTS_CONFIG
from clinic.querybuilder import QueryBuilder
from clinic.serializers.patients import PatientListQuerySerializer, PatientSerializer, TagSerializer, TagsSerializer
from clinic.services import patients as service
from clinic.services.scope import get_patient_for_user, scoped_patients


def serialize_patient(p: Patient, detail: bool = False) -> dict:
    data = {
        'id': p.id,
        'firstName': p.first_name,
        'lastName': p.last_name,
        'fullName': p.full_name,
        'email': p.email,
        'phone': p.phone,
        'dateOfBirth': p.date_of_birth.isoformat() if p.date_of_birth else None,
        'gender': p.gender or None,
        'city': p.city,
        'languagePreference': p.language_preference,
        'assignedDietitianId': p.assigned_dietitian_id,
        'assignedDietitianName': p.assigned_dietitian.display_name if p.assigned_dietitian_id else None,
        'isActive': p.is_active,
        'appointmentRemindersEnabled': p.appointment_reminders_enabled,
        'tags': sorted(t.tag_name for t in p.tags.all()),
        'createdAt': p.created_at.isoformat(),
        'updatedAt': p.updated_at.isoformat(),
    }
    if detail:
        data.update({
            'address': p.address,
            'postalCode': p.postal_code,
            'country': p.country,
            'medicalNotes': p.medical_notes,
            'allergies': p.allergies,
            'dietaryPreferences': p.dietary_preferences,
            'dietitianIds': sorted(p.dietitians.values_list('id', flat=True)),
            'hasPortalAccount': bool(p.user_id),
        })
    return data


@api_view(['GET', 'POST'])
@permission_classes([IsAuthenticated, IsStaffRole])
def patients(request):
    if request.method == 'POST':
        s = PatientSerializer(data=request.data)
        s.is_valid(raise_exception=True)
        patient = service.create_patient(request.user, s.validated_data)
        return Response({'ok': True, 'data': serialize_patient(patient, detail=True)}, status=201)

    q = PatientListQuerySerializer(data=request.query_params)
    q.is_valid(raise_exception=True)
    plan = QueryBuilder(PATIENTS_CONFIG).build(request.query_params)
    age_q = service.age_range_q(q.validated_data.get('age_min'), q.validated_data.get('age_max'))
    # filter on ids so that tag and scope joins cannot duplicate rows
    matching = scoped_patients(request.user).filter(plan.where).filter(age_q).values('id')
    qs = Patient.objects.select_related('assigned_dietitian').prefetch_related('tags').filter(id__in=matching)
    total = qs.count()
    page = qs.order_by(*plan.ordering)[plan.offset:plan.offset + plan.limit]
    return Response({
        'ok': True,
        'data': [serialize_patient(p) for p in page],
        'pagination': plan.pagination(total),
    })


@api_view(['GET', 'PUT', 'PATCH', 'DELETE'])
@permission_classes([IsAuthenticated, IsStaffRole])
def patient_detail(request, pk: int):
    patient = get_patient_for_user(request.user, pk)
    if request.method == 'GET':
        return Response({'ok': True, 'data': serialize_patient(patient, detail=True)})
    if request.method == 'DELETE':
        service.deactivate_patient(request.user, patient)
        return Response({'ok': True})

    s = PatientSerializer(data=request.data, partial=request.method == 'PATCH')
    s.is_valid(raise_exception=True)
    patient = service.update_patient(request.user, patient, s.validated_data)
    return Response({'ok': True, 'data': serialize_patient(patient, detail=True)})


@api_view(['GET', 'POST', 'PUT'])
@permission_classes([IsAuthenticated, IsStaffRole])
def patient_tags(request, pk: int):
    patient = get_patient_for_user(request.user, pk)
    if request.method == 'POST':
        s = TagSerializer(data=request.data)
        s.is_valid(raise_exception=True)
        service.add_tag(patient, s.validated_data['tag'])
    elif request.method == 'PUT':
        s = TagsSerializer(data=request.data)
        s.is_valid(raise_exception=True)
        service.set_tags(patient, s.validated_data['tags'])
    tags = sorted(patient.tags.values_list('tag_name', flat=True))
    return Response({'ok': True, 'data': tags}, status=201 if request.method == 'POST' else 200)


@api_view(['DELETE'])
@permission_classes([IsAuthenticated, IsStaffRole])
def patient_tag_delete(request, pk: int, tag: str):
    patient = get_patient_for_user(request.user, pk)
    removed = service.remove_tag(patient, tag)
    return Response({'ok': True, 'removed': removed})


@api_view(['GET'])
@permission_classes([IsAuthenticated, IsStaffRole])
def all_tags(request):
    return Response({'ok': True, 'data': service.all_tags(scoped_patients(request.user))})


@api_view(['GET'])
@permission_classes([IsAuthenticated, IsStaffRole])
def patient_summary(request, pk: int):
    patient = get_patient_for_user(request.user, pk)
    return Response({'ok': True, 'data': service.patient_summary(patient)})
