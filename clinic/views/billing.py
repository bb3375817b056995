"""
Invoice and payment endpoints.
"""
from rest_framework.decorators import api_view, permission_classes
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from clinic.models import Invoice, Payment
from clinic.permissions import IsStaffRole
from clinic.query_configs import INVOICES_CONFIG
from clinic.querybuilder import QueryBuilder
from clinic.serializers.billing import (
    InvoiceSerializer, InvoiceUpdateSerializer, MarkPaidSerializer, PaymentSerializer, StatsQuerySerializer,
)
from clinic.services import billing as service
from clinic.services.email import send_invoice_email


def serialize_payment(p: Payment) -> dict:
    return {
        'id': p.id,
        'amount': str(p.amount),
        'method': p.method,
        'paidAt': p.paid_at.isoformat(),
        'reference': p.reference,
        'recordedBy': p.recorded_by_id,
    }


def serialize_invoice(inv: Invoice, detail: bool = False) -> dict:
    data = {
        'id': inv.id,
        'invoiceNumber': inv.invoice_number,
        'patientId': inv.patient_id,
        'patientName': inv.patient.full_name,
        'visitId': inv.visit_id,
        'dietitianId': inv.dietitian_id,
        'serviceDescription': inv.service_description,
        'invoiceDate': inv.invoice_date.isoformat(),
        'dueDate': inv.due_date.isoformat() if inv.due_date else None,
        'amountTotal': str(inv.amount_total),
        'amountPaid': str(inv.amount_paid),
        'amountDue': str(inv.amount_due),
        'status': inv.status,
        'sentAt': inv.sent_at.isoformat() if inv.sent_at else None,
        'createdAt': inv.created_at.isoformat(),
    }
    if detail:
        data['notes'] = inv.notes
        data['items'] = [
            {'id': i.id, 'description': i.description, 'quantity': str(i.quantity),
             'unitPrice': str(i.unit_price), 'amount': str(i.amount)}
            for i in inv.items.all().order_by('id')
        ]
        data['payments'] = [serialize_payment(p) for p in inv.payments.all().order_by('paid_at', 'id')]
    return data


@api_view(['GET', 'POST'])
@permission_classes([IsAuthenticated, IsStaffRole])
def invoices(request):
    if request.method == 'POST':
        s = InvoiceSerializer(data=request.data)
        s.is_valid(raise_exception=True)
        invoice = service.create_invoice(request.user, s.validated_data)
        return Response({'ok': True, 'data': serialize_invoice(invoice, detail=True)}, status=201)

    plan = QueryBuilder(INVOICES_CONFIG).build(request.query_params)
    page, total = plan.apply(service.scoped_invoices(request.user))
    return Response({'ok': True, 'data': [serialize_invoice(i) for i in page], 'pagination': plan.pagination(total)})


@api_view(['GET', 'PUT', 'PATCH', 'DELETE'])
@permission_classes([IsAuthenticated, IsStaffRole])
def invoice_detail(request, pk: int):
    invoice = service.get_invoice_for_user(request.user, pk)
    if request.method == 'GET':
        return Response({'ok': True, 'data': serialize_invoice(invoice, detail=True)})
    if request.method == 'DELETE':
        service.delete_invoice(request.user, invoice)
        return Response({'ok': True})

    s = InvoiceUpdateSerializer(data=request.data)
    s.is_valid(raise_exception=True)
    invoice = service.update_invoice(request.user, invoice, s.validated_data)
    return Response({'ok': True, 'data': serialize_invoice(invoice, detail=True)})


@api_view(['GET', 'POST'])
@permission_classes([IsAuthenticated, IsStaffRole])
def invoice_payments(request, pk: int):
    invoice = service.get_invoice_for_user(request.user, pk)
    if request.method == 'GET':
        return Response({'ok': True, 'data': [serialize_payment(p) for p in invoice.payments.order_by('paid_at', 'id')]})

    s = PaymentSerializer(data=request.data)
    s.is_valid(raise_exception=True)
    v = s.validated_data
    payment = service.record_payment(request.user, invoice, v['amount'], method=v['method'],
                                     paid_at=v.get('paid_at'), reference=v.get('reference', ''))
    invoice.refresh_from_db()
    return Response({'ok': True, 'data': serialize_payment(payment), 'invoice': serialize_invoice(invoice)}, status=201)


@api_view(['POST'])
@permission_classes([IsAuthenticated, IsStaffRole])
def invoice_mark_paid(request, pk: int):
    invoice = service.get_invoice_for_user(request.user, pk)
    s = MarkPaidSerializer(data=request.data)
    s.is_valid(raise_exception=True)
    invoice = service.mark_paid(request.user, invoice, method=s.validated_data['method'],
                                reference=s.validated_data.get('reference', ''))
    return Response({'ok': True, 'data': serialize_invoice(invoice, detail=True)})


@api_view(['POST'])
@permission_classes([IsAuthenticated, IsStaffRole])
def invoice_cancel(request, pk: int):
    invoice = service.get_invoice_for_user(request.user, pk)
    invoice = service.cancel_invoice(request.user, invoice)
    return Response({'ok': True, 'data': serialize_invoice(invoice)})


@api_view(['POST'])
@permission_classes([IsAuthenticated, IsStaffRole])
def invoice_send(request, pk: int):
    invoice = service.get_invoice_for_user(request.user, pk)
    entry = send_invoice_email(invoice, request.user)
    invoice.refresh_from_db()
    return Response({'ok': True, 'data': serialize_invoice(invoice), 'emailLogId': entry.id})


@api_view(['GET'])
@permission_classes([IsAuthenticated, IsStaffRole])
def invoice_stats(request):
    q = StatsQuerySerializer(data=request.query_params)
    q.is_valid(raise_exception=True)
    data = service.invoice_stats(request.user, q.validated_data.get('date_from'), q.validated_data.get('date_to'))
    return Response({'ok': True, 'data': data})
