"""
Invoice numbering, payment state machine and invoice email tests.
"""
from datetime import date, timedelta
from decimal import Decimal

import pytest
from django.core import mail
from rest_framework.test import APITestCase

from clinic.exceptions import ApiError
from clinic.models import EmailLog, Invoice, User
from clinic.services import billing
from clinic.services.email import send_invoice_email
from clinic.tests.factories import make_invoice, make_patient, make_user, make_visit

pytestmark = pytest.mark.django_db


def test_invoice_numbers_are_sequential_per_year():
    patient = make_patient(make_user())
    assert billing.next_invoice_number(2026) == 'INV-2026-000001'
    make_invoice(patient, 'INV-2026-000041')
    make_invoice(patient, 'INV-2025-000099')
    assert billing.next_invoice_number(2026) == 'INV-2026-000042'
    assert billing.next_invoice_number(2025) == 'INV-2025-000100'


def test_create_from_items_computes_total_and_defaults():
    diet = make_user()
    patient = make_patient(diet)
    invoice = billing.create_invoice(diet, {
        'patient_id': patient.id,
        'invoice_date': date(2026, 3, 1),
        'items': [
            {'description': 'Consultation', 'quantity': Decimal('1'), 'unit_price': Decimal('55.00')},
            {'description': 'Plan', 'quantity': Decimal('2'), 'unit_price': Decimal('12.50')},
        ],
    })
    assert invoice.invoice_number == 'INV-2026-000001'
    assert invoice.amount_total == Decimal('80.00')
    assert invoice.status == Invoice.STATUS_DRAFT
    assert invoice.due_date == date(2026, 3, 31)
    assert invoice.dietitian_id == diet.id
    assert invoice.items.count() == 2


def test_create_requires_positive_amount():
    diet = make_user()
    patient = make_patient(diet)
    with pytest.raises(ApiError) as exc:
        billing.create_invoice(diet, {'patient_id': patient.id})
    assert exc.value.error_code == 'INVALID_AMOUNT'
    with pytest.raises(ApiError) as exc:
        billing.create_invoice(diet, {'patient_id': patient.id, 'amount_total': Decimal('0')})
    assert exc.value.error_code == 'INVALID_AMOUNT'


def test_create_rejects_visit_of_other_patient():
    diet = make_user()
    patient = make_patient(diet)
    other_visit = make_visit(make_patient(diet))
    with pytest.raises(ApiError) as exc:
        billing.create_invoice(diet, {'patient_id': patient.id, 'visit_id': other_visit.id,
                                      'amount_total': Decimal('10')})
    assert exc.value.error_code == 'VISIT_PATIENT_MISMATCH'


def test_partial_then_full_payment():
    diet = make_user()
    invoice = make_invoice(make_patient(diet), 'INV-2026-000001', amount='100.00')
    billing.record_payment(diet, invoice, '40', method='CASH')
    invoice.refresh_from_db()
    assert invoice.status == Invoice.STATUS_PARTIAL
    assert invoice.amount_due == Decimal('60.00')

    with pytest.raises(ApiError):
        billing.record_payment(diet, invoice, '60.01')

    billing.record_payment(diet, invoice, '60')
    invoice.refresh_from_db()
    assert invoice.status == Invoice.STATUS_PAID
    assert invoice.payments.count() == 2

    with pytest.raises(ApiError) as exc:
        billing.record_payment(diet, invoice, '1')
    assert exc.value.error_code == 'INVOICE_LOCKED'


def test_mark_paid_records_remaining_amount():
    diet = make_user()
    invoice = make_invoice(make_patient(diet), 'INV-2026-000002', amount='75.00', amount_paid=Decimal('25.00'),
                           status=Invoice.STATUS_PARTIAL)
    invoice = billing.mark_paid(diet, invoice, method='TRANSFER')
    assert invoice.status == Invoice.STATUS_PAID
    assert invoice.amount_paid == Decimal('75.00')
    assert invoice.payments.get().amount == Decimal('50.00')
    with pytest.raises(ApiError):
        billing.mark_paid(diet, invoice)


def test_cancelled_invoice_cannot_be_marked_paid():
    diet = make_user()
    cancelled = make_invoice(make_patient(diet), 'INV-2026-000004', amount='0.00', status=Invoice.STATUS_CANCELLED)
    with pytest.raises(ApiError) as exc:
        billing.mark_paid(diet, cancelled)
    assert exc.value.error_code == 'INVOICE_LOCKED'
    cancelled.refresh_from_db()
    assert cancelled.status == Invoice.STATUS_CANCELLED


def test_locked_invoices_cannot_change():
    diet = make_user()
    paid = make_invoice(make_patient(diet), 'INV-2026-000003', status=Invoice.STATUS_PAID)
    with pytest.raises(ApiError) as exc:
        billing.update_invoice(diet, paid, {'notes': 'x'})
    assert exc.value.error_code == 'INVOICE_LOCKED'
    with pytest.raises(ApiError):
        billing.cancel_invoice(diet, paid)
    with pytest.raises(ApiError) as exc:
        billing.delete_invoice(diet, paid)
    assert exc.value.error_code == 'INVOICE_HAS_PAYMENTS'


def test_total_cannot_drop_below_paid():
    diet = make_user()
    invoice = make_invoice(make_patient(diet), 'INV-2026-000004', amount='80.00', amount_paid=Decimal('50.00'),
                           status=Invoice.STATUS_PARTIAL)
    with pytest.raises(ApiError):
        billing.update_invoice(diet, invoice, {'amount_total': Decimal('40.00')})


def test_mark_overdue_only_touches_open_past_due():
    patient = make_patient(make_user())
    today = date(2026, 5, 10)
    late = make_invoice(patient, 'INV-2026-000010', due_date=today - timedelta(days=1))
    late_partial = make_invoice(patient, 'INV-2026-000011', status=Invoice.STATUS_PARTIAL,
                                due_date=today - timedelta(days=5))
    due_today = make_invoice(patient, 'INV-2026-000012', due_date=today)
    draft = make_invoice(patient, 'INV-2026-000013', status=Invoice.STATUS_DRAFT, due_date=today - timedelta(days=9))
    assert billing.mark_overdue(today) == 2
    statuses = dict(Invoice.objects.values_list('id', 'status'))
    assert statuses[late.id] == statuses[late_partial.id] == Invoice.STATUS_OVERDUE
    assert statuses[due_today.id] == Invoice.STATUS_SENT
    assert statuses[draft.id] == Invoice.STATUS_DRAFT


def test_invoice_stats_are_scoped():
    diet, other = make_user(), make_user()
    mine = make_patient(diet)
    make_invoice(mine, 'INV-2026-000020', amount='100.00', amount_paid=Decimal('100.00'), status=Invoice.STATUS_PAID)
    make_invoice(mine, 'INV-2026-000021', amount='60.00', amount_paid=Decimal('20.00'), status=Invoice.STATUS_PARTIAL)
    make_invoice(mine, 'INV-2026-000022', amount='30.00', status=Invoice.STATUS_CANCELLED)
    make_invoice(make_patient(other), 'INV-2026-000023', amount='999.00')
    stats = billing.invoice_stats(diet)
    assert stats['count'] == 2
    assert stats['totalBilled'] == '160.00'
    assert stats['totalRevenue'] == '120.00'
    assert stats['outstanding'] == '40.00'
    assert stats['byStatus']['CANCELLED']['count'] == 1


def test_send_invoice_email_moves_draft_to_sent():
    diet = make_user()
    patient = make_patient(diet, first_name='Marie')
    invoice = make_invoice(patient, 'INV-2026-000030', status=Invoice.STATUS_DRAFT)
    entry = send_invoice_email(invoice, diet)
    assert entry.status == EmailLog.STATUS_SENT
    assert entry.template_slug == 'invoice_notification'
    invoice.refresh_from_db()
    assert invoice.status == Invoice.STATUS_SENT
    assert invoice.sent_at is not None
    assert len(mail.outbox) == 1
    assert mail.outbox[0].to == [patient.email]
    assert 'INV-2026-000030' in mail.outbox[0].subject


def test_send_invoice_email_requires_address():
    diet = make_user()
    invoice = make_invoice(make_patient(diet, email=None), 'INV-2026-000031')
    with pytest.raises(ApiError) as exc:
        send_invoice_email(invoice, diet)
    assert exc.value.error_code == 'PATIENT_NO_EMAIL'
    assert not mail.outbox


class InvoiceApiTests(APITestCase):
    def setUp(self) -> None:
        self.diet = make_user()
        self.patient = make_patient(self.diet)
        self.client.force_authenticate(user=self.diet)

    def test_create_list_and_pay(self):
        r = self.client.post('/api/invoices', {'patient_id': self.patient.id, 'amount_total': '90.00'}, format='json')
        self.assertEqual(r.status_code, 201, r.data)
        invoice_id = r.data['data']['id']
        self.assertTrue(r.data['data']['invoiceNumber'].startswith('INV-'))

        r = self.client.post(f'/api/invoices/{invoice_id}/payments', {'amount': '90.00', 'method': 'CASH'},
                             format='json')
        self.assertEqual(r.status_code, 201, r.data)
        self.assertEqual(r.data['invoice']['status'], 'PAID')

        r = self.client.get('/api/invoices?status=paid')
        self.assertEqual([i['id'] for i in r.data['data']], [invoice_id])

    def test_due_date_before_invoice_date_is_rejected(self):
        r = self.client.post('/api/invoices', {
            'patient_id': self.patient.id, 'amount_total': '10', 'invoice_date': '2026-03-10', 'due_date': '2026-03-01',
        }, format='json')
        self.assertEqual(r.status_code, 400)

    def test_foreign_invoice_is_forbidden(self):
        invoice = make_invoice(make_patient(make_user()), 'INV-2026-000050')
        r = self.client.get(f'/api/invoices/{invoice.id}')
        self.assertEqual(r.status_code, 403)

    def test_assistant_without_link_gets_empty_list(self):
        make_invoice(self.patient, 'INV-2026-000051')
        self.client.force_authenticate(user=make_user(User.ROLE_ASSISTANT))
        r = self.client.get('/api/invoices')
        self.assertEqual(r.data['data'], [])

    def test_stats_endpoint(self):
        make_invoice(self.patient, 'INV-2026-000052', amount='40.00', status=Invoice.STATUS_OVERDUE)
        r = self.client.get('/api/invoices/stats')
        self.assertEqual(r.status_code, 200)
        self.assertEqual(r.data['data']['overdueCount'], 1)
        self.assertEqual(r.data['data']['outstanding'], '40.00')
