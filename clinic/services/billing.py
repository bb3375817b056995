import logging
from datetime import timedelta
from decimal import Decimal
from typing import Optional, Dict, Any

from django.db import IntegrityError, transaction
from django.db.models import Count, Q, Sum
from django.utils import timezone

from clinic.exceptions import ApiError, ForbiddenError, NotFoundError
from clinic.models import Invoice, InvoiceItem, Payment, User, Visit
from clinic.services.audit import log_action
from clinic.services.scope import get_patient_for_user, patient_scope_q, scoped_dietitian_ids

logger = logging.getLogger(__name__)

OPEN_STATUSES = (Invoice.STATUS_SENT, Invoice.STATUS_PARTIAL, Invoice.STATUS_OVERDUE)
LOCKED_STATUSES = (Invoice.STATUS_PAID, Invoice.STATUS_CANCELLED)
DEFAULT_DUE_DAYS = 30
CENT = Decimal('0.01')


def scoped_invoices(user):
    qs = Invoice.objects.select_related('patient', 'dietitian', 'visit')
    ids = scoped_dietitian_ids(user)
    if ids is None:
        return qs
    if not ids:
        return qs.none()
    return qs.filter(Q(dietitian_id__in=ids) | patient_scope_q(user, prefix='patient__')).distinct()


def get_invoice_for_user(user, invoice_id) -> Invoice:
    invoice = Invoice.objects.select_related('patient', 'dietitian', 'visit').filter(id=invoice_id).first()
    if not invoice:
        raise NotFoundError('Invoice not found', code='INVOICE_NOT_FOUND')
    if not scoped_invoices(user).filter(id=invoice.id).exists():
        raise ForbiddenError('Invoice is not in your scope', code='NOT_ASSIGNED_PATIENT')
    return invoice


def next_invoice_number(year: Optional[int] = None) -> str:
    year = year or timezone.localdate().year
    prefix = f'INV-{year}-'
    last = (Invoice.objects.filter(invoice_number__startswith=prefix)
            .order_by('-invoice_number').values_list('invoice_number', flat=True).first())
    seq = 1
    if last:
        try:
            seq = int(last.rsplit('-', 1)[1]) + 1
        except (IndexError, ValueError):
            seq = Invoice.objects.filter(invoice_number__startswith=prefix).count() + 1
    return f'{prefix}{seq:06d}'


def _items_total(items) -> Decimal:
    total = Decimal('0')
    for item in items:
        total += Decimal(str(item.get('quantity', 1))) * Decimal(str(item['unit_price']))
    return total.quantize(CENT)


def create_invoice(user, data: Dict[str, Any]) -> Invoice:
    patient = get_patient_for_user(user, data['patient_id'])
    visit = None
    if data.get('visit_id'):
        visit = Visit.objects.filter(id=data['visit_id']).first()
        if not visit:
            raise NotFoundError('Visit not found', code='VISIT_NOT_FOUND')
        if visit.patient_id != patient.id:
            raise ApiError('Visit does not belong to this patient', code='VISIT_PATIENT_MISMATCH')

    items = data.get('items') or []
    if items:
        amount_total = _items_total(items)
    elif data.get('amount_total') is not None:
        amount_total = Decimal(str(data['amount_total'])).quantize(CENT)
    else:
        raise ApiError('Either items or amount_total is required', code='INVALID_AMOUNT')
    if amount_total <= 0:
        raise ApiError('Invoice amount must be positive', code='INVALID_AMOUNT')

    dietitian = None
    if visit is not None and visit.dietitian_id:
        dietitian = visit.dietitian
    elif user.role == User.ROLE_DIETITIAN:
        dietitian = user
    else:
        dietitian = patient.assigned_dietitian

    invoice_date = data.get('invoice_date') or timezone.localdate()
    due_date = data.get('due_date') or invoice_date + timedelta(days=DEFAULT_DUE_DAYS)

    # the number is derived from the current maximum; retry if a concurrent insert took it
    for attempt in range(5):
        try:
            with transaction.atomic():
                invoice = Invoice.objects.create(
                    invoice_number=next_invoice_number(invoice_date.year),
                    patient=patient,
                    visit=visit,
                    dietitian=dietitian,
                    service_description=data.get('service_description') or '',
                    invoice_date=invoice_date,
                    due_date=due_date,
                    amount_total=amount_total,
                    notes=data.get('notes') or '',
                    created_by=user,
                )
                for item in items:
                    InvoiceItem.objects.create(
                        invoice=invoice,
                        description=item['description'],
                        quantity=Decimal(str(item.get('quantity', 1))),
                        unit_price=Decimal(str(item['unit_price'])),
                    )
            break
        except IntegrityError:
            logger.info('Invoice number collision, retrying (%s)', attempt + 1)
    else:
        raise ApiError('Could not allocate an invoice number', code='INVOICE_NUMBER_CONFLICT', status_code=409)

    log_action(user=user, action='invoice_create', object_type='invoice', object_id=invoice.id,
               detail={'number': invoice.invoice_number, 'amount': str(amount_total)})
    return invoice


@transaction.atomic
def update_invoice(user, invoice: Invoice, data: Dict[str, Any]) -> Invoice:
    if invoice.status in LOCKED_STATUSES:
        raise ApiError(f'Cannot modify an invoice with status {invoice.status}', code='INVOICE_LOCKED')
    for key in ('service_description', 'invoice_date', 'due_date', 'notes'):
        if key in data and data[key] is not None:
            setattr(invoice, key, data[key])
    items = data.get('items')
    if items is not None:
        invoice.items.all().delete()
        for item in items:
            InvoiceItem.objects.create(invoice=invoice, description=item['description'],
                                       quantity=Decimal(str(item.get('quantity', 1))),
                                       unit_price=Decimal(str(item['unit_price'])))
        invoice.amount_total = _items_total(items)
    elif data.get('amount_total') is not None:
        invoice.amount_total = Decimal(str(data['amount_total'])).quantize(CENT)
    if invoice.amount_total < invoice.amount_paid:
        raise ApiError('Total cannot be lower than the amount already paid', code='INVALID_AMOUNT')
    invoice.save()
    log_action(user=user, action='invoice_update', object_type='invoice', object_id=invoice.id)
    return invoice


def delete_invoice(user, invoice: Invoice) -> None:
    if invoice.status == Invoice.STATUS_PAID or invoice.payments.exists():
        raise ApiError('Cannot delete an invoice with payments', code='INVOICE_HAS_PAYMENTS')
    number = invoice.invoice_number
    invoice_id = invoice.id
    invoice.delete()
    log_action(user=user, action='invoice_delete', object_type='invoice', object_id=invoice_id,
               detail={'number': number})


def _status_after_payment(invoice: Invoice) -> str:
    if invoice.amount_paid >= invoice.amount_total:
        return Invoice.STATUS_PAID
    if invoice.amount_paid > 0:
        return Invoice.STATUS_PARTIAL
    return invoice.status


@transaction.atomic
def record_payment(user, invoice: Invoice, amount, method: str = 'CARD', paid_at=None, reference: str = '') -> Payment:
    invoice = Invoice.objects.select_for_update().get(id=invoice.id)
    if invoice.status in LOCKED_STATUSES:
        raise ApiError(f'Cannot record a payment on an invoice with status {invoice.status}', code='INVOICE_LOCKED')
    amount = Decimal(str(amount)).quantize(CENT)
    if amount <= 0:
        raise ApiError('Payment amount must be positive', code='INVALID_AMOUNT')
    if amount > invoice.amount_due:
        raise ApiError(f'Payment exceeds the amount due ({invoice.amount_due})', code='INVALID_AMOUNT')
    payment = Payment.objects.create(
        invoice=invoice, amount=amount, method=method, paid_at=paid_at or timezone.now(),
        reference=reference or '', recorded_by=user,
    )
    invoice.amount_paid += amount
    invoice.status = _status_after_payment(invoice)
    invoice.save(update_fields=['amount_paid', 'status', 'updated_at'])
    log_action(user=user, action='invoice_payment', object_type='invoice', object_id=invoice.id,
               detail={'amount': str(amount), 'method': method, 'status': invoice.status})
    return payment


def mark_paid(user, invoice: Invoice, method: str = 'CARD', reference: str = '') -> Invoice:
    if invoice.status in LOCKED_STATUSES:
        raise ApiError(f'Cannot mark an invoice with status {invoice.status} as paid', code='INVOICE_LOCKED')
    due = invoice.amount_due
    if due > 0:
        record_payment(user, invoice, due, method=method, reference=reference)
    else:
        invoice.status = Invoice.STATUS_PAID
        invoice.save(update_fields=['status', 'updated_at'])
    invoice.refresh_from_db()
    return invoice


def cancel_invoice(user, invoice: Invoice) -> Invoice:
    if invoice.status == Invoice.STATUS_PAID:
        raise ApiError('Cannot cancel a paid invoice', code='INVOICE_LOCKED')
    invoice.status = Invoice.STATUS_CANCELLED
    invoice.save(update_fields=['status', 'updated_at'])
    log_action(user=user, action='invoice_cancel', object_type='invoice', object_id=invoice.id)
    return invoice


def mark_overdue(today=None) -> int:
    """Move SENT and PARTIAL invoices past their due date to OVERDUE."""
    today = today or timezone.localdate()
    updated = Invoice.objects.filter(
        status__in=[Invoice.STATUS_SENT, Invoice.STATUS_PARTIAL], due_date__lt=today,
    ).update(status=Invoice.STATUS_OVERDUE, updated_at=timezone.now())
    if updated:
        logger.info('Marked %s invoices overdue', updated)
    return updated


def invoice_stats(user, date_from=None, date_to=None) -> Dict[str, Any]:
    # re-select by id so aggregates are not inflated by the scoping joins
    qs = Invoice.objects.filter(id__in=scoped_invoices(user).values('id'))
    if date_from:
        qs = qs.filter(invoice_date__gte=date_from)
    if date_to:
        qs = qs.filter(invoice_date__lte=date_to)
    by_status = {
        row['status']: {'count': row['n'], 'total': str(row['total'] or Decimal('0.00'))}
        for row in qs.order_by().values('status').annotate(n=Count('id'), total=Sum('amount_total'))
    }
    live = qs.exclude(status=Invoice.STATUS_CANCELLED)
    agg = live.aggregate(billed=Sum('amount_total'), paid=Sum('amount_paid'))
    billed = agg['billed'] or Decimal('0.00')
    paid = agg['paid'] or Decimal('0.00')
    open_agg = live.filter(status__in=OPEN_STATUSES).aggregate(total=Sum('amount_total'), paid=Sum('amount_paid'))
    outstanding = (open_agg['total'] or Decimal('0')) - (open_agg['paid'] or Decimal('0'))
    return {
        'count': live.count(),
        'byStatus': by_status,
        'totalBilled': str(billed),
        'totalRevenue': str(paid),
        'outstanding': str(outstanding.quantize(CENT)),
        'overdueCount': live.filter(status=Invoice.STATUS_OVERDUE).count(),
    }
