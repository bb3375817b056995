from datetime import timedelta
from decimal import Decimal

from django.db.models import Sum
from django.utils import timezone

from clinic.models import Invoice, User, Visit
from clinic.services.billing import OPEN_STATUSES, scoped_invoices
from clinic.services.messaging import unread_total
from clinic.services.scope import scoped_patients
from clinic.services.visits import scoped_visits


def dashboard_counts(user) -> dict:
    """Headline numbers for the staff home page, restricted to the user's scope."""
    now = timezone.localtime()
    day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    day_end = day_start + timedelta(days=1)

    visits = Visit.objects.filter(id__in=scoped_visits(user).values('id'))
    invoices = Invoice.objects.filter(id__in=scoped_invoices(user).values('id'), status__in=OPEN_STATUSES)
    agg = invoices.aggregate(total=Sum('amount_total'), paid=Sum('amount_paid'))
    unpaid = (agg['total'] or Decimal('0')) - (agg['paid'] or Decimal('0'))

    data = {
        'activePatients': scoped_patients(user).filter(is_active=True).count(),
        'visitsToday': visits.filter(visit_date__gte=day_start, visit_date__lt=day_end)
                             .exclude(status=Visit.STATUS_CANCELLED).count(),
        'upcomingVisits': visits.filter(visit_date__gte=now, status=Visit.STATUS_SCHEDULED).count(),
        'unpaidInvoices': invoices.count(),
        'unpaidTotal': str(unpaid.quantize(Decimal('0.01'))),
        'overdueInvoices': invoices.filter(status=Invoice.STATUS_OVERDUE).count(),
        'unreadMessages': unread_total(user),
    }
    if user.role == User.ROLE_ADMIN:
        data['staff'] = User.objects.filter(is_active=True, role__in=User.STAFF_ROLES).count()
    return data
