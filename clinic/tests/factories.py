"""Small helpers creating test data with sensible defaults."""
from datetime import timedelta
from decimal import Decimal
from itertools import count

from django.utils import timezone

from clinic.models import AssistantLink, EmailCampaign, Invoice, Patient, PatientTag, User, Visit

_seq = count(1)


def make_user(role=User.ROLE_DIETITIAN, **kwargs):
    n = next(_seq)
    kwargs.setdefault('username', f'{role.lower()}{n}')
    kwargs.setdefault('first_name', f'First{n}')
    kwargs.setdefault('last_name', f'Last{n}')
    kwargs.setdefault('email', f'{kwargs["username"]}@example.com')
    password = kwargs.pop('password', 'P@ssw0rd-123')
    return User.objects.create_user(role=role, password=password, **kwargs)


def link_assistant(assistant, dietitian):
    return AssistantLink.objects.create(assistant=assistant, dietitian=dietitian)


def make_patient(dietitian=None, tags=(), **kwargs):
    n = next(_seq)
    kwargs.setdefault('first_name', f'Pat{n}')
    kwargs.setdefault('last_name', f'Ient{n}')
    kwargs.setdefault('email', f'patient{n}@example.com')
    patient = Patient.objects.create(assigned_dietitian=dietitian, **kwargs)
    if dietitian is not None:
        patient.dietitians.add(dietitian)
    for tag in tags:
        PatientTag.objects.create(patient=patient, tag_name=tag)
    return patient


def make_visit(patient, dietitian=None, days=1, **kwargs):
    kwargs.setdefault('visit_date', timezone.now() + timedelta(days=days))
    return Visit.objects.create(patient=patient, dietitian=dietitian or patient.assigned_dietitian, **kwargs)


def make_invoice(patient, number, amount='60.00', status=Invoice.STATUS_SENT, **kwargs):
    kwargs.setdefault('invoice_date', timezone.localdate())
    kwargs.setdefault('dietitian', patient.assigned_dietitian)
    return Invoice.objects.create(invoice_number=number, patient=patient, amount_total=Decimal(amount),
                                  status=status, **kwargs)


def make_campaign(owner, **kwargs):
    kwargs.setdefault('name', 'Newsletter')
    kwargs.setdefault('subject', 'Bonjour {{patient_first_name}}')
    kwargs.setdefault('body_html', '<html><body><p>Bonjour {{patient_first_name}}</p></body></html>')
    return EmailCampaign.objects.create(created_by=owner, **kwargs)
