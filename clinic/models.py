"""
Database models for the practice backend.

These models capture the concepts of a dietitian practice: staff users
and their roles, patients, visits, invoices and payments, patient
conversations, email templates and campaigns, and the audit trail.
"""
from __future__ import annotations

import uuid
from decimal import Decimal

from django.contrib.auth.models import AbstractUser
from django.db import models


class User(AbstractUser):
    """Custom user model with a role and optional Google Calendar link.

    Staff roles are ADMIN, DIETITIAN and ASSISTANT.  PATIENT users are
    portal accounts attached to a :class:`Patient` record.
    """
    ROLE_ADMIN = 'ADMIN'
    ROLE_DIETITIAN = 'DIETITIAN'
    ROLE_ASSISTANT = 'ASSISTANT'
    ROLE_PATIENT = 'PATIENT'
    ROLE_CHOICES = [
        (ROLE_ADMIN, 'Administrator'),
        (ROLE_DIETITIAN, 'Dietitian'),
        (ROLE_ASSISTANT, 'Assistant'),
        (ROLE_PATIENT, 'Patient'),
    ]
    STAFF_ROLES = {ROLE_ADMIN, ROLE_DIETITIAN, ROLE_ASSISTANT}

    role = models.CharField(max_length=16, choices=ROLE_CHOICES, default=ROLE_DIETITIAN, db_index=True)
    phone = models.CharField(max_length=32, blank=True)

    google_access_token = models.TextField(blank=True, null=True)
    google_refresh_token = models.TextField(blank=True, null=True)
    google_token_expiry = models.DateTimeField(blank=True, null=True)
    google_calendar_id = models.CharField(max_length=255, default='primary')
    google_calendar_sync_enabled = models.BooleanField(default=False)

    @property
    def display_name(self) -> str:
        return self.get_full_name() or self.username

    def __str__(self) -> str:
        return f"{self.username} ({self.role})"


class AssistantLink(models.Model):
    """Grants an assistant access to a dietitian's patients."""
    assistant = models.ForeignKey(User, on_delete=models.CASCADE, related_name='assistant_links')
    dietitian = models.ForeignKey(User, on_delete=models.CASCADE, related_name='assistant_grants')
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        unique_together = [('assistant', 'dietitian')]

    def __str__(self) -> str:
        return f"{self.assistant_id} -> {self.dietitian_id}"


class Patient(models.Model):
    """A person followed by the practice."""
    GENDER_CHOICES = [
        ('MALE', 'Male'),
        ('FEMALE', 'Female'),
        ('OTHER', 'Other'),
    ]

    first_name = models.CharField(max_length=100)
    last_name = models.CharField(max_length=100, db_index=True)
    date_of_birth = models.DateField(blank=True, null=True)
    gender = models.CharField(max_length=10, choices=GENDER_CHOICES, blank=True)
    email = models.EmailField(blank=True, null=True, db_index=True)
    phone = models.CharField(max_length=32, blank=True)
    address = models.CharField(max_length=255, blank=True)
    city = models.CharField(max_length=100, blank=True)
    postal_code = models.CharField(max_length=20, blank=True)
    country = models.CharField(max_length=100, blank=True)

    medical_notes = models.TextField(blank=True)
    allergies = models.TextField(blank=True)
    dietary_preferences = models.TextField(blank=True)
    language_preference = models.CharField(max_length=8, default='fr')

    assigned_dietitian = models.ForeignKey(
        User, null=True, blank=True, on_delete=models.SET_NULL, related_name='assigned_patients'
    )
    dietitians = models.ManyToManyField(User, blank=True, related_name='linked_patients')
    user = models.OneToOneField(
        User, null=True, blank=True, on_delete=models.SET_NULL, related_name='patient_record'
    )

    is_active = models.BooleanField(default=True, db_index=True)
    # Consent to receive emails (reminders and campaigns)
    appointment_reminders_enabled = models.BooleanField(default=True)
    unsubscribe_token = models.UUIDField(default=uuid.uuid4, unique=True, editable=False)

    created_by = models.ForeignKey(
        User, null=True, blank=True, on_delete=models.SET_NULL, related_name='patients_created'
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [
            models.Index(fields=['last_name', 'first_name'], name='patient_name_idx'),
            models.Index(fields=['assigned_dietitian', 'is_active'], name='patient_dietitian_active_idx'),
        ]

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def __str__(self) -> str:
        return self.full_name


class PatientTag(models.Model):
    patient = models.ForeignKey(Patient, on_delete=models.CASCADE, related_name='tags')
    tag_name = models.CharField(max_length=50)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        unique_together = [('patient', 'tag_name')]
        indexes = [models.Index(fields=['tag_name'], name='patienttag_name_idx')]

    def __str__(self) -> str:
        return f"{self.patient_id}:{self.tag_name}"


class Visit(models.Model):
    """A scheduled or past consultation between a patient and a dietitian."""
    STATUS_SCHEDULED = 'SCHEDULED'
    STATUS_COMPLETED = 'COMPLETED'
    STATUS_CANCELLED = 'CANCELLED'
    STATUS_NO_SHOW = 'NO_SHOW'
    STATUS_CHOICES = [
        (STATUS_SCHEDULED, 'Scheduled'),
        (STATUS_COMPLETED, 'Completed'),
        (STATUS_CANCELLED, 'Cancelled'),
        (STATUS_NO_SHOW, 'No show'),
    ]

    SYNC_PENDING = 'pending'
    SYNC_SYNCED = 'synced'
    SYNC_CONFLICT = 'conflict'
    SYNC_ERROR = 'error'
    SYNC_CHOICES = [
        (SYNC_PENDING, 'pending'),
        (SYNC_SYNCED, 'synced'),
        (SYNC_CONFLICT, 'conflict'),
        (SYNC_ERROR, 'error'),
    ]

    patient = models.ForeignKey(Patient, on_delete=models.CASCADE, related_name='visits')
    dietitian = models.ForeignKey(User, null=True, on_delete=models.SET_NULL, related_name='visits')
    visit_date = models.DateTimeField(db_index=True)
    duration_minutes = models.PositiveIntegerField(default=60)
    visit_type = models.CharField(max_length=64, blank=True)
    status = models.CharField(max_length=16, choices=STATUS_CHOICES, default=STATUS_SCHEDULED, db_index=True)
    notes = models.TextField(blank=True)

    google_event_id = models.CharField(max_length=255, blank=True, null=True)
    sync_status = models.CharField(max_length=16, choices=SYNC_CHOICES, default=SYNC_PENDING)
    sync_error_count = models.PositiveIntegerField(default=0)
    last_sync_error = models.TextField(blank=True)
    last_synced_at = models.DateTimeField(blank=True, null=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [
            models.Index(fields=['dietitian', 'visit_date'], name='visit_dietitian_date_idx'),
            models.Index(fields=['patient', 'visit_date'], name='visit_patient_date_idx'),
        ]

    def __str__(self) -> str:
        return f"visit {self.id} p={self.patient_id} @ {self.visit_date:%F %H:%M}"


class Invoice(models.Model):
    STATUS_DRAFT = 'DRAFT'
    STATUS_SENT = 'SENT'
    STATUS_PAID = 'PAID'
    STATUS_PARTIAL = 'PARTIAL'
    STATUS_OVERDUE = 'OVERDUE'
    STATUS_CANCELLED = 'CANCELLED'
    STATUS_CHOICES = [
        (STATUS_DRAFT, 'Draft'),
        (STATUS_SENT, 'Sent'),
        (STATUS_PAID, 'Paid'),
        (STATUS_PARTIAL, 'Partial'),
        (STATUS_OVERDUE, 'Overdue'),
        (STATUS_CANCELLED, 'Cancelled'),
    ]

    invoice_number = models.CharField(max_length=32, unique=True)
    patient = models.ForeignKey(Patient, on_delete=models.PROTECT, related_name='invoices')
    visit = models.ForeignKey(Visit, null=True, blank=True, on_delete=models.SET_NULL, related_name='invoices')
    dietitian = models.ForeignKey(User, null=True, blank=True, on_delete=models.SET_NULL, related_name='invoices')
    service_description = models.CharField(max_length=255, blank=True)
    invoice_date = models.DateField()
    due_date = models.DateField(blank=True, null=True)
    amount_total = models.DecimalField(max_digits=10, decimal_places=2, default=Decimal('0.00'))
    amount_paid = models.DecimalField(max_digits=10, decimal_places=2, default=Decimal('0.00'))
    status = models.CharField(max_length=16, choices=STATUS_CHOICES, default=STATUS_DRAFT, db_index=True)
    notes = models.TextField(blank=True)
    sent_at = models.DateTimeField(blank=True, null=True)

    created_by = models.ForeignKey(
        User, null=True, blank=True, on_delete=models.SET_NULL, related_name='invoices_created'
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    @property
    def amount_due(self) -> Decimal:
        return max(Decimal('0.00'), (self.amount_total or Decimal('0')) - (self.amount_paid or Decimal('0')))

    def __str__(self) -> str:
        return self.invoice_number


class InvoiceItem(models.Model):
    invoice = models.ForeignKey(Invoice, on_delete=models.CASCADE, related_name='items')
    description = models.CharField(max_length=255)
    quantity = models.DecimalField(max_digits=8, decimal_places=2, default=Decimal('1'))
    unit_price = models.DecimalField(max_digits=10, decimal_places=2)

    @property
    def amount(self) -> Decimal:
        return (self.quantity * self.unit_price).quantize(Decimal('0.01'))

    def __str__(self) -> str:
        return f"{self.description} x{self.quantity}"


class Payment(models.Model):
    METHOD_CHOICES = [
        ('CASH', 'Cash'),
        ('CARD', 'Card'),
        ('TRANSFER', 'Bank transfer'),
        ('CHECK', 'Check'),
        ('OTHER', 'Other'),
    ]
    invoice = models.ForeignKey(Invoice, on_delete=models.CASCADE, related_name='payments')
    amount = models.DecimalField(max_digits=10, decimal_places=2)
    method = models.CharField(max_length=16, choices=METHOD_CHOICES, default='CARD')
    paid_at = models.DateTimeField()
    reference = models.CharField(max_length=100, blank=True)
    recorded_by = models.ForeignKey(User, null=True, blank=True, on_delete=models.SET_NULL)
    created_at = models.DateTimeField(auto_now_add=True)

    def __str__(self) -> str:
        return f"{self.amount} on {self.invoice_id}"


# ---------------------------------------------------------------------------
# Messaging
# ---------------------------------------------------------------------------

class Conversation(models.Model):
    STATUS_OPEN = 'open'
    STATUS_CLOSED = 'closed'
    STATUS_CHOICES = ((STATUS_OPEN, 'open'), (STATUS_CLOSED, 'closed'))

    patient = models.ForeignKey(Patient, on_delete=models.CASCADE, related_name='conversations')
    dietitian = models.ForeignKey(User, on_delete=models.CASCADE, related_name='conversations')
    title = models.CharField(max_length=255, blank=True)
    status = models.CharField(max_length=16, choices=STATUS_CHOICES, default=STATUS_OPEN)

    last_message_at = models.DateTimeField(blank=True, null=True)
    dietitian_unread_count = models.PositiveIntegerField(default=0)
    patient_unread_count = models.PositiveIntegerField(default=0)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        unique_together = [('patient', 'dietitian')]
        indexes = [
            models.Index(fields=['dietitian', 'last_message_at'], name='conv_dietitian_last_idx'),
            models.Index(fields=['patient', 'last_message_at'], name='conv_patient_last_idx'),
        ]

    def __str__(self) -> str:
        return f"conversation d={self.dietitian_id} p={self.patient_id}"


class Message(models.Model):
    conversation = models.ForeignKey(Conversation, on_delete=models.CASCADE, related_name='messages')
    sender = models.ForeignKey(User, on_delete=models.CASCADE)
    content = models.TextField()
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        indexes = [models.Index(fields=['conversation', 'created_at'], name='message_conv_created_idx')]

    def __str__(self) -> str:
        return f"msg {self.id} conversation={self.conversation_id}"


# ---------------------------------------------------------------------------
# Email templates, logs and campaigns
# ---------------------------------------------------------------------------

class EmailTemplate(models.Model):
    CATEGORY_CHOICES = [
        ('invoice', 'Invoice'),
        ('document_share', 'Document share'),
        ('payment_reminder', 'Payment reminder'),
        ('appointment_reminder', 'Appointment reminder'),
        ('follow_up', 'Follow up'),
        ('general', 'General'),
    ]

    name = models.CharField(max_length=200)
    slug = models.SlugField(max_length=100, unique=True)
    category = models.CharField(max_length=32, choices=CATEGORY_CHOICES, default='general', db_index=True)
    description = models.TextField(blank=True)
    subject = models.CharField(max_length=500)
    body_html = models.TextField()
    body_text = models.TextField(blank=True)
    available_variables = models.JSONField(default=list, blank=True)
    version = models.PositiveIntegerField(default=1)
    is_active = models.BooleanField(default=True)
    is_system = models.BooleanField(default=False)

    created_by = models.ForeignKey(
        User, null=True, blank=True, on_delete=models.SET_NULL, related_name='email_templates_created'
    )
    updated_by = models.ForeignKey(
        User, null=True, blank=True, on_delete=models.SET_NULL, related_name='email_templates_updated'
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    deleted_at = models.DateTimeField(blank=True, null=True)

    def __str__(self) -> str:
        return f"{self.name} ({self.slug})"


class EmailLog(models.Model):
    STATUS_QUEUED = 'queued'
    STATUS_SENT = 'sent'
    STATUS_FAILED = 'failed'
    STATUS_CHOICES = ((STATUS_QUEUED, 'queued'), (STATUS_SENT, 'sent'), (STATUS_FAILED, 'failed'))

    template = models.ForeignKey(EmailTemplate, null=True, blank=True, on_delete=models.SET_NULL)
    template_slug = models.CharField(max_length=100, blank=True)
    email_type = models.CharField(max_length=32, default='general')
    sent_to = models.CharField(max_length=255)
    patient = models.ForeignKey(Patient, null=True, blank=True, on_delete=models.SET_NULL, related_name='email_logs')
    subject = models.CharField(max_length=500)
    body_html = models.TextField(blank=True)
    body_text = models.TextField(blank=True)
    variables_used = models.JSONField(default=dict, blank=True)
    status = models.CharField(max_length=16, choices=STATUS_CHOICES, default=STATUS_QUEUED)
    error_message = models.TextField(blank=True)
    sent_at = models.DateTimeField(blank=True, null=True)
    sent_by = models.ForeignKey(User, null=True, blank=True, on_delete=models.SET_NULL)
    language_code = models.CharField(max_length=8, default='fr')
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        indexes = [models.Index(fields=['email_type', 'created_at'], name='emaillog_type_created_idx')]

    def __str__(self) -> str:
        return f"{self.email_type} -> {self.sent_to} ({self.status})"


class EmailCampaign(models.Model):
    STATUS_DRAFT = 'draft'
    STATUS_SCHEDULED = 'scheduled'
    STATUS_SENDING = 'sending'
    STATUS_SENT = 'sent'
    STATUS_CANCELLED = 'cancelled'
    STATUS_CHOICES = [
        (STATUS_DRAFT, 'draft'),
        (STATUS_SCHEDULED, 'scheduled'),
        (STATUS_SENDING, 'sending'),
        (STATUS_SENT, 'sent'),
        (STATUS_CANCELLED, 'cancelled'),
    ]
    TYPE_CHOICES = [
        ('newsletter', 'Newsletter'),
        ('promotional', 'Promotional'),
        ('educational', 'Educational'),
        ('reminder', 'Reminder'),
    ]

    name = models.CharField(max_length=200)
    subject = models.CharField(max_length=500)
    body_html = models.TextField(blank=True)
    body_text = models.TextField(blank=True)
    status = models.CharField(max_length=16, choices=STATUS_CHOICES, default=STATUS_DRAFT, db_index=True)
    campaign_type = models.CharField(max_length=16, choices=TYPE_CHOICES, default='newsletter')
    scheduled_at = models.DateTimeField(blank=True, null=True)
    sent_at = models.DateTimeField(blank=True, null=True)
    target_audience = models.JSONField(default=dict, blank=True)
    recipient_count = models.PositiveIntegerField(default=0)

    created_by = models.ForeignKey(
        User, null=True, blank=True, on_delete=models.SET_NULL, related_name='campaigns_created'
    )
    # Signs the campaign; defaults to each patient's assigned dietitian when unset
    sender = models.ForeignKey(
        User, null=True, blank=True, on_delete=models.SET_NULL, related_name='campaigns_signed'
    )
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [models.Index(fields=['status', 'scheduled_at'], name='campaign_status_sched_idx')]

    def can_edit(self) -> bool:
        return self.status in (self.STATUS_DRAFT, self.STATUS_SCHEDULED)

    def can_send(self) -> bool:
        has_body = bool((self.body_html or '').strip() or (self.body_text or '').strip())
        return self.can_edit() and bool((self.subject or '').strip()) and has_body

    def can_cancel(self) -> bool:
        return self.status in (self.STATUS_SCHEDULED, self.STATUS_SENDING)

    def __str__(self) -> str:
        return f"{self.name} ({self.status})"


class EmailCampaignRecipient(models.Model):
    STATUS_PENDING = 'pending'
    STATUS_SENT = 'sent'
    STATUS_FAILED = 'failed'
    STATUS_BOUNCED = 'bounced'
    STATUS_CHOICES = [
        (STATUS_PENDING, 'pending'),
        (STATUS_SENT, 'sent'),
        (STATUS_FAILED, 'failed'),
        (STATUS_BOUNCED, 'bounced'),
    ]

    campaign = models.ForeignKey(EmailCampaign, on_delete=models.CASCADE, related_name='recipients')
    patient = models.ForeignKey(Patient, null=True, blank=True, on_delete=models.SET_NULL, related_name='campaign_receipts')
    email = models.CharField(max_length=255)
    status = models.CharField(max_length=16, choices=STATUS_CHOICES, default=STATUS_PENDING, db_index=True)
    sent_at = models.DateTimeField(blank=True, null=True)
    opened_at = models.DateTimeField(blank=True, null=True)
    clicked_at = models.DateTimeField(blank=True, null=True)
    error_message = models.TextField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        unique_together = [('campaign', 'patient')]
        indexes = [models.Index(fields=['campaign', 'status'], name='recipient_campaign_status_idx')]

    def __str__(self) -> str:
        return f"{self.email} ({self.status})"


class AuditEvent(models.Model):
    user = models.ForeignKey(User, on_delete=models.SET_NULL, null=True, blank=True)
    action = models.CharField(max_length=64)
    object_type = models.CharField(max_length=64, blank=True, null=True)
    object_id = models.CharField(max_length=64, blank=True, null=True)
    detail = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        indexes = [
            models.Index(fields=['action', 'created_at'], name='audit_action_created_idx'),
            models.Index(fields=['object_type', 'object_id', 'created_at'], name='audit_object_idx'),
        ]

    def __str__(self) -> str:
        return f"{self.action}:{self.user_id}@{self.created_at:%F %T}"
