"""
Django admin registrations for the clinic models.

Only minimal configuration is applied: enough for an administrator to
inspect records and fix data by hand from ``/admin/``.
"""

from django.contrib import admin

from .models import (
    AssistantLink,
    AuditEvent,
    Conversation,
    EmailCampaign,
    EmailCampaignRecipient,
    EmailLog,
    EmailTemplate,
    Invoice,
    InvoiceItem,
    Message,
    Patient,
    PatientTag,
    Payment,
    User,
    Visit,
)


@admin.register(User)
class UserAdmin(admin.ModelAdmin):
    list_display = ('username', 'role', 'email', 'is_active', 'google_calendar_sync_enabled')
    list_filter = ('role', 'is_active')
    search_fields = ('username', 'first_name', 'last_name', 'email')
    exclude = ('google_access_token', 'google_refresh_token')


@admin.register(AssistantLink)
class AssistantLinkAdmin(admin.ModelAdmin):
    list_display = ('assistant', 'dietitian', 'created_at')
    search_fields = ('assistant__username', 'dietitian__username')


class PatientTagInline(admin.TabularInline):
    model = PatientTag
    extra = 0


@admin.register(Patient)
class PatientAdmin(admin.ModelAdmin):
    list_display = ('id', 'last_name', 'first_name', 'email', 'assigned_dietitian', 'is_active')
    list_filter = ('is_active', 'gender', 'language_preference')
    search_fields = ('first_name', 'last_name', 'email', 'phone')
    inlines = [PatientTagInline]


@admin.register(Visit)
class VisitAdmin(admin.ModelAdmin):
    list_display = ('id', 'patient', 'dietitian', 'visit_date', 'status', 'sync_status')
    list_filter = ('status', 'sync_status')
    search_fields = ('patient__last_name', 'dietitian__username', 'google_event_id')


class InvoiceItemInline(admin.TabularInline):
    model = InvoiceItem
    extra = 0


class PaymentInline(admin.TabularInline):
    model = Payment
    extra = 0


@admin.register(Invoice)
class InvoiceAdmin(admin.ModelAdmin):
    list_display = ('invoice_number', 'patient', 'invoice_date', 'amount_total', 'amount_paid', 'status')
    list_filter = ('status',)
    search_fields = ('invoice_number', 'patient__last_name')
    inlines = [InvoiceItemInline, PaymentInline]


@admin.register(Conversation)
class ConversationAdmin(admin.ModelAdmin):
    list_display = ('id', 'patient', 'dietitian', 'status', 'last_message_at')
    list_filter = ('status',)


@admin.register(Message)
class MessageAdmin(admin.ModelAdmin):
    list_display = ('id', 'conversation', 'sender', 'created_at')
    search_fields = ('content',)


@admin.register(EmailTemplate)
class EmailTemplateAdmin(admin.ModelAdmin):
    list_display = ('slug', 'name', 'category', 'version', 'is_active', 'is_system')
    list_filter = ('category', 'is_active', 'is_system')
    search_fields = ('slug', 'name', 'subject')


@admin.register(EmailLog)
class EmailLogAdmin(admin.ModelAdmin):
    list_display = ('id', 'sent_to', 'email_type', 'template_slug', 'status', 'sent_at')
    list_filter = ('status', 'email_type')
    search_fields = ('sent_to', 'subject')


@admin.register(EmailCampaign)
class EmailCampaignAdmin(admin.ModelAdmin):
    list_display = ('id', 'name', 'status', 'campaign_type', 'scheduled_at', 'recipient_count', 'is_active')
    list_filter = ('status', 'campaign_type', 'is_active')
    search_fields = ('name', 'subject')


@admin.register(EmailCampaignRecipient)
class EmailCampaignRecipientAdmin(admin.ModelAdmin):
    list_display = ('campaign', 'email', 'status', 'sent_at', 'opened_at', 'clicked_at')
    list_filter = ('status',)
    search_fields = ('email',)


@admin.register(AuditEvent)
class AuditEventAdmin(admin.ModelAdmin):
    list_display = ('created_at', 'user', 'action', 'object_type', 'object_id')
    list_filter = ('action', 'object_type')
