"""
URL mappings for the practice API.

Trailing slashes are omitted.  Literal segments such as
``api/campaigns/segment-fields`` are listed before the ``<int:pk>``
routes that share their prefix.
"""
from django.urls import path, include

from .auth_views import change_password_view, jwt_logout_view, jwt_refresh_view, login_view, me_view
from .views import billing, calendar, campaigns, dashboard, email_templates, health, messages, patients, tracking
from .views import users, visits

urlpatterns = [
    path('', include('django_prometheus.urls')),
    path('healthz', health.healthz),

    # auth
    path('api/auth/login', login_view),
    path('api/auth/refresh', jwt_refresh_view),
    path('api/auth/logout', jwt_logout_view),
    path('api/auth/me', me_view),
    path('api/auth/change-password', change_password_view),

    # accounts
    path('api/users', users.users),
    path('api/users/dietitians', users.dietitians),
    path('api/users/<int:pk>', users.user_detail),
    path('api/assistant-links', users.assistant_links),
    path('api/assistant-links/<int:pk>', users.assistant_link_delete),

    path('api/dashboard', dashboard.dashboard),

    # patients
    path('api/patients', patients.patients),
    path('api/patients/tags', patients.all_tags),
    path('api/patients/<int:pk>', patients.patient_detail),
    path('api/patients/<int:pk>/summary', patients.patient_summary),
    path('api/patients/<int:pk>/tags', patients.patient_tags),
    path('api/patients/<int:pk>/tags/<str:tag>', patients.patient_tag_delete),

    # visits
    path('api/visits', visits.visits),
    path('api/visits/agenda', visits.agenda),
    path('api/visits/<int:pk>', visits.visit_detail),

    # billing
    path('api/invoices', billing.invoices),
    path('api/invoices/stats', billing.invoice_stats),
    path('api/invoices/<int:pk>', billing.invoice_detail),
    path('api/invoices/<int:pk>/payments', billing.invoice_payments),
    path('api/invoices/<int:pk>/mark-paid', billing.invoice_mark_paid),
    path('api/invoices/<int:pk>/cancel', billing.invoice_cancel),
    path('api/invoices/<int:pk>/send', billing.invoice_send),

    # messaging
    path('api/conversations', messages.conversations),
    path('api/conversations/unread-count', messages.unread_count),
    path('api/conversations/<int:pk>', messages.conversation_detail),
    path('api/conversations/<int:pk>/messages', messages.conversation_messages),
    path('api/conversations/<int:pk>/read', messages.conversation_read),
    path('api/conversations/<int:pk>/status', messages.conversation_status),

    # email templates
    path('api/email-templates', email_templates.email_templates),
    path('api/email-templates/stats', email_templates.email_template_stats),
    path('api/email-templates/variables/<str:category>', email_templates.email_template_variables),
    path('api/email-templates/<int:pk>', email_templates.email_template_detail),
    path('api/email-templates/<int:pk>/duplicate', email_templates.email_template_duplicate),
    path('api/email-templates/<int:pk>/toggle', email_templates.email_template_toggle),
    path('api/email-templates/<int:pk>/preview', email_templates.email_template_preview),
    path('api/email-templates/<int:pk>/send-test', email_templates.email_template_send_test),

    # campaigns; public tracking first
    path('api/campaigns/track/open/<int:campaign_id>/<int:patient_id>', tracking.track_open),
    path('api/campaigns/track/click/<int:campaign_id>/<int:patient_id>', tracking.track_click),
    path('api/campaigns/unsubscribe/<str:token>', tracking.unsubscribe),
    path('api/campaigns', campaigns.campaigns),
    path('api/campaigns/segment-fields', campaigns.segment_fields),
    path('api/campaigns/preview-audience', campaigns.preview_audience),
    path('api/campaigns/<int:pk>', campaigns.campaign_detail),
    path('api/campaigns/<int:pk>/duplicate', campaigns.campaign_duplicate),
    path('api/campaigns/<int:pk>/preview-audience', campaigns.campaign_preview_audience),
    path('api/campaigns/<int:pk>/send', campaigns.campaign_send),
    path('api/campaigns/<int:pk>/schedule', campaigns.campaign_schedule),
    path('api/campaigns/<int:pk>/cancel', campaigns.campaign_cancel),
    path('api/campaigns/<int:pk>/stats', campaigns.campaign_stats),
    path('api/campaigns/<int:pk>/recipients', campaigns.campaign_recipients),

    # calendar
    path('api/calendar/auth-url', calendar.auth_url),
    path('api/calendar/callback', calendar.callback),
    path('api/calendar/disconnect', calendar.disconnect),
    path('api/calendar/status', calendar.status),
    path('api/calendar/calendars', calendar.calendars),
    path('api/calendar/sync', calendar.sync),
    path('api/calendar/issues', calendar.issues),
    path('api/calendar/issues/retry', calendar.retry),
]
