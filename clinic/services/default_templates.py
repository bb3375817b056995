"""System email templates installed by ``seed_email_templates``."""

_LAYOUT = (
    '<!DOCTYPE html><html><head><meta charset="utf-8"></head>'
    '<body style="font-family: Arial, sans-serif; line-height: 1.6; color: #333;">'
    '<div style="max-width: 600px; margin: 0 auto; padding: 20px;">{content}'
    '<p style="color: #777; font-size: 12px;">Ceci est un email automatique. '
    'Veuillez ne pas répondre à ce message.</p></div></body></html>'
)

DEFAULT_TEMPLATES = [
    {
        'slug': 'invoice_notification',
        'name': 'Facture',
        'category': 'invoice',
        'description': 'Envoi d\'une facture au patient',
        'subject': 'Facture #{{invoice_number}}',
        'body_html': _LAYOUT.format(content=(
            '<h1>Facture #{{invoice_number}}</h1>'
            '<p>Bonjour {{patient_name}},</p>'
            '<p>Veuillez trouver ci-dessous les détails de votre facture :</p>'
            '<p><strong>Numéro de facture :</strong> {{invoice_number}}<br>'
            '<strong>Date :</strong> {{invoice_date}}<br>'
            '<strong>Date d\'échéance :</strong> {{due_date}}</p>'
            '<p><strong>Service :</strong> {{service_description}}<br>'
            '<strong>Montant total :</strong> {{amount_total}}<br>'
            '<strong>Montant dû :</strong> {{amount_due}}<br>'
            '<strong>Statut :</strong> {{payment_status}}</p>'
            '<p>Merci de votre confiance !</p>'
            '<p>Cordialement,<br>{{dietitian_name}}</p>'
        )),
        'body_text': (
            'Bonjour {{patient_name}},\n\n'
            'Numéro de facture : {{invoice_number}}\n'
            'Date : {{invoice_date}}\n'
            'Date d\'échéance : {{due_date}}\n\n'
            'Service : {{service_description}}\n'
            'Montant total : {{amount_total}}\n'
            'Montant dû : {{amount_due}}\n'
            'Statut : {{payment_status}}\n\n'
            'Merci de votre confiance !\n\n'
            'Cordialement,\n{{dietitian_name}}'
        ),
    },
    {
        'slug': 'payment_reminder',
        'name': 'Relance de paiement',
        'category': 'payment_reminder',
        'description': 'Rappel pour une facture impayée',
        'subject': 'Rappel : facture #{{invoice_number}} en attente',
        'body_html': _LAYOUT.format(content=(
            '<p>Bonjour {{patient_name}},</p>'
            '<p>Sauf erreur de notre part, la facture <strong>{{invoice_number}}</strong> '
            'du {{invoice_date}} reste impayée ({{days_overdue}} jours de retard).</p>'
            '<p><strong>Montant dû :</strong> {{amount_due}}</p>'
            '<p>Merci de procéder au règlement dans les meilleurs délais.</p>'
        )),
        'body_text': '',
    },
    {
        'slug': 'appointment_reminder',
        'name': 'Rappel de rendez-vous',
        'category': 'appointment_reminder',
        'description': 'Rappel envoyé avant une consultation',
        'subject': 'Rappel : rendez-vous le {{appointment_date}} à {{appointment_time}}',
        'body_html': _LAYOUT.format(content=(
            '<p>Bonjour {{patient_first_name}},</p>'
            '<p>Nous vous rappelons votre rendez-vous ({{visit_type}}) avec '
            '{{dietitian_name}} le <strong>{{appointment_date}}</strong> à '
            '<strong>{{appointment_time}}</strong>.</p>'
            '<p>{{clinic_name}}<br>{{clinic_address}}<br>{{clinic_phone}}</p>'
            '<p><a href="{{unsubscribe_link}}">Ne plus recevoir de rappels</a></p>'
        )),
        'body_text': '',
    },
    {
        'slug': 'follow_up',
        'name': 'Suivi',
        'category': 'follow_up',
        'description': 'Invitation à planifier une consultation de suivi',
        'subject': 'Votre suivi nutritionnel',
        'body_html': _LAYOUT.format(content=(
            '<p>Bonjour {{patient_first_name}},</p>'
            '<p>Votre dernière consultation date du {{last_visit_date}}. '
            'Nous vous recommandons un nouveau rendez-vous vers le {{next_recommended_date}}.</p>'
            '<p>Cordialement,<br>{{dietitian_name}}</p>'
        )),
        'body_text': '',
    },
    {
        'slug': 'document_share',
        'name': 'Partage de document',
        'category': 'document_share',
        'description': 'Notification de partage de document',
        'subject': 'Document partagé : {{document_name}}',
        'body_html': _LAYOUT.format(content=(
            '<p>Bonjour {{patient_name}},</p>'
            '<p>{{shared_by_name}} a partagé le document <strong>{{document_name}}</strong> '
            'avec vous le {{share_date}}.</p>'
            '<p>{{share_notes}}</p>'
        )),
        'body_text': '',
    },
    {
        'slug': 'general_message',
        'name': 'Message',
        'category': 'general',
        'description': 'Message libre',
        'subject': 'Message de {{dietitian_name}}',
        'body_html': _LAYOUT.format(content=(
            '<p>Bonjour {{patient_first_name}},</p>'
            '<p>{{custom_message}}</p>'
            '<p>Cordialement,<br>{{dietitian_name}}</p>'
        )),
        'body_text': '',
    },
]


def get_default(slug: str):
    for tpl in DEFAULT_TEMPLATES:
        if tpl['slug'] == slug:
            return tpl
    return None
