from datetime import date, datetime
from decimal import Decimal
from types import SimpleNamespace

import pytest

from clinic.services import templates


def test_render_substitutes_and_marks_missing():
    out = templates.render('Bonjour {{patient_name}}, facture {{invoice_number}}', {'patient_name': 'Marie'})
    assert out == 'Bonjour Marie, facture [invoice_number]'


def test_render_empty_template():
    assert templates.render('', {'a': 1}) == ''
    assert templates.render(None) == ''


def test_render_stringifies_values():
    assert templates.render('{{days_overdue}} jours', {'days_overdue': 3}) == '3 jours'


def test_extract_and_validate_variables():
    body = '{{patient_name}} {{amount_due}} {{patient_name}} {{secret}}'
    assert templates.extract_variables(body) == ['amount_due', 'patient_name', 'secret']
    result = templates.validate_variables(body, templates.available_variables('invoice'))
    assert result['valid'] is False
    assert result['missing'] == ['secret']


def test_available_variables_unknown_category_is_general():
    assert templates.available_variables('nope') == templates.available_variables('general')
    assert 'custom_message' in templates.available_variables(None)


def test_strip_html():
    html = '<p>Bonjour&nbsp;Marie</p><p>Ligne<br/>suivante &amp; fin</p>'
    assert templates.strip_html(html) == 'Bonjour Marie\n\nLigne\nsuivante & fin'


def test_render_template_derives_text_from_html():
    tpl = SimpleNamespace(subject='Facture {{invoice_number}}', body_html='<p>Total {{amount_total}}</p>', body_text='')
    out = templates.render_template(tpl, {'invoice_number': 'INV-1', 'amount_total': '10.00 €'})
    assert out == {'subject': 'Facture INV-1', 'html': '<p>Total 10.00 €</p>', 'text': 'Total 10.00 €'}


def test_formatting_helpers():
    assert templates.format_date(date(2026, 1, 5)) == '05/01/2026'
    assert templates.format_date(None) == ''
    assert templates.format_time(datetime(2026, 1, 5, 9, 30)) == '09:30'
    assert templates.format_money(Decimal('12.5')) == '12.50 €'
    assert templates.format_money('oops') == '0.00 €'
    assert templates.translate_status('OVERDUE') == 'En retard'
    assert templates.translate_status('UNKNOWN') == 'UNKNOWN'


def test_build_variable_context_from_objects(settings):
    settings.FRONTEND_URL = 'https://app.example.com'
    patient = SimpleNamespace(first_name='Marie', last_name='Dupont', email='m@example.com', unsubscribe_token='tok')
    dietitian = SimpleNamespace(first_name='Claire', last_name='Martin', email='c@example.com', phone='0102')
    ctx = templates.build_variable_context(patient=patient, dietitian=dietitian, custom_message='Hi',
                                           clinic={'name': 'Cabinet', 'address': '', 'phone': ''})
    assert ctx['patient_name'] == 'Marie Dupont'
    assert ctx['dietitian_name'] == 'Claire Martin'
    assert ctx['dietitian_phone'] == '0102'
    assert ctx['unsubscribe_link'] == 'https://app.example.com/unsubscribe.html?token=tok'
    assert ctx['custom_message'] == 'Hi'
    assert ctx['clinic_name'] == 'Cabinet'


@pytest.mark.parametrize('category', ['invoice', 'appointment_reminder', 'general', 'follow_up'])
def test_sample_variables_cover_category(category):
    samples = templates.sample_variables(category)
    assert set(samples) == set(templates.available_variables(category))
    assert all(not v.startswith('[') for v in samples.values())
