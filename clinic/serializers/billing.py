from rest_framework import serializers

PAYMENT_METHODS = ['CASH', 'CARD', 'TRANSFER', 'CHECK', 'OTHER']


class InvoiceItemSerializer(serializers.Serializer):
    description = serializers.CharField(max_length=255)
    quantity = serializers.DecimalField(max_digits=8, decimal_places=2, min_value=0, default=1)
    unit_price = serializers.DecimalField(max_digits=10, decimal_places=2, min_value=0)


class InvoiceSerializer(serializers.Serializer):
    patient_id = serializers.IntegerField()
    visit_id = serializers.IntegerField(required=False, allow_null=True)
    service_description = serializers.CharField(required=False, allow_blank=True, max_length=255)
    invoice_date = serializers.DateField(required=False)
    due_date = serializers.DateField(required=False, allow_null=True)
    amount_total = serializers.DecimalField(max_digits=10, decimal_places=2, required=False)
    notes = serializers.CharField(required=False, allow_blank=True)
    items = InvoiceItemSerializer(many=True, required=False)

    def validate(self, attrs):
        if attrs.get('invoice_date') and attrs.get('due_date') and attrs['due_date'] < attrs['invoice_date']:
            raise serializers.ValidationError({'due_date': ['Due date must not be before the invoice date']})
        return attrs


class InvoiceUpdateSerializer(serializers.Serializer):
    service_description = serializers.CharField(required=False, allow_blank=True, max_length=255)
    invoice_date = serializers.DateField(required=False)
    due_date = serializers.DateField(required=False, allow_null=True)
    amount_total = serializers.DecimalField(max_digits=10, decimal_places=2, required=False)
    notes = serializers.CharField(required=False, allow_blank=True)
    items = InvoiceItemSerializer(many=True, required=False)


class PaymentSerializer(serializers.Serializer):
    amount = serializers.DecimalField(max_digits=10, decimal_places=2)
    method = serializers.ChoiceField(choices=PAYMENT_METHODS, default='CARD')
    paid_at = serializers.DateTimeField(required=False)
    reference = serializers.CharField(required=False, allow_blank=True, max_length=100)


class MarkPaidSerializer(serializers.Serializer):
    method = serializers.ChoiceField(choices=PAYMENT_METHODS, default='CARD')
    reference = serializers.CharField(required=False, allow_blank=True, max_length=100)


class StatsQuerySerializer(serializers.Serializer):
    date_from = serializers.DateField(required=False)
    date_to = serializers.DateField(required=False)
