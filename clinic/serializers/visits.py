from rest_framework import serializers

VISIT_STATUSES = ['SCHEDULED', 'COMPLETED', 'CANCELLED', 'NO_SHOW']


class VisitSerializer(serializers.Serializer):
    patient_id = serializers.IntegerField()
    dietitian_id = serializers.IntegerField(required=False, allow_null=True)
    visit_date = serializers.DateTimeField()
    duration_minutes = serializers.IntegerField(required=False, min_value=5, max_value=480)
    visit_type = serializers.CharField(required=False, allow_blank=True, max_length=64)
    status = serializers.ChoiceField(choices=VISIT_STATUSES, required=False)
    notes = serializers.CharField(required=False, allow_blank=True)


class VisitUpdateSerializer(serializers.Serializer):
    dietitian_id = serializers.IntegerField(required=False, allow_null=True)
    visit_date = serializers.DateTimeField(required=False)
    duration_minutes = serializers.IntegerField(required=False, min_value=5, max_value=480)
    visit_type = serializers.CharField(required=False, allow_blank=True, max_length=64)
    status = serializers.ChoiceField(choices=VISIT_STATUSES, required=False)
    notes = serializers.CharField(required=False, allow_blank=True)


class RangeQuerySerializer(serializers.Serializer):
    start = serializers.DateTimeField(required=False)
    end = serializers.DateTimeField(required=False)

    def validate(self, attrs):
        if attrs.get('start') and attrs.get('end') and attrs['start'] >= attrs['end']:
            raise serializers.ValidationError('start must be before end')
        return attrs
