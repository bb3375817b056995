import bleach
from rest_framework import serializers

GENDERS = ['MALE', 'FEMALE', 'OTHER']
LANGUAGES = ['fr', 'en', 'es', 'nl', 'de']


def _clean(v):
    return bleach.clean((v or '').strip(), strip=True)


class PatientSerializer(serializers.Serializer):
    first_name = serializers.CharField(max_length=100)
    last_name = serializers.CharField(max_length=100)
    date_of_birth = serializers.DateField(required=False, allow_null=True)
    gender = serializers.ChoiceField(choices=GENDERS, required=False, allow_blank=True)
    email = serializers.EmailField(required=False, allow_blank=True, allow_null=True)
    phone = serializers.CharField(required=False, allow_blank=True, max_length=32)
    address = serializers.CharField(required=False, allow_blank=True, max_length=255)
    city = serializers.CharField(required=False, allow_blank=True, max_length=100)
    postal_code = serializers.CharField(required=False, allow_blank=True, max_length=20)
    country = serializers.CharField(required=False, allow_blank=True, max_length=100)
    medical_notes = serializers.CharField(required=False, allow_blank=True)
    allergies = serializers.CharField(required=False, allow_blank=True)
    dietary_preferences = serializers.CharField(required=False, allow_blank=True)
    language_preference = serializers.ChoiceField(choices=LANGUAGES, required=False)
    assigned_dietitian_id = serializers.IntegerField(required=False, allow_null=True)
    is_active = serializers.BooleanField(required=False)
    appointment_reminders_enabled = serializers.BooleanField(required=False)
    tags = serializers.ListField(child=serializers.CharField(max_length=50), required=False)

    def validate_first_name(self, v):
        v = _clean(v)
        if not v:
            raise serializers.ValidationError('First name is required')
        return v

    def validate_last_name(self, v):
        v = _clean(v)
        if not v:
            raise serializers.ValidationError('Last name is required')
        return v

    def validate_medical_notes(self, v):
        return _clean(v)

    def validate_allergies(self, v):
        return _clean(v)

    def validate_dietary_preferences(self, v):
        return _clean(v)


class PatientListQuerySerializer(serializers.Serializer):
    age_min = serializers.IntegerField(required=False, min_value=0, max_value=150)
    age_max = serializers.IntegerField(required=False, min_value=0, max_value=150)

    def validate(self, attrs):
        lo, hi = attrs.get('age_min'), attrs.get('age_max')
        if lo is not None and hi is not None and lo > hi:
            raise serializers.ValidationError('age_min must be lower than age_max')
        return attrs


class TagSerializer(serializers.Serializer):
    tag = serializers.CharField(max_length=50)


class TagsSerializer(serializers.Serializer):
    tags = serializers.ListField(child=serializers.CharField(max_length=50), allow_empty=True)
