from rest_framework import serializers

CATEGORIES = ['invoice', 'document_share', 'payment_reminder', 'appointment_reminder', 'follow_up', 'general']


class EmailTemplateSerializer(serializers.Serializer):
    name = serializers.CharField(max_length=200)
    slug = serializers.SlugField(max_length=100, required=False)
    category = serializers.ChoiceField(choices=CATEGORIES, default='general')
    description = serializers.CharField(required=False, allow_blank=True)
    subject = serializers.CharField(max_length=500)
    body_html = serializers.CharField()
    body_text = serializers.CharField(required=False, allow_blank=True)
    available_variables = serializers.ListField(child=serializers.CharField(max_length=64), required=False)
    is_active = serializers.BooleanField(required=False, default=True)


class EmailTemplateUpdateSerializer(serializers.Serializer):
    name = serializers.CharField(max_length=200, required=False)
    slug = serializers.SlugField(max_length=100, required=False)
    category = serializers.ChoiceField(choices=CATEGORIES, required=False)
    description = serializers.CharField(required=False, allow_blank=True)
    subject = serializers.CharField(max_length=500, required=False)
    body_html = serializers.CharField(required=False)
    body_text = serializers.CharField(required=False, allow_blank=True)
    available_variables = serializers.ListField(child=serializers.CharField(max_length=64), required=False)
    is_active = serializers.BooleanField(required=False)


class DuplicateSerializer(serializers.Serializer):
    name = serializers.CharField(max_length=200, required=False)


class PreviewSerializer(serializers.Serializer):
    variables = serializers.DictField(required=False, default=dict)


class SendTestSerializer(serializers.Serializer):
    to = serializers.EmailField(required=False)
    variables = serializers.DictField(required=False, default=dict)
