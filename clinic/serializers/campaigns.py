from rest_framework import serializers

CAMPAIGN_TYPES = ['newsletter', 'promotional', 'educational', 'reminder']
RECIPIENT_STATUSES = ['pending', 'sent', 'failed', 'bounced']


class CampaignSerializer(serializers.Serializer):
    name = serializers.CharField(max_length=200)
    subject = serializers.CharField(max_length=500)
    body_html = serializers.CharField(required=False, allow_blank=True)
    body_text = serializers.CharField(required=False, allow_blank=True)
    campaign_type = serializers.ChoiceField(choices=CAMPAIGN_TYPES, default='newsletter')
    target_audience = serializers.DictField(required=False, default=dict)
    sender_id = serializers.IntegerField(required=False, allow_null=True)

    def validate_name(self, v):
        v = (v or '').strip()
        if not v:
            raise serializers.ValidationError('Name is required')
        return v

    def validate_subject(self, v):
        v = (v or '').strip()
        if not v:
            raise serializers.ValidationError('Subject is required')
        return v


class CampaignUpdateSerializer(serializers.Serializer):
    name = serializers.CharField(max_length=200, required=False)
    subject = serializers.CharField(max_length=500, required=False)
    body_html = serializers.CharField(required=False, allow_blank=True)
    body_text = serializers.CharField(required=False, allow_blank=True)
    campaign_type = serializers.ChoiceField(choices=CAMPAIGN_TYPES, required=False)
    target_audience = serializers.DictField(required=False)
    sender_id = serializers.IntegerField(required=False, allow_null=True)


class ScheduleSerializer(serializers.Serializer):
    scheduled_at = serializers.DateTimeField()


class AudiencePreviewSerializer(serializers.Serializer):
    criteria = serializers.DictField(required=False, default=dict)


class RecipientQuerySerializer(serializers.Serializer):
    status = serializers.ChoiceField(choices=RECIPIENT_STATUSES, required=False)
    search = serializers.CharField(required=False, allow_blank=True, max_length=200)
    limit = serializers.IntegerField(required=False, min_value=1, max_value=200, default=50)
    offset = serializers.IntegerField(required=False, min_value=0, default=0)
