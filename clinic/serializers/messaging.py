from rest_framework import serializers


class ConversationOpenSerializer(serializers.Serializer):
    patientId = serializers.IntegerField(required=False)
    dietitianId = serializers.IntegerField(required=False)
    title = serializers.CharField(required=False, allow_blank=True, max_length=255)


class ConversationListQuerySerializer(serializers.Serializer):
    status = serializers.ChoiceField(choices=['open', 'closed'], required=False)
    q = serializers.CharField(required=False, allow_blank=True, max_length=100)
    sort = serializers.ChoiceField(choices=['recent', 'oldest', 'unread'], required=False, default='recent')
    limit = serializers.IntegerField(required=False, min_value=1, max_value=100, default=20)
    offset = serializers.IntegerField(required=False, min_value=0, default=0)


class MessageSendSerializer(serializers.Serializer):
    content = serializers.CharField(max_length=5000)


class HistoryQuerySerializer(serializers.Serializer):
    limit = serializers.IntegerField(required=False, min_value=1, max_value=200, default=50)
    offset = serializers.IntegerField(required=False, min_value=0, default=0)


class ConversationStatusSerializer(serializers.Serializer):
    status = serializers.ChoiceField(choices=['open', 'closed'])
