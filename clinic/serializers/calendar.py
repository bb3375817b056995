from rest_framework import serializers


class CallbackSerializer(serializers.Serializer):
    code = serializers.CharField()


class SetCalendarSerializer(serializers.Serializer):
    calendar_id = serializers.CharField(max_length=255)
    sync_enabled = serializers.BooleanField(required=False)


class SyncSerializer(serializers.Serializer):
    direction = serializers.ChoiceField(choices=['both', 'to_calendar', 'from_calendar'], default='both')
    since = serializers.DateTimeField(required=False)
    calendar_id = serializers.CharField(required=False, max_length=255)
    all_dietitians = serializers.BooleanField(required=False, default=False)
