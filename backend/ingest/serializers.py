import json

from rest_framework import serializers

from .services import IngestItem


class DocumentUploadSerializer(serializers.Serializer):
    """Multipart document upload."""
    file = serializers.FileField()
    id = serializers.UUIDField(required=False)
    name = serializers.CharField(max_length=255, required=False)
    description = serializers.CharField(required=False, allow_blank=True, default='')
    owner = serializers.CharField(max_length=255, required=False)

    def to_ingest_item(self, owner: str) -> IngestItem:
        data = self.validated_data
        upload = data['file']
        name = data.get('name') or upload.name
        extension = name.rsplit('.', 1)[-1] if '.' in name else ''
        return IngestItem(
            kind='document',
            fields={
                'owner': owner,
                'name': name,
                'extension': extension[:32],
                'description': data['description'],
            },
            blob=upload,
            client_id=data.get('id'),
        )


class ImageUploadSerializer(serializers.Serializer):
    """Multipart image upload keyed by the client's image UUID."""
    file = serializers.ImageField()
    id = serializers.UUIDField()
    client = serializers.CharField(max_length=255, required=False, allow_blank=True, default='')
    owner = serializers.CharField(max_length=255, required=False)

    def to_ingest_item(self, owner: str) -> IngestItem:
        data = self.validated_data
        upload = data['file']
        return IngestItem(
            kind='image',
            fields={
                'owner': owner,
                'client': data['client'],
                'content_type': getattr(upload, 'content_type', None) or 'image/jpeg',
            },
            blob=upload,
            client_id=data['id'],
        )


class PromptResponseSerializer(serializers.Serializer):
    prompt_id = serializers.CharField(max_length=255)
    prompt_type = serializers.CharField(max_length=64)
    value = serializers.JSONField()
    repeatable_set_id = serializers.CharField(max_length=255, required=False, allow_null=True)
    repeatable_set_iteration = serializers.IntegerField(required=False, allow_null=True, min_value=0)

    def to_row(self, data) -> dict:
        value = data['value']
        return {
            'prompt_id': data['prompt_id'],
            'prompt_type': data['prompt_type'],
            'response': value if isinstance(value, str) else json.dumps(value),
            'repeatable_set_id': data.get('repeatable_set_id'),
            'repeatable_set_iteration': data.get('repeatable_set_iteration'),
        }


class SurveySerializer(serializers.Serializer):
    """One survey response inside a batched upload."""
    LOCATION_STATUSES = ['valid', 'inaccurate', 'stale', 'unavailable']

    uuid = serializers.UUIDField()
    survey_id = serializers.CharField(max_length=255)
    epoch_millis = serializers.IntegerField(min_value=0)
    timezone = serializers.CharField(max_length=64)
    location_status = serializers.ChoiceField(choices=LOCATION_STATUSES)
    location = serializers.JSONField(required=False, allow_null=True)
    launch_context = serializers.JSONField(required=False, allow_null=True)
    privacy_state = serializers.CharField(max_length=32, required=False, default='private')
    responses = PromptResponseSerializer(many=True)

    def validate(self, attrs):
        if attrs['location_status'] != 'unavailable' and not attrs.get('location'):
            raise serializers.ValidationError(
                {'location': 'A location is required unless location_status is unavailable'}
            )
        return attrs


class SurveyUploadSerializer(serializers.Serializer):
    """A batch of survey responses for one campaign."""
    campaign_urn = serializers.CharField(max_length=255)
    client = serializers.CharField(max_length=255, required=False, allow_blank=True, default='')
    owner = serializers.CharField(max_length=255, required=False)
    surveys = SurveySerializer(many=True, allow_empty=False)

    def to_ingest_items(self, owner: str):
        data = self.validated_data
        prompt_serializer = PromptResponseSerializer()
        items = []
        for raw, survey in zip(self.initial_data['surveys'], data['surveys']):
            encoded = json.dumps(raw)
            items.append(IngestItem(
                kind='survey',
                fields={
                    'owner': owner,
                    'campaign_urn': data['campaign_urn'],
                    'client': data['client'],
                    'survey_id': survey['survey_id'],
                    'epoch_millis': survey['epoch_millis'],
                    'timezone': survey['timezone'],
                    'location_status': survey['location_status'],
                    'location': survey.get('location'),
                    'launch_context': survey.get('launch_context'),
                    'privacy_state': survey['privacy_state'],
                    'survey': raw,
                    'size_bytes': len(encoded.encode('utf-8')),
                },
                client_id=survey['uuid'],
                related=[prompt_serializer.to_row(prompt) for prompt in survey['responses']],
            ))
        return items
