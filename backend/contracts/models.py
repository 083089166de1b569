"""
Content Record Models
=====================
Minimal relational records that reference stored content.

Models:
    - ContentRecord: abstract base (locator, owner, size, creation time)
    - Document: uploaded document stored under its UUID (content-addressed)
    - ImageResource: uploaded image stored under a sequential name
    - SurveyResponse: one survey from a batched upload (no blob)
    - PromptResponse: individual prompt answers belonging to a survey
"""

from django.db import models, transaction
import uuid


class ContentRecord(models.Model):
    """
    One uploaded unit of content.

    The locator is the file:// URI written by the ingest subsystem, or
    null when the content lives only in the relational row.
    """
    # Name of the field holding the client-supplied identifier
    CLIENT_ID_FIELD = 'id'

    locator = models.CharField(
        max_length=1024,
        null=True,
        blank=True,
        help_text="URI of the stored blob, null if the row is the content"
    )
    owner = models.CharField(
        max_length=255,
        help_text="Username of the uploading user"
    )
    size_bytes = models.BigIntegerField(
        default=0,
        help_text="Size of the stored blob or serialized content in bytes"
    )
    created_at = models.DateTimeField(
        auto_now_add=True,
        help_text="When this content was ingested"
    )

    class Meta:
        abstract = True

    @property
    def client_id(self):
        return getattr(self, self.CLIENT_ID_FIELD)


class Document(ContentRecord):
    """
    Uploaded document. The UUID doubles as the on-disk filename.
    """
    id = models.UUIDField(
        primary_key=True,
        default=uuid.uuid4,
        editable=False
    )
    name = models.CharField(
        max_length=255,
        help_text="Document name as given by the uploader"
    )
    extension = models.CharField(
        max_length=32,
        blank=True,
        default='',
        help_text="Extension taken from the document name"
    )
    description = models.TextField(
        blank=True,
        default='',
    )

    class Meta:
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['owner'], name='document_owner_idx'),
            models.Index(fields=['created_at'], name='document_created_idx'),
        ]

    def __str__(self):
        return self.name


class ImageResource(ContentRecord):
    """
    Uploaded image, keyed by the UUID the mobile client generated.
    A thumbnail lives next to the image once processed is set.
    """
    id = models.UUIDField(
        primary_key=True,
        help_text="Client-supplied image identifier"
    )
    client = models.CharField(
        max_length=255,
        blank=True,
        default='',
        help_text="Client application that uploaded the image"
    )
    content_type = models.CharField(
        max_length=100,
        default='image/jpeg',
    )
    processed = models.BooleanField(
        default=False,
        help_text="Whether derived artifacts (thumbnail) have been written"
    )

    class Meta:
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['processed'], name='image_processed_idx'),
        ]

    def __str__(self):
        return f"{self.id} ({self.size_bytes} bytes)"


class SurveyResponseManager(models.Manager):

    def create_with_prompts(self, prompt_responses=(), **fields):
        """Insert a survey response and its prompt responses together."""
        with transaction.atomic(using=self.db):
            survey_response = self.create(**fields)
            PromptResponse.objects.using(self.db).bulk_create([
                PromptResponse(survey_response=survey_response, **prompt)
                for prompt in prompt_responses
            ])
        return survey_response


class SurveyResponse(ContentRecord):
    """
    A single completed survey. The whole survey is kept as JSON and the
    client-generated uuid is unique so retried uploads are detected.
    """
    CLIENT_ID_FIELD = 'uuid'

    uuid = models.UUIDField(
        unique=True,
        help_text="Client-supplied survey response identifier"
    )
    campaign_urn = models.CharField(max_length=255)
    survey_id = models.CharField(max_length=255)
    client = models.CharField(max_length=255, blank=True, default='')
    epoch_millis = models.BigIntegerField()
    timezone = models.CharField(max_length=64)
    location_status = models.CharField(max_length=32)
    location = models.JSONField(null=True, blank=True)
    launch_context = models.JSONField(null=True, blank=True)
    survey = models.JSONField(help_text="The survey exactly as uploaded")
    privacy_state = models.CharField(max_length=32, default='private')

    objects = SurveyResponseManager()

    class Meta:
        ordering = ['-epoch_millis']
        indexes = [
            models.Index(fields=['campaign_urn', 'owner'], name='survey_campaign_owner_idx'),
        ]

    def __str__(self):
        return f"{self.survey_id} {self.uuid}"


class PromptResponse(models.Model):
    """One answered prompt within a survey response."""
    survey_response = models.ForeignKey(
        SurveyResponse,
        on_delete=models.CASCADE,
        related_name='prompt_responses',
    )
    prompt_id = models.CharField(max_length=255)
    prompt_type = models.CharField(max_length=64)
    repeatable_set_id = models.CharField(max_length=255, null=True, blank=True)
    repeatable_set_iteration = models.IntegerField(null=True, blank=True)
    response = models.TextField()

    def __str__(self):
        return f"{self.prompt_id}={self.response}"
