from django.db import migrations, models
import django.db.models.deletion
import uuid


def _content_record_fields():
    """Fields shared by every concrete ContentRecord."""
    return [
        ('locator', models.CharField(
            blank=True,
            help_text='URI of the stored blob, null if the row is the content',
            max_length=1024,
            null=True
        )),
        ('owner', models.CharField(
            help_text='Username of the uploading user',
            max_length=255
        )),
        ('size_bytes', models.BigIntegerField(
            default=0,
            help_text='Size of the stored blob or serialized content in bytes'
        )),
        ('created_at', models.DateTimeField(
            auto_now_add=True,
            help_text='When this content was ingested'
        )),
    ]


class Migration(migrations.Migration):

    initial = True

    dependencies = [
    ]

    operations = [
        migrations.CreateModel(
            name='Document',
            fields=[
                ('id', models.UUIDField(
                    default=uuid.uuid4,
                    editable=False,
                    primary_key=True,
                    serialize=False
                )),
                *_content_record_fields(),
                ('name', models.CharField(
                    help_text='Document name as given by the uploader',
                    max_length=255
                )),
                ('extension', models.CharField(
                    blank=True,
                    default='',
                    help_text='Extension taken from the document name',
                    max_length=32
                )),
                ('description', models.TextField(blank=True, default='')),
            ],
            options={
                'ordering': ['-created_at'],
            },
        ),
        migrations.CreateModel(
            name='ImageResource',
            fields=[
                ('id', models.UUIDField(
                    help_text='Client-supplied image identifier',
                    primary_key=True,
                    serialize=False
                )),
                *_content_record_fields(),
                ('client', models.CharField(
                    blank=True,
                    default='',
                    help_text='Client application that uploaded the image',
                    max_length=255
                )),
                ('content_type', models.CharField(default='image/jpeg', max_length=100)),
                ('processed', models.BooleanField(
                    default=False,
                    help_text='Whether derived artifacts (thumbnail) have been written'
                )),
            ],
            options={
                'ordering': ['-created_at'],
            },
        ),
        migrations.CreateModel(
            name='SurveyResponse',
            fields=[
                ('id', models.BigAutoField(
                    auto_created=True,
                    primary_key=True,
                    serialize=False,
                    verbose_name='ID'
                )),
                *_content_record_fields(),
                ('uuid', models.UUIDField(
                    help_text='Client-supplied survey response identifier',
                    unique=True
                )),
                ('campaign_urn', models.CharField(max_length=255)),
                ('survey_id', models.CharField(max_length=255)),
                ('client', models.CharField(blank=True, default='', max_length=255)),
                ('epoch_millis', models.BigIntegerField()),
                ('timezone', models.CharField(max_length=64)),
                ('location_status', models.CharField(max_length=32)),
                ('location', models.JSONField(blank=True, null=True)),
                ('launch_context', models.JSONField(blank=True, null=True)),
                ('survey', models.JSONField(help_text='The survey exactly as uploaded')),
                ('privacy_state', models.CharField(default='private', max_length=32)),
            ],
            options={
                'ordering': ['-epoch_millis'],
            },
        ),
        migrations.CreateModel(
            name='PromptResponse',
            fields=[
                ('id', models.BigAutoField(
                    auto_created=True,
                    primary_key=True,
                    serialize=False,
                    verbose_name='ID'
                )),
                ('prompt_id', models.CharField(max_length=255)),
                ('prompt_type', models.CharField(max_length=64)),
                ('repeatable_set_id', models.CharField(blank=True, max_length=255, null=True)),
                ('repeatable_set_iteration', models.IntegerField(blank=True, null=True)),
                ('response', models.TextField()),
                ('survey_response', models.ForeignKey(
                    on_delete=django.db.models.deletion.CASCADE,
                    related_name='prompt_responses',
                    to='contracts.surveyresponse'
                )),
            ],
        ),
        migrations.AddIndex(
            model_name='document',
            index=models.Index(fields=['owner'], name='document_owner_idx'),
        ),
        migrations.AddIndex(
            model_name='document',
            index=models.Index(fields=['created_at'], name='document_created_idx'),
        ),
        migrations.AddIndex(
            model_name='imageresource',
            index=models.Index(fields=['processed'], name='image_processed_idx'),
        ),
        migrations.AddIndex(
            model_name='surveyresponse',
            index=models.Index(fields=['campaign_urn', 'owner'], name='survey_campaign_owner_idx'),
        ),
    ]
