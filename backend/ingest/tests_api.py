"""
API Tests for the Upload Endpoints
==================================
Tests cover:
- Document and image upload (committed, duplicate, validation)
- Survey batch upload
- Error status mapping (507 on exhausted storage, 400 on aborted batch)
- Storage status and upload limits
"""

import shutil
import tempfile
import uuid
from pathlib import Path
from unittest.mock import patch

from django.apps import apps
from django.contrib.auth import get_user_model
from django.core.files.uploadedfile import SimpleUploadedFile
from django.db import DatabaseError
from django.test import override_settings
from rest_framework import status
from rest_framework.test import APITestCase

from contracts.models import (
    Document,
    ImageResource,
    PromptResponse,
    SurveyResponse,
    SurveyResponseManager,
)
from ingest.exceptions import FilesystemWriteFailure, StoreExhausted
from ingest.outcomes import Fatal
from ingest.tests_writer import jpeg_bytes


# Create a temporary media root for tests
TEST_MEDIA_ROOT = tempfile.mkdtemp()

TEST_INGEST_STORAGE = {
    'document': {
        'ROOT': str(Path(TEST_MEDIA_ROOT) / 'documents'),
        'DEPTH': 2,
        'FANOUT': 10,
        'FILES_PER_DIRECTORY': 10,
    },
    'image': {
        'ROOT': str(Path(TEST_MEDIA_ROOT) / 'images'),
        'DEPTH': 2,
        'FANOUT': 10,
        'FILES_PER_DIRECTORY': 10,
        'NAME_WIDTH': 3,
        'NAMING': 'sequential',
        'EXTENSION': '.jpg',
        'THUMBNAIL_SIZE': (32, 32),
        'DERIVE': 'inline',
    },
}


@override_settings(MEDIA_ROOT=TEST_MEDIA_ROOT, INGEST_STORAGE=TEST_INGEST_STORAGE)
class UploadAPITestBase(APITestCase):
    """Fresh storage roots and a fresh subsystem for every test."""

    @classmethod
    def tearDownClass(cls):
        """Clean up temporary media directory after all tests."""
        super().tearDownClass()
        shutil.rmtree(TEST_MEDIA_ROOT, ignore_errors=True)

    def setUp(self):
        for options in TEST_INGEST_STORAGE.values():
            root = Path(options['ROOT'])
            shutil.rmtree(root, ignore_errors=True)
            root.mkdir(parents=True)
        apps.get_app_config('ingest').subsystem = None

    def _jpeg(self, name='photo.jpg'):
        return SimpleUploadedFile(name, jpeg_bytes(), content_type='image/jpeg')


class DocumentUploadAPITests(UploadAPITestBase):
    """Tests for POST /api/documents/."""

    url = '/api/documents/'

    def test_upload_document(self):
        """A new document is stored and reported as committed."""
        response = self.client.post(self.url, {
            'file': SimpleUploadedFile('notes.txt', b'field notes'),
            'owner': 'alice',
            'description': 'Week 1',
        }, format='multipart')

        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.data['status'], 'committed')
        document = Document.objects.get(pk=response.data['id'])
        self.assertEqual(document.owner, 'alice')
        self.assertEqual(document.name, 'notes.txt')
        self.assertEqual(document.extension, 'txt')
        self.assertTrue(document.locator.startswith('file://'))

    def test_reupload_document_is_duplicate(self):
        """Re-sending the same id answers 200 and stores nothing new."""
        document_id = str(uuid.uuid4())
        payload = {'id': document_id, 'owner': 'alice'}

        first = self.client.post(self.url, {
            **payload, 'file': SimpleUploadedFile('a.txt', b'a')
        }, format='multipart')
        second = self.client.post(self.url, {
            **payload, 'file': SimpleUploadedFile('a.txt', b'a')
        }, format='multipart')

        self.assertEqual(first.status_code, status.HTTP_201_CREATED)
        self.assertEqual(second.status_code, status.HTTP_200_OK)
        self.assertEqual(second.data, {'status': 'duplicate', 'id': document_id})
        self.assertEqual(Document.objects.count(), 1)

    def test_upload_without_file(self):
        response = self.client.post(self.url, {'owner': 'alice'}, format='multipart')

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data['error'], 'No file provided')

    def test_upload_without_owner(self):
        """Unauthenticated uploads have to name their owner."""
        response = self.client.post(self.url, {
            'file': SimpleUploadedFile('a.txt', b'a'),
        }, format='multipart')

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(Document.objects.count(), 0)

    def test_authenticated_user_is_owner(self):
        """The authenticated username wins over the owner field."""
        user = get_user_model().objects.create_user(username='bob', password='secret')
        self.client.force_authenticate(user=user)

        response = self.client.post(self.url, {
            'file': SimpleUploadedFile('a.txt', b'a'),
            'owner': 'mallory',
        }, format='multipart')

        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(Document.objects.get().owner, 'bob')

    @override_settings(FILE_UPLOAD_MAX_SIZE=16)
    def test_upload_exceeding_max_size(self):
        """Oversized uploads are rejected with size details."""
        response = self.client.post(self.url, {
            'file': SimpleUploadedFile('big.txt', b'x' * 64),
            'owner': 'alice',
        }, format='multipart')

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data['details']['max_size'], 16)
        self.assertEqual(response.data['details']['file_size_formatted'], '64.0 B')

    def test_store_exhausted_is_507(self):
        """A full store answers 507 Insufficient Storage."""
        with patch('ingest.views.get_subsystem') as get_subsystem:
            get_subsystem.return_value.ingest_one.side_effect = StoreExhausted('full')
            response = self.client.post(self.url, {
                'file': SimpleUploadedFile('a.txt', b'a'),
                'owner': 'alice',
            }, format='multipart')

        self.assertEqual(response.status_code, status.HTTP_507_INSUFFICIENT_STORAGE)

    def test_fatal_outcome_is_500(self):
        with patch('ingest.views.get_subsystem') as get_subsystem:
            get_subsystem.return_value.ingest_one.return_value = Fatal(
                FilesystemWriteFailure('disk full')
            )
            response = self.client.post(self.url, {
                'file': SimpleUploadedFile('a.txt', b'a'),
                'owner': 'alice',
            }, format='multipart')

        self.assertEqual(response.status_code, status.HTTP_500_INTERNAL_SERVER_ERROR)
        self.assertEqual(response.data['error'], 'FilesystemWriteFailure')


class ImageUploadAPITests(UploadAPITestBase):
    """Tests for POST /api/images/."""

    url = '/api/images/'

    def test_upload_image(self):
        """The image and its thumbnail are stored and the image is processed."""
        image_id = str(uuid.uuid4())
        response = self.client.post(self.url, {
            'file': self._jpeg(),
            'id': image_id,
            'client': 'android',
            'owner': 'alice',
        }, format='multipart')

        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.data['id'], image_id)
        image = ImageResource.objects.get(pk=image_id)
        self.assertTrue(image.processed)
        leaf = Path(TEST_INGEST_STORAGE['image']['ROOT']).resolve() / '0' / '0'
        self.assertTrue((leaf / '000.jpg').exists())
        self.assertTrue((leaf / '000-s.jpg').exists())

    def test_reupload_image_is_duplicate(self):
        image_id = str(uuid.uuid4())
        for _ in range(2):
            response = self.client.post(self.url, {
                'file': self._jpeg(), 'id': image_id, 'owner': 'alice',
            }, format='multipart')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(ImageResource.objects.count(), 1)

    def test_upload_image_requires_id(self):
        response = self.client.post(self.url, {
            'file': self._jpeg(), 'owner': 'alice',
        }, format='multipart')

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertIn('id', response.data['details'])

    def test_upload_non_image_rejected(self):
        """Content that is not an image never reaches storage."""
        response = self.client.post(self.url, {
            'file': SimpleUploadedFile('photo.jpg', b'not an image'),
            'id': str(uuid.uuid4()),
            'owner': 'alice',
        }, format='multipart')

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(ImageResource.objects.count(), 0)


class SurveyUploadAPITests(UploadAPITestBase):
    """Tests for POST /api/surveys/."""

    url = '/api/surveys/'

    def _survey(self, survey_uuid=None, **overrides):
        survey = {
            'uuid': str(survey_uuid or uuid.uuid4()),
            'survey_id': 'evening',
            'epoch_millis': 1700000000000,
            'timezone': 'Europe/Amsterdam',
            'location_status': 'valid',
            'location': {'latitude': 52.37, 'longitude': 4.89, 'accuracy': 12.0},
            'responses': [
                {'prompt_id': 'mood', 'prompt_type': 'single_choice', 'value': 'good'},
                {'prompt_id': 'hours', 'prompt_type': 'number', 'value': 7},
            ],
        }
        survey.update(overrides)
        return survey

    def _payload(self, surveys):
        return {'campaign_urn': 'urn:campaign:sleep', 'owner': 'alice', 'surveys': surveys}

    def test_upload_batch(self):
        """Every survey of a batch is stored with its prompt responses."""
        response = self.client.post(self.url, self._payload(
            [self._survey(), self._survey()]
        ), format='json')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertTrue(response.data['committed'])
        self.assertEqual(
            [result['status'] for result in response.data['results']],
            ['committed', 'committed'],
        )
        self.assertEqual(SurveyResponse.objects.count(), 2)
        self.assertEqual(PromptResponse.objects.count(), 4)
        hours = PromptResponse.objects.filter(prompt_id='hours').values_list('response', flat=True)
        self.assertEqual(set(hours), {'7'})

    def test_duplicate_survey_in_batch(self):
        """A repeated survey is reported and the rest of the batch is kept."""
        repeated = uuid.uuid4()
        surveys = [
            self._survey(repeated),
            self._survey(),
            self._survey(repeated),
            self._survey(),
            self._survey(),
        ]

        response = self.client.post(self.url, self._payload(surveys), format='json')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(
            [result['status'] for result in response.data['results']],
            ['committed', 'committed', 'duplicate', 'committed', 'committed'],
        )
        self.assertEqual(SurveyResponse.objects.count(), 4)

    def test_survey_stored_as_uploaded(self):
        survey = self._survey(location_status='unavailable', location=None)
        self.client.post(self.url, self._payload([survey]), format='json')

        stored = SurveyResponse.objects.get(uuid=survey['uuid'])
        self.assertEqual(stored.survey, survey)
        self.assertEqual(stored.campaign_urn, 'urn:campaign:sleep')
        self.assertGreater(stored.size_bytes, 0)

    def test_location_required_unless_unavailable(self):
        response = self.client.post(self.url, self._payload(
            [self._survey(location=None)]
        ), format='json')

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(SurveyResponse.objects.count(), 0)

    def test_empty_batch_rejected(self):
        response = self.client.post(self.url, self._payload([]), format='json')

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_aborted_batch_is_400(self):
        """An aborted batch answers 400 and reports no survey as stored."""
        original = SurveyResponseManager.create_with_prompts
        calls = []

        def create_with_prompts(manager, *args, **kwargs):
            calls.append(kwargs.get('uuid'))
            if len(calls) == 2:
                raise DatabaseError('value too long for type character varying(64)')
            return original(manager, *args, **kwargs)

        with patch.object(SurveyResponseManager, 'create_with_prompts', create_with_prompts):
            response = self.client.post(self.url, self._payload(
                [self._survey(), self._survey(), self._survey()]
            ), format='json')

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data['index'], 1)
        self.assertEqual(
            [result['status'] for result in response.data['results']],
            ['fatal', 'fatal'],
        )
        self.assertEqual(response.data['results'][0]['error'], 'BatchRolledBack')
        self.assertEqual(SurveyResponse.objects.count(), 0)

    def test_rolled_back_batch_reports_not_committed(self):
        with patch('ingest.views.get_subsystem') as get_subsystem:
            get_subsystem.return_value.ingest_batch.return_value = [
                Fatal(FilesystemWriteFailure('disk full')),
            ]
            response = self.client.post(self.url, self._payload([self._survey()]), format='json')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertFalse(response.data['committed'])


class StorageAPITests(UploadAPITestBase):
    """Tests for the storage status and upload limits endpoints."""

    def test_storage_status(self):
        self.client.post('/api/documents/', {
            'file': SimpleUploadedFile('a.txt', b'a'), 'owner': 'alice',
        }, format='multipart')

        response = self.client.get('/api/storage/')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        kinds = {entry['kind']: entry for entry in response.data['kinds']}
        self.assertEqual(set(kinds), {'document', 'image'})
        self.assertEqual(kinds['image']['naming_mode'], 'sequential')
        self.assertTrue(kinds['document']['current_leaf'].endswith('/0/0'))
        self.assertEqual(response.data['records']['document'], 1)

    @override_settings(FILE_UPLOAD_MAX_SIZE=1024)
    def test_upload_limits(self):
        response = self.client.get('/api/upload-limits/')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['max_file_size'], 1024)
        self.assertEqual(response.data['max_file_size_formatted'], '1.0 KB')
