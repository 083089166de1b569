"""
Upload endpoints.

Each endpoint validates the request, hands it to the ingest subsystem and maps
the outcome to an HTTP status:

    Committed  -> 201
    Duplicate  -> 200
    Fatal      -> 500
    StoreExhausted -> 507
"""

import logging

from django.conf import settings
from rest_framework import status
from rest_framework.decorators import api_view
from rest_framework.response import Response

from contracts.models import Document, ImageResource, SurveyResponse
from .exceptions import BatchAborted, StoreExhausted
from .outcomes import Committed, Duplicate
from .serializers import DocumentUploadSerializer, ImageUploadSerializer, SurveyUploadSerializer
from .services import get_subsystem

logger = logging.getLogger(__name__)

OUTCOME_STATUS = {
    Committed.status: status.HTTP_201_CREATED,
    Duplicate.status: status.HTTP_200_OK,
}


def get_max_upload_size():
    """Get max upload size from settings, default 10MB."""
    return getattr(settings, 'FILE_UPLOAD_MAX_SIZE', 10 * 1024 * 1024)


def format_file_size(size_bytes):
    """Format bytes as human-readable string."""
    for unit in ['B', 'KB', 'MB', 'GB']:
        if size_bytes < 1024:
            return f"{size_bytes:.1f} {unit}"
        size_bytes /= 1024
    return f"{size_bytes:.1f} TB"


def resolve_owner(request, data):
    """The authenticated username, else the owner named in the request."""
    user = getattr(request, 'user', None)
    if user is not None and user.is_authenticated:
        return user.get_username()
    return data.get('owner')


def oversize_response(file_obj):
    max_size = get_max_upload_size()
    if file_obj.size <= max_size:
        return None
    return Response(
        {
            'error': 'File size exceeds maximum allowed',
            'details': {
                'file_size': file_obj.size,
                'file_size_formatted': format_file_size(file_obj.size),
                'max_size': max_size,
                'max_size_formatted': format_file_size(max_size),
            }
        },
        status=status.HTTP_400_BAD_REQUEST
    )


def exhausted_response(error):
    return Response(
        {'error': 'Storage exhausted', 'message': str(error)},
        status=status.HTTP_507_INSUFFICIENT_STORAGE
    )


def ingest_single(request, serializer_class):
    """Shared flow for the single-blob upload endpoints."""
    file_obj = request.FILES.get('file')
    if not file_obj:
        return Response(
            {'error': 'No file provided'},
            status=status.HTTP_400_BAD_REQUEST
        )

    too_large = oversize_response(file_obj)
    if too_large is not None:
        return too_large

    serializer = serializer_class(data=request.data)
    if not serializer.is_valid():
        return Response(
            {'error': 'Invalid upload', 'details': serializer.errors},
            status=status.HTTP_400_BAD_REQUEST
        )

    owner = resolve_owner(request, serializer.validated_data)
    if not owner:
        return Response(
            {'error': 'An owner is required'},
            status=status.HTTP_400_BAD_REQUEST
        )

    try:
        outcome = get_subsystem().ingest_one(serializer.to_ingest_item(owner))
    except StoreExhausted as e:
        return exhausted_response(e)

    return Response(
        outcome.as_dict(),
        status=OUTCOME_STATUS.get(outcome.status, status.HTTP_500_INTERNAL_SERVER_ERROR)
    )


@api_view(['POST'])
def upload_document(request):
    """
    Upload a document.

    Form fields:
        file: The document content (required)
        name: Display name (default: the uploaded filename)
        id: Client-chosen UUID; re-sending it reports a duplicate
        description: Free text
        owner: Owner username when the request is not authenticated
    """
    return ingest_single(request, DocumentUploadSerializer)


@api_view(['POST'])
def upload_image(request):
    """
    Upload an image keyed by its client UUID.

    Form fields:
        file: The image content (required)
        id: Client UUID of the image (required)
        client: Name of the uploading client
        owner: Owner username when the request is not authenticated
    """
    return ingest_single(request, ImageUploadSerializer)


@api_view(['POST'])
def upload_surveys(request):
    """
    Upload a batch of survey responses.

    Duplicate surveys are reported and skipped. A malformed survey aborts the
    whole batch with a 400; any other failure rolls the batch back and every
    item is reported with its outcome.

    Returns:
        {
            "committed": true,
            "results": [{"status": "committed", "id": "..."}, ...]
        }
    """
    serializer = SurveyUploadSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(
            {'error': 'Invalid upload', 'details': serializer.errors},
            status=status.HTTP_400_BAD_REQUEST
        )

    owner = resolve_owner(request, serializer.validated_data)
    if not owner:
        return Response(
            {'error': 'An owner is required'},
            status=status.HTTP_400_BAD_REQUEST
        )

    items = serializer.to_ingest_items(owner)
    try:
        outcomes = get_subsystem().ingest_batch(items)
    except BatchAborted as e:
        logger.warning(f"Survey batch for {owner} aborted at item {e.index}: {e.cause}")
        return Response(
            {
                'error': 'Batch aborted',
                'index': e.index,
                'message': str(e.cause),
                'results': [outcome.as_dict() for outcome in e.outcomes],
            },
            status=status.HTTP_400_BAD_REQUEST
        )
    except StoreExhausted as e:
        return exhausted_response(e)

    committed = all(outcome.status != 'fatal' for outcome in outcomes)
    return Response({
        'committed': committed,
        'results': [outcome.as_dict() for outcome in outcomes],
    })


@api_view(['GET'])
def storage_status(request):
    """
    Storage layout and record counts per content kind.

    Returns:
        - kinds: Per-kind root, naming mode, tree shape and current leaf
        - records: Row count per record type
    """
    return Response({
        'kinds': get_subsystem().describe(),
        'records': {
            'document': Document.objects.count(),
            'image': ImageResource.objects.count(),
            'image_unprocessed': ImageResource.objects.filter(processed=False).count(),
            'survey': SurveyResponse.objects.count(),
        },
    })


@api_view(['GET'])
def upload_limits(request):
    """
    Get upload limits for client-side validation.

    Returns:
        - max_file_size: Maximum allowed file size in bytes
        - max_file_size_formatted: Human-readable max size
    """
    max_size = get_max_upload_size()
    return Response({
        'max_file_size': max_size,
        'max_file_size_formatted': format_file_size(max_size),
    })
