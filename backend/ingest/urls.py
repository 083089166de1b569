from django.urls import path

from . import views

urlpatterns = [
    path('documents/', views.upload_document, name='upload-document'),
    path('images/', views.upload_image, name='upload-image'),
    path('surveys/', views.upload_surveys, name='upload-surveys'),
    path('storage/', views.storage_status, name='storage-status'),
    path('upload-limits/', views.upload_limits, name='upload-limits'),
]
