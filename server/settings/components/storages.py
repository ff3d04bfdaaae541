"""Django storage configuration for S3-compatible backends.

This module configures django-storages to work with:
- MinIO for local development
- Cloudflare R2 or AWS S3 for production

Both are S3-compatible and use the same S3Storage backend. A plain
filesystem storage is registered as well for deployments that keep
uploads on a local volume (``UPLOADS_STORAGE_PROVIDER=local``).
"""

from typing import Any, Final

from server.settings.components import BASE_DIR, config

# Storage configuration dictionary
# S3-compatible storage for uploads, local storage for static files
STORAGES: Final[dict[str, dict[str, Any]]] = {
    'default': {
        'BACKEND': 'server.apps.uploads.infrastructure.storage.FileStorage',
        'OPTIONS': {
            'bucket_name': config(
                'AWS_STORAGE_BUCKET_NAME',
                default='uploads',
            ),
            'access_key': config('AWS_ACCESS_KEY_ID', default=None),
            'secret_key': config('AWS_SECRET_ACCESS_KEY', default=None),
            'endpoint_url': config(
                'AWS_S3_ENDPOINT_URL',
                default=None,
            ),
            'region_name': config(
                'AWS_S3_REGION_NAME',
                default='us-east-1',
            ),
            # Paths are derived from record ids, re-sent chunks overwrite
            'file_overwrite': True,
            'default_acl': None,  # Inherit bucket ACL
            'querystring_auth': True,  # Signed download URLs
        },
    },
    'local_uploads': {
        'BACKEND': 'django.core.files.storage.FileSystemStorage',
        'OPTIONS': {
            'location': config(
                'UPLOADS_LOCAL_ROOT',
                default=str(BASE_DIR.joinpath('media', 'uploads')),
            ),
            'base_url': '/media/uploads/',
        },
    },
    'staticfiles': {
        # Keep static files separate from user files
        'BACKEND': 'django.contrib.staticfiles.storage.StaticFilesStorage',
    },
}
