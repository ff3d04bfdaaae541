"""Django admin configuration for uploads app."""


from django.contrib import admin
from django.db.models import QuerySet
from django.http import HttpRequest
from django.utils.html import format_html

from server.apps.uploads.models import FileChunk, FileRecord, StorageQuota


def _format_bytes(size_bytes: int) -> str:
    """Format bytes in human-readable format.

    Args:
        size_bytes: Size in bytes.

    Returns:
        Formatted size string (e.g., '1.5 MB', '234 KB').
    """
    if size_bytes < 1024:
        return f'{size_bytes} B'
    if size_bytes < 1024 * 1024:  # noqa: WPS531
        return f'{size_bytes / 1024:.1f} KB'
    if size_bytes < 1024 * 1024 * 1024:  # noqa: WPS531
        return f'{size_bytes / (1024 * 1024):.1f} MB'
    return f'{size_bytes / (1024 * 1024 * 1024):.1f} GB'


@admin.register(FileRecord)
class FileRecordAdmin(admin.ModelAdmin):
    """Admin interface for FileRecord model.

    Shows deleted records too; changes go through the logic layer.
    """

    list_display = [
        'original_name',
        'user',
        'category',
        'status',
        'size_display',
        'detected_mime_type',
        'is_encrypted',
        'is_deleted',
        'created_at',
    ]

    list_filter = [
        'status',
        'category',
        'is_encrypted',
        'is_deleted',
        'created_at',
    ]

    search_fields = [
        'original_name',
        'parent_ref',
        'checksum_sha256',
        'user__username',
    ]

    readonly_fields = [
        'id',
        'user',
        'storage_path',
        'thumbnail_path',
        'size_bytes',
        'mime_type',
        'detected_mime_type',
        'checksum_sha256',
        'status',
        'versions',
        'is_encrypted',
        'encryption_key_id',
        'processing_history',
        'is_deleted',
        'deleted_at',
        'created_at',
        'modified_at',
    ]

    fieldsets = (
        ('File Information', {
            'fields': ('id', 'user', 'original_name', 'category', 'parent_ref'),
        }),
        ('Storage', {
            'fields': (
                'status',
                'storage_path',
                'thumbnail_path',
                'versions',
                'is_encrypted',
                'encryption_key_id',
            ),
        }),
        ('Metadata', {
            'fields': (
                'size_bytes',
                'mime_type',
                'detected_mime_type',
                'checksum_sha256',
                'metadata',
                'processing_history',
            ),
        }),
        ('Timestamps', {
            'fields': ('created_at', 'modified_at', 'is_deleted', 'deleted_at'),
        }),
    )

    @admin.display(description='Size', ordering='size_bytes')
    def size_display(self, obj: FileRecord) -> str:
        """Size in human-readable format."""
        return _format_bytes(obj.size_bytes)

    def get_queryset(self, request: HttpRequest) -> QuerySet[FileRecord]:
        """Include soft-deleted records and select related user.

        Args:
            request: HTTP request.

        Returns:
            Optimized QuerySet.
        """
        return FileRecord.all_objects.select_related('user')


@admin.register(FileChunk)
class FileChunkAdmin(admin.ModelAdmin):
    """Admin interface for FileChunk model."""

    list_display = [
        'file',
        'chunk_index',
        'size_display',
        'processed',
        'expires_at',
    ]

    list_filter = [
        'processed',
    ]

    readonly_fields = [
        'file',
        'chunk_index',
        'size_bytes',
        'storage_path',
        'processed',
        'expires_at',
        'created_at',
        'modified_at',
    ]

    @admin.display(description='Size', ordering='size_bytes')
    def size_display(self, obj: FileChunk) -> str:
        """Size in human-readable format."""
        return _format_bytes(obj.size_bytes)


def _usage_percentage(quota: StorageQuota) -> float:
    if quota.quota_bytes == 0:
        return 0.0
    return quota.used_bytes / quota.quota_bytes * 100


@admin.register(StorageQuota)
class StorageQuotaAdmin(admin.ModelAdmin):
    """Admin interface for StorageQuota model.

    ``used_bytes`` is maintained by the upload pipeline and can only be
    rebuilt with ``manage.py reconcile_uploads --recalculate-quotas``.
    """

    list_display = [
        'user',
        'quota_display',
        'used_display',
        'percentage_display',
        'status_display',
        'categories_display',
        'last_updated',
    ]

    search_fields = [
        'user__username',
        'user__email',
    ]

    readonly_fields = [
        'user',
        'used_bytes',
        'usage_by_category',
        'last_updated',
    ]

    fieldsets = (
        ('User', {
            'fields': ('user',),
        }),
        ('Quota Settings', {
            'fields': ('quota_bytes',),
        }),
        ('Current Usage', {
            'fields': ('used_bytes', 'usage_by_category', 'last_updated'),
        }),
    )

    @admin.display(description='Quota')
    def quota_display(self, obj: StorageQuota) -> str:
        """Total allotment, human-readable."""
        return _format_bytes(obj.quota_bytes)

    @admin.display(description='Used')
    def used_display(self, obj: StorageQuota) -> str:
        """Consumed bytes, human-readable."""
        return _format_bytes(obj.used_bytes)

    @admin.display(description='%')
    def percentage_display(self, obj: StorageQuota) -> str:
        return f'{_usage_percentage(obj):.1f}%'

    @admin.display(description='Status')
    def status_display(self, obj: StorageQuota) -> str:
        """Colour-coded usage level.

        Args:
            obj: StorageQuota instance.

        Returns:
            HTML formatted status indicator.
        """
        percentage = _usage_percentage(obj)
        if percentage >= 100:
            color, label = '#dc3545', 'Full'  # uploads refused
        elif percentage >= 90:
            color, label = '#ffc107', 'Warning'
        else:
            color, label = '#28a745', 'OK'

        return format_html(
            '<span style="color: {color}; font-weight: bold;">{label}</span>',
            color=color,
            label=label,
        )

    @admin.display(description='By category')
    def categories_display(self, obj: StorageQuota) -> str:
        """Non-empty categories, largest first."""
        usage = sorted(
            (
                (size, category)
                for category, size in obj.usage_by_category.items()
                if size
            ),
            reverse=True,
        )
        return ', '.join(
            f'{category}: {_format_bytes(size)}' for size, category in usage
        ) or '-'

    def get_queryset(self, request: HttpRequest) -> QuerySet[StorageQuota]:
        """Select related user for the changelist.

        Args:
            request: HTTP request.

        Returns:
            Optimized QuerySet.
        """
        return super().get_queryset(request).select_related('user')
