"""Django admin configuration for files app."""

from typing import Final

from django.contrib import admin
from django.db.models import QuerySet
from django.http import HttpRequest

from server.apps.files.models import File

_KILOBYTE: Final = 1024

# Written once by the pipeline, never edited
_PROVENANCE_FIELDS: Final = (
    'source',
    'parent',
    'disk',
    'path',
    'size',
    'mime',
    'extension',
    'driver',
    'handler',
    'handler_mode',
    'author',
    'options',
    'created_at',
    'updated_at',
)


def format_size(size: int) -> str:
    """Format bytes in human-readable format.

    Args:
        size: Size in bytes.

    Returns:
        Formatted size string (e.g., '1.5 MB', '234 KB').
    """
    if size < _KILOBYTE:
        return f'{size} B'
    scaled = float(size)
    for unit in ('KB', 'MB', 'GB'):
        scaled /= _KILOBYTE
        if scaled < _KILOBYTE:
            return f'{scaled:.1f} {unit}'
    return f'{scaled / _KILOBYTE:.1f} TB'


class ModificationInline(admin.TabularInline):
    """Derivatives listed below their original."""

    model = File
    fk_name = 'parent'
    extra = 0
    can_delete = False
    show_change_link = True
    fields = ['handler', 'handler_mode', 'mime', 'path', 'size']
    readonly_fields = fields

    def has_add_permission(self, request: HttpRequest, obj: File | None = None) -> bool:
        """Derivatives are created by the pipeline only."""
        return False


@admin.register(File)
class FileAdmin(admin.ModelAdmin):
    """Admin interface for File model."""

    list_display = [
        'title',
        'author',
        'driver',
        'handler',
        'handler_mode',
        'size_display',
        'mime',
        'active',
        'published',
        'created_at',
    ]

    list_filter = [
        'source',
        'driver',
        'handler',
        'active',
        'published',
        'disk',
    ]

    search_fields = [
        'title',
        'path',
        'slug',
    ]

    readonly_fields = _PROVENANCE_FIELDS

    fieldsets = (
        ('File Information', {
            'fields': ('title', 'description', 'author', 'source'),
        }),
        ('Visibility', {
            'fields': ('active', 'published', 'slug'),
        }),
        ('Storage', {
            'fields': ('disk', 'path', 'size', 'mime', 'extension'),
        }),
        ('Processing', {
            'fields': ('parent', 'driver', 'handler', 'handler_mode', 'options'),
        }),
        ('Timestamps', {
            'fields': ('created_at', 'updated_at'),
        }),
    )

    inlines = [ModificationInline]

    @admin.display(description='Size', ordering='size')
    def size_display(self, obj: File) -> str:
        """Display file size in human-readable format.

        Args:
            obj: File instance.

        Returns:
            Formatted size string.
        """
        return format_size(obj.size)

    def get_queryset(self, request: HttpRequest) -> QuerySet[File]:
        """Optimize queryset with select_related.

        Args:
            request: HTTP request.

        Returns:
            Optimized QuerySet.
        """
        return super().get_queryset(request).select_related('author')
