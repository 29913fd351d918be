"""Infrastructure layer for files app.

This package contains integrations with external systems:
- Disk access through Django ``STORAGES`` (S3 and local)
- Unique storage name generation
- Metadata extraction (MIME type, checksum)

Keep infrastructure concerns separate from business logic.
"""
