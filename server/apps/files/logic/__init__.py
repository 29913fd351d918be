"""Business logic layer for files app.

- ``pipeline``: ingestion state machine and handler fan-out
- ``ingestion``: upload, system ingest and copy entry points
- ``repository``: persistence and queries of File records

Business logic lives here, separate from models (data layer) and
infrastructure (storage, naming, metadata).
"""
