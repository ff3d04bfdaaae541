"""Business logic layer for uploads app.

This package contains all business logic for the upload pipeline:
- Single, multiple and chunked uploads
- Quota reservation and accounting
- Validation, derivative generation and key rotation
- File lifecycle (status transitions), download links and deletion

All business logic should be implemented here, separate from
models (data layer) and infrastructure (external systems).
"""
