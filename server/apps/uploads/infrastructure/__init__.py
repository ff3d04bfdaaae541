"""Infrastructure layer for uploads app.

This package contains integrations with external systems:
- Storage providers (S3 via django-storages, local filesystem)
- Content sniffing and checksums (python-magic)
- Image and PDF handling (Pillow, pypdf, PyMuPDF)
- Encryption at rest and key storage (cryptography)
- Malware scanning backends
- Derivative job queue (RabbitMQ via pika)

Keep infrastructure concerns separate from business logic.
"""
