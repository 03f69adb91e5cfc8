"""
Background job queue for post-upload file processing.

This package provides a Postgres-backed job system with:
- Batch claiming with FOR UPDATE SKIP LOCKED and dependency gating
- Registry-based pluggable handlers (OCR, embeddings)
- Exponential backoff retries, dead-lettering and stuck job reclamation
- Idempotent job creation and periodic reconciliation of missing jobs
"""
