"""HTTP API layer (FastAPI).

A small, versioned `/api/v1` surface over the job engine:
- enqueue jobs, read their status and audit trail, request cancellation
- chunk and merge text without going through a job

The API is intentionally thin: core behavior lives in `docjob/runtime` and `docjob/storage`.
"""
