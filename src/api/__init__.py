"""HTTP API layer (FastAPI).

This module exposes a small, versioned `/api/v1` surface to:
- submit/list jobs and read their trace events
- halt and resume the background runner
- inspect runner and queue status

The API is intentionally thin: core behavior lives in `src/runtime` and `src/storage`.
"""
