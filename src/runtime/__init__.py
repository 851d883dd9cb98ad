"""Runtime layer (job runner, handlers, background worker).

This layer is responsible for:
- the single-slot poll/execute/backoff cycle (`job_runner`)
- claiming queued jobs from SQLite and recording outcomes (`worker`)
- dispatching jobs to handlers by type (`handlers`)

It should remain independent from the HTTP layer (`src/api`), so both CLI and API
can reuse the same execution logic.
"""
