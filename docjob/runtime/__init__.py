"""Runtime orchestration (scheduler, executor, handlers).

This layer is responsible for:
- promoting queued jobs to running under the concurrency cap
- running type-specific handlers with a cancellation token
- writing every terminal status exactly once

It should remain independent from the HTTP layer (`docjob/api`), so both CLI and API
can reuse the same execution logic.
"""
