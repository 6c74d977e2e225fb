"""Durable execution substrate (workers, task context).

This layer is responsible for:
- claiming queued research tasks from SQLite
- advancing them with the research engine and parking them while children run
- propagating completion, failure and cancellation through the task tree

It stays independent from the HTTP layer (`deepdive.api`), so both CLI and API
reuse the same execution logic.
"""
