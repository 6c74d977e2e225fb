"""HTTP API layer (FastAPI).

A small, versioned `/api/v1` surface to:
- submit research tasks and inspect their call graph
- fetch final answers and trace events
- request cancellation of a task tree

The API is intentionally thin: core behavior lives in `deepdive.runtime` and `deepdive.storage`.
"""
