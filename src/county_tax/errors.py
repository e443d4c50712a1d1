"""Exceptions raised inside the pipeline.

Stages catch these and report them through result objects; they only
reach callers that use the tracker or store directly.
"""

from uuid import UUID


class PipelineError(Exception):
    """Base exception for pipeline errors."""

    pass


class RunInProgressError(PipelineError):
    """Another run of the same type is already executing."""

    def __init__(self, run_type: str, run_id: UUID | None = None):
        detail = f" (run {run_id})" if run_id else ""
        super().__init__(f"A {run_type} run is already in progress{detail}")
        self.run_type = run_type
        self.run_id = run_id


class RunNotFoundError(PipelineError):
    """No run exists with the given id."""

    def __init__(self, run_id: UUID):
        super().__init__(f"Run {run_id} not found")
        self.run_id = run_id


class RunStateError(PipelineError):
    """Attempt to modify a run that has already finished."""

    pass


class DuplicateEntryError(PipelineError):
    """Customer is already on the exclusion or inclusion list."""

    pass
