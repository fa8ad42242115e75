"""
Error taxonomy for the processing core.

  ValidationError         bad input; fails fast, never retried
  ProviderError           remote extraction/embedding failure; the queue retries the job
  NotFoundError           missing document or job; permanent
  InvalidTransitionError  illegal job state change; surfaced to the caller
  JobCancelledError       cooperative stop of an in-flight run

The Celery task and the HTTP layer both key their behaviour off these
classes (retry vs. no retry, 400 vs. 404 vs. 409).
"""

from __future__ import annotations


class StudyDocsError(Exception):
    """Base class for every error raised by the processing core."""


class ValidationError(StudyDocsError):
    pass


class EmptyInputError(ValidationError):
    pass


class DimensionMismatchError(ValidationError):
    def __init__(self, left: int, right: int) -> None:
        super().__init__(f"Embeddings must have the same dimension ({left} != {right})")
        self.left  = left
        self.right = right


class ProviderError(StudyDocsError):
    pass


class EmptyResultError(ProviderError):
    pass


class NotFoundError(StudyDocsError):
    def __init__(self, entity: str, entity_id: object) -> None:
        super().__init__(f"{entity} with ID {entity_id} not found")
        self.entity    = entity
        self.entity_id = entity_id


class InvalidTransitionError(StudyDocsError):
    pass


class JobCancelledError(StudyDocsError):
    def __init__(self, job_id: object) -> None:
        super().__init__(f"Job {job_id} was cancelled")
        self.job_id = job_id
